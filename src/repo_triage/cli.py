"""CLI entry point for repo-triage."""

import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import RunInterrupted, TriageError

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _fail(ctx: click.Context, exc: TriageError, exit_code: int = 1) -> None:
    console.print(f"[red]{exc}[/]")
    ctx.exit(exit_code)


@click.group()
@click.option("--config", "-c", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config, verbose):
    """Multi-agent issue triage for a GitHub repository."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except TriageError as exc:
        _fail(ctx, exc)


@main.command()
@click.argument("issue", type=int)
@click.option("--dry-run", is_flag=True, help="Investigate only; apply nothing to the tracker")
@click.option("--force", is_flag=True, help="Override a lock held by a live process")
@click.option("--reissue", is_flag=True, help="Repost comments a previous run already posted")
@click.pass_context
def triage(ctx, issue, dry_run, force, reissue):
    """Triage a single issue."""
    from .orchestrator import Orchestrator

    try:
        Orchestrator(ctx.obj["config"], dry_run=dry_run, force=force, reissue=reissue).run_single(issue)
    except RunInterrupted as exc:
        _fail(ctx, exc, 130)
    except TriageError as exc:
        _fail(ctx, exc)


@main.command()
@click.option("--dry-run", is_flag=True, help="Investigate only; apply nothing to the tracker")
@click.option("--force", is_flag=True, help="Override a lock held by a live process")
@click.option("--reissue", is_flag=True, help="Repost comments a previous run already posted")
@click.pass_context
def auto(ctx, dry_run, force, reissue):
    """Triage every open issue that is not yet labelled as triaged."""
    from .orchestrator import Orchestrator

    try:
        Orchestrator(ctx.obj["config"], dry_run=dry_run, force=force, reissue=reissue).run_auto()
    except RunInterrupted as exc:
        _fail(ctx, exc, 130)
    except TriageError as exc:
        _fail(ctx, exc)


@main.command()
@click.argument("run_id")
@click.option("--force", is_flag=True, help="Override a lock held by a live process")
@click.pass_context
def resume(ctx, run_id, force):
    """Continue an interrupted or failed run from its last checkpoint."""
    from .orchestrator import Orchestrator

    try:
        Orchestrator(ctx.obj["config"], force=force).resume(run_id)
    except RunInterrupted as exc:
        _fail(ctx, exc, 130)
    except TriageError as exc:
        _fail(ctx, exc)


@main.command()
@click.argument("run_id", required=False)
@click.pass_context
def status(ctx, run_id):
    """Show recent runs, or the state of RUN_ID (or "latest")."""
    from .orchestrator import recent_runs, triage_status

    cfg = ctx.obj["config"]
    if not run_id:
        table = Table(title="Recent runs")
        for column in ("Run", "Command", "Phase", "Issues", "Exit"):
            table.add_column(column)
        for row in recent_runs(cfg):
            exit_code = row["exit_code"]
            table.add_row(
                row["run_id"],
                row["command"],
                row["phase"],
                str(row["issues"]),
                "" if exit_code is None else str(exit_code),
            )
        console.print(table)
        return

    payload = triage_status(cfg, run_id)
    click.echo(json.dumps(payload, indent=2, sort_keys=True))
    ctx.exit(int(payload.get("exit_code", 1)))


@main.command(name="pre-release")
@click.option("--prev-tag", required=True, help="Tag of the previous release")
@click.option("--version", "version", required=True, help="Version being released (without the leading v)")
@click.pass_context
def pre_release_cmd(ctx, prev_tag, version):
    """Build the issue manifest for an upcoming release."""
    from .release import pre_release

    try:
        pre_release(ctx.obj["config"], prev_tag, version)
    except TriageError as exc:
        _fail(ctx, exc)


@main.command(name="post-release")
@click.option("--version", "version", required=True, help="Released version (without the leading v)")
@click.option("--release-tag", required=True, help="Git tag of the release")
@click.option("--release-url", default=None, help="Release page URL")
@click.option("--manifest", "manifest_path", default=None, help="Issue manifest (default: latest pre-release run)")
@click.option("--force", is_flag=True, help="Override a lock held by a live process")
@click.option("--dry-run", is_flag=True, help="Report planned comments and closes without applying them")
@click.pass_context
def post_release_cmd(ctx, version, release_tag, release_url, manifest_path, force, dry_run):
    """Comment on and close the issues a published release addresses."""
    from .release import post_release

    try:
        post_release(
            ctx.obj["config"],
            version,
            release_tag,
            release_url=release_url,
            manifest_path=manifest_path,
            force=force,
            dry_run=dry_run,
        )
    except TriageError as exc:
        _fail(ctx, exc)


if __name__ == "__main__":
    main()
