"""Release modes.

``pre_release`` scans the commits since the previous tag and writes an issue
manifest of what the release probably addresses. ``post_release`` reads that
manifest after the release is published, comments on (and optionally closes)
the matched issues, and verifies the closes.
"""

from __future__ import annotations

import contextlib
import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console

from .agent_service import AgentService, create_agent_service
from .aggregator import Thresholds
from .config import repo_slug
from .dispatcher import AgentDispatcher
from .errors import GitHubError, ManifestError, TriageError
from .executor import ActionExecutor
from .github import GitHubClient
from .linker import add_linked_issue
from .models import ActionType, IssuePlan, RiskTier, TriageAction, TriageDecision, utc_now
from .retry import RetryPolicy
from .run_lock import RunLock
from .run_store import RunStore, find_latest_run
from .sentry import fetch_unresolved_issues, match_changed_files
from .specialties import RELEASE_CORRELATION
from .verifier import verify_decisions

console = Console()
_LOGGER = logging.getLogger(__name__)

PRE_RELEASE_COMMAND = "pre-release"
POST_RELEASE_COMMAND = "post-release"
MANIFEST_NAME = "issue_manifest.json"

MAX_KEYWORDS = 10
KEYWORD_CONFIDENCE = 0.5
REFERENCE_CONFIDENCE = 0.8
MIN_CORRELATION = 0.3

_IGNORED_PATH_PARTS = frozenset({"lib", "src", "scripts", "test", "tests", "proto"})
_IGNORED_WORDS = frozenset({"should", "could", "would", "there", "their", "about", "which", "these"})
_CONVENTIONAL_PREFIX = re.compile(r"^(feat|fix|docs|chore|refactor|test|perf)(\(.+\))?:\s*")
_ISSUE_REF = re.compile(r"#(\d+)\b")


def _git_lines(args: list[str], repo_root: Path) -> list[str]:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, cwd=repo_root)
    except FileNotFoundError as exc:
        raise TriageError("git not found on PATH") from exc
    if result.returncode != 0:
        raise TriageError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def extract_keywords(changed_files: list[str], commits: list[str], limit: int = MAX_KEYWORDS) -> list[str]:
    """Search keywords from changed paths and commit subjects, in discovery order."""
    keywords: list[str] = []

    def _add(word: str) -> None:
        if word not in keywords:
            keywords.append(word)

    for path in changed_files:
        parts = path.split("/")
        stem = parts[-1].rsplit(".", 1)[0]
        if len(stem) > 3:
            _add(stem)
        for part in parts[:-1]:
            if len(part) > 3 and part not in _IGNORED_PATH_PARTS:
                _add(part)

    for subject in commits:
        text = _CONVENTIONAL_PREFIX.sub("", subject.lower())
        words = [w for w in re.split(r"\W+", text) if len(w) > 4 and w not in _IGNORED_WORDS]
        for word in words[:3]:
            _add(word)

    return keywords[:limit]


def extract_issue_refs(commits: list[str]) -> list[int]:
    return sorted({int(match) for subject in commits for match in _ISSUE_REF.findall(subject)})


def _merge_entry(entries: dict[Any, dict[str, Any]], key: Any, entry: dict[str, Any]) -> None:
    current = entries.get(key)
    if current is None or entry["confidence"] > current["confidence"]:
        entries[key] = entry


def _scan_own_repo(
    github: GitHubClient, keywords: list[str], commits: list[str]
) -> list[dict[str, Any]]:
    entries: dict[int, dict[str, Any]] = {}

    for number in extract_issue_refs(commits):
        try:
            issue = github.view_issue(number)
        except GitHubError as exc:
            _LOGGER.info("Referenced #%d could not be read: %s", number, exc)
            continue
        if issue["state"] != "OPEN":
            continue
        _merge_entry(
            entries,
            number,
            {
                "number": number,
                "title": issue["title"],
                "url": issue.get("url", ""),
                "confidence": REFERENCE_CONFIDENCE,
                "category": "referenced",
                "evidence": "Directly referenced in commit message",
            },
        )

    for keyword in keywords:
        try:
            matches = github.search_issues([keyword], state="open", limit=5)
        except GitHubError as exc:
            _LOGGER.warning("Search for %r failed: %s", keyword, exc)
            continue
        for match in matches:
            number = int(match["number"])
            _merge_entry(
                entries,
                number,
                {
                    "number": number,
                    "title": match.get("title", ""),
                    "url": match.get("url", ""),
                    "confidence": KEYWORD_CONFIDENCE,
                    "category": "keyword",
                    "evidence": f"Matched keyword: {keyword}",
                },
            )

    return [entries[number] for number in sorted(entries)]


def correlation_assessment(confidence: float) -> str:
    if confidence >= 0.9:
        return "fixed"
    if confidence >= 0.7:
        return "improved"
    if confidence >= 0.5:
        return "related"
    return "unrelated"


def _correlate(
    config: dict[str, Any],
    candidates: list[dict[str, Any]],
    prev_tag: str,
    service: AgentService,
    store: RunStore,
) -> list[dict[str, Any]]:
    """Score each candidate against the release diff with an agent.

    Agent scores replace the heuristic ones and candidates scoring below
    ``MIN_CORRELATION`` are dropped. A candidate whose agent failed keeps its
    heuristic score.
    """
    if not candidates:
        return []
    tasks = [
        RELEASE_CORRELATION.build_task(
            IssuePlan(number=entry["number"], title=entry["title"]),
            config,
            {"prev_tag": prev_tag, "candidate_evidence": entry["evidence"]},
        )
        for entry in candidates
    ]
    dispatcher = AgentDispatcher(
        service,
        store=store,
        retry_policy=RetryPolicy.from_config(config["gemini"]),
        max_concurrent=int(config["gemini"]["max_concurrent"]),
        show_progress=False,
    )
    outcome = dispatcher.dispatch(tasks)

    scored: list[dict[str, Any]] = []
    for entry in candidates:
        results = outcome.results.get(entry["number"], [])
        if not results or results[0].failed_investigation:
            _LOGGER.info("Correlation for #%d unavailable, keeping heuristic score", entry["number"])
            scored.append({**entry, "scored_by": "heuristic"})
            continue
        result = results[0]
        if result.confidence < MIN_CORRELATION:
            _LOGGER.info("Dropping #%d: correlation %.2f", entry["number"], result.confidence)
            continue
        scored.append(
            {
                **entry,
                "confidence": result.confidence,
                "assessment": correlation_assessment(result.confidence),
                "evidence": result.summary or entry["evidence"],
                "scored_by": "agent",
            }
        )
    return scored


def _scan_cross_repos(github: GitHubClient, cross_cfg: dict[str, Any], keywords: list[str]) -> list[dict[str, Any]]:
    if not cross_cfg.get("enabled"):
        return []
    terms = keywords[: int(cross_cfg.get("max_search_terms", 5))]
    limit = int(cross_cfg.get("max_matches", 3))
    entries: dict[tuple[str, int], dict[str, Any]] = {}
    for target in cross_cfg.get("repos", []):
        repo = f"{target['owner']}/{target['repo']}"
        for keyword in terms:
            try:
                matches = github.search_issues([keyword], repo=repo, state="open", limit=limit)
            except GitHubError as exc:
                _LOGGER.warning("Cross-repo search in %s failed: %s", repo, exc)
                break
            for match in matches:
                number = int(match["number"])
                _merge_entry(
                    entries,
                    (repo, number),
                    {
                        "repo": repo,
                        "number": number,
                        "title": match.get("title", ""),
                        "url": match.get("url", ""),
                        "relationship": target.get("relationship", "related"),
                        "confidence": KEYWORD_CONFIDENCE,
                        "category": "keyword",
                        "evidence": f"Matched keyword: {keyword}",
                    },
                )
    return [entries[key] for key in sorted(entries)]


def manifest_summary(manifest: dict[str, Any]) -> str:
    return (
        f"Found {len(manifest['github_issues'])} GitHub issues, "
        f"{len(manifest['cross_repo_issues'])} cross-repo issues, and "
        f"{len(manifest['sentry_issues'])} Sentry errors potentially addressed by v{manifest['version']}."
    )


def pre_release(
    config: dict[str, Any],
    prev_tag: str,
    version: str,
    *,
    repo_root: str | Path = ".",
    github: GitHubClient | None = None,
    agent_service: AgentService | None = None,
) -> dict[str, Any]:
    """Build and persist the issue manifest for an upcoming release. Read-only against the tracker."""
    repo_root = Path(repo_root)
    github = github or GitHubClient.from_config(config)
    release_cfg = config.get("release", {})
    runs_dir = repo_root / config["paths"]["runs_dir"]

    store = RunStore.create(
        runs_dir,
        PRE_RELEASE_COMMAND,
        {"prev_tag": prev_tag, "version": version},
        repo_root=repo_root,
        prefix="pre_release",
    )
    console.print(f"[bold]PRE-RELEASE TRIAGE[/] {prev_tag}..HEAD -> v{version} (run {store.run_id})")

    exit_code = 1
    try:
        changed_files = _git_lines(["diff", "--name-only", f"{prev_tag}..HEAD"], repo_root)
        commits = _git_lines(["log", f"{prev_tag}..HEAD", "--format=%s", "--no-merges"], repo_root)
        keywords = extract_keywords(changed_files, commits)
        console.print(f"  {len(changed_files)} changed file(s), {len(commits)} commit(s), {len(keywords)} keyword(s)")
        store.save_json(
            "pre_release",
            "changes.json",
            {"changed_files": changed_files, "commits": commits, "keywords": keywords},
        )

        github_issues: list[dict[str, Any]] = []
        if release_cfg.get("pre_release_scan_github", True):
            github_issues = _scan_own_repo(github, keywords, commits)
            if release_cfg.get("pre_release_correlate", True):
                service = agent_service or create_agent_service(config, repo_root)
                github_issues = _correlate(config, github_issues, prev_tag, service, store)

        cross_repo_issues = _scan_cross_repos(github, config.get("cross_repo", {}), keywords)

        sentry_issues: list[dict[str, Any]] = []
        if release_cfg.get("pre_release_scan_sentry"):
            sentry_issues = match_changed_files(fetch_unresolved_issues(config.get("sentry", {})), changed_files)

        manifest = {
            "version": version,
            "prev_tag": prev_tag,
            "github_issues": github_issues,
            "cross_repo_issues": cross_repo_issues,
            "sentry_issues": sentry_issues,
            "generated_at": utc_now(),
        }
        manifest["summary"] = manifest_summary(manifest)
        path = store.save_json("pre_release", MANIFEST_NAME, manifest)
        console.print(f"  {manifest['summary']}")
        console.print(f"  Manifest: {path}")
        exit_code = 0
    finally:
        store.finalize(exit_code)
    return manifest


def latest_manifest_path(runs_dir: Path) -> Path:
    run_id = find_latest_run(runs_dir, PRE_RELEASE_COMMAND)
    if not run_id:
        raise ManifestError("No pre-release run found; run pre-release first or pass --manifest")
    return runs_dir / run_id / "pre_release" / MANIFEST_NAME


def load_manifest(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ManifestError(f"Issue manifest not found at {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Could not parse issue manifest {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ManifestError(f"Issue manifest {path} is not a JSON object")
    for key in ("github_issues", "cross_repo_issues", "sentry_issues"):
        value = payload.setdefault(key, [])
        if not isinstance(value, list):
            raise ManifestError(f"Issue manifest {path}: {key} must be a list")
    return payload


def post_release_marker(version: str, number: int) -> str:
    return f"<!-- post-release:{version}:{number} -->"


def cross_repo_release_marker(version: str, repo: str, number: int) -> str:
    return f"<!-- cross-repo-release:{version}:{repo}#{number} -->"


def _release_url(config: dict[str, Any], release_tag: str, release_url: str | None) -> str:
    if release_url:
        return release_url
    slug = repo_slug(config)
    return f"https://github.com/{slug}/releases/tag/{release_tag}" if slug else ""


def build_release_comment(
    config: dict[str, Any], version: str, release_url: str, confidence: float, thresholds: Thresholds
) -> str:
    release_ref = f"**[v{version}]({release_url})**" if release_url else f"**v{version}**"
    lines = [
        f"## Release Update: v{version}",
        "",
        f"This issue appears to be addressed in {release_ref} ({confidence * 100:.0f}% confidence).",
    ]
    slug = repo_slug(config)
    if slug:
        repository = config["repository"]
        lines += [
            "",
            "**Resources:**",
            f"- [CHANGELOG](https://github.com/{slug}/blob/main/{repository['changelog_path']})",
            f"- [Release Notes Folder](https://github.com/{slug}/tree/main/{repository['release_notes_path']}/v{version}/)",
        ]
    if confidence >= thresholds.auto_close:
        lines += [
            "",
            "This issue is being **automatically closed** as the fix has been verified with high confidence.",
            "If this was closed in error, please reopen.",
        ]
    elif confidence >= thresholds.suggest_close:
        lines += ["", "We recommend reviewing and closing this issue if the fix is confirmed."]
    return "\n".join(lines) + "\n"


def build_cross_repo_comment(
    config: dict[str, Any], version: str, release_url: str, confidence: float, thresholds: Thresholds
) -> str:
    slug = repo_slug(config) or "upstream"
    name = config["repository"].get("name") or slug
    release_ref = f"**[{slug} v{version}]({release_url})**" if release_url else f"**{slug} v{version}**"
    lines = [
        "## Cross-Repository Release Notification",
        "",
        f"A potentially related fix has been released in {release_ref} ({confidence * 100:.0f}% confidence).",
        "",
    ]
    if confidence >= thresholds.auto_close:
        lines.append(
            "**Recommendation:** This fix appears highly relevant. Consider closing this issue after "
            f"verifying the fix by updating your `{name}` dependency to v{version} or later."
        )
    elif confidence >= thresholds.suggest_close:
        lines.append(
            "**Note:** This may be related. Please review the release notes and test whether "
            f"updating your `{name}` dependency resolves this issue."
        )
    else:
        lines.append("This release contains changes that may be related to this issue.")
    return "\n".join(lines) + "\n"


@contextlib.contextmanager
def _release_lock(config: dict[str, Any], force: bool, dry_run: bool) -> Iterator[None]:
    if dry_run:
        yield
        return
    with RunLock(config["paths"]["lock_file"]) as lock:
        lock.acquire(force=force)
        yield


def post_release(
    config: dict[str, Any],
    version: str,
    release_tag: str,
    *,
    release_url: str | None = None,
    manifest_path: str | Path | None = None,
    repo_root: str | Path = ".",
    github: GitHubClient | None = None,
    force: bool = False,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Close the loop on a published release using a pre-release manifest."""
    repo_root = Path(repo_root)
    runs_dir = repo_root / config["paths"]["runs_dir"]
    github = github or GitHubClient.from_config(config)
    release_cfg = config.get("release", {})
    thresholds = Thresholds.from_config(config)
    url = _release_url(config, release_tag, release_url)

    manifest = load_manifest(manifest_path or latest_manifest_path(runs_dir))

    with _release_lock(config, force, dry_run):
        store = RunStore.create(
            runs_dir,
            POST_RELEASE_COMMAND,
            {"version": version, "release_tag": release_tag, "dry_run": dry_run},
            repo_root=repo_root,
            prefix="post_release",
        )
        executor = ActionExecutor(github, store.run_id, triaged_label=config["repository"]["triaged_label"])
        console.print(f"[bold]POST-RELEASE TRIAGE[/] v{version} (run {store.run_id})")
        console.print(
            f"  Issues to process: {len(manifest['github_issues'])} own-repo, "
            f"{len(manifest['cross_repo_issues'])} cross-repo, {len(manifest['sentry_issues'])} Sentry"
        )

        exit_code = 1
        try:
            actions: list[dict[str, Any]] = []
            closed: list[TriageDecision] = []
            for entry in manifest["github_issues"]:
                actions.extend(
                    _process_own_issue(entry, config, executor, version, url, thresholds, dry_run, closed)
                )

            if release_cfg.get("post_release_comment_cross_repo", True):
                for entry in manifest["cross_repo_issues"]:
                    action = _process_cross_repo_issue(entry, config, executor, version, url, thresholds, dry_run)
                    if action:
                        actions.append(action)

            if release_cfg.get("post_release_link_sentry") and manifest["sentry_issues"]:
                for entry in manifest["sentry_issues"]:
                    actions.append(
                        {"type": "sentry_note", "id": entry.get("id"), "project": entry.get("project"), "status": "noted"}
                    )

            if not dry_run:
                _update_linked_issues(config, repo_root, version, manifest, actions)

            verification = None
            if closed and not dry_run:
                console.print("[bold]Verifying closed issues[/]")
                verification = verify_decisions(github, closed, triaged_label=None)

            report = {
                "version": version,
                "release_tag": release_tag,
                "release_url": url,
                "dry_run": dry_run,
                "actions_taken": actions,
                "verification": verification,
                "timestamp": utc_now(),
            }
            store.save_json("post_release", "post_release_report.json", report)
            done = sum(1 for action in actions if action.get("status") == "executed")
            console.print(f"  Actions taken: {done}")
            exit_code = 0
        finally:
            store.finalize(exit_code)
    return report


def _process_own_issue(
    entry: dict[str, Any],
    config: dict[str, Any],
    executor: ActionExecutor,
    version: str,
    url: str,
    thresholds: Thresholds,
    dry_run: bool,
    closed: list[TriageDecision],
) -> list[dict[str, Any]]:
    number = int(entry["number"])
    confidence = float(entry.get("confidence") or 0.0)
    if confidence < thresholds.comment:
        return []

    wants_close = confidence >= thresholds.auto_close and config["release"].get("post_release_close_own_repo", True)
    if dry_run:
        planned = [{"type": "comment", "issue": number, "status": "dry_run"}]
        if wants_close:
            planned.append({"type": "close", "issue": number, "status": "dry_run"})
        return planned

    try:
        issue = executor.github.view_issue(number)
    except GitHubError as exc:
        _LOGGER.warning("#%d could not be read: %s", number, exc)
        return [{"type": "fetch", "issue": number, "status": "failed", "detail": str(exc)}]
    if issue["state"] == "CLOSED":
        console.print(f"  #{number}: already closed, skipping")
        return [{"type": "comment", "issue": number, "status": "skipped", "detail": "issue already closed"}]

    actions = []
    body = build_release_comment(config, version, url, confidence, thresholds)
    try:
        posted = executor.post_comment_once(
            number, body, post_release_marker(version, number), comments=issue["comments"]
        )
    except GitHubError as exc:
        _LOGGER.warning("#%d: release comment failed: %s", number, exc)
        return [{"type": "comment", "issue": number, "status": "failed", "detail": str(exc)}]
    actions.append({"type": "comment", "issue": number, "status": "executed" if posted else "skipped"})
    console.print(f"  #{number}: {'commented' if posted else 'already commented'} ({confidence * 100:.0f}% confidence)")

    if wants_close:
        try:
            did_close = executor.close_once(number, "completed")
        except GitHubError as exc:
            _LOGGER.warning("#%d: close failed: %s", number, exc)
            actions.append({"type": "close", "issue": number, "status": "failed", "detail": str(exc)})
        else:
            actions.append({"type": "close", "issue": number, "status": "executed" if did_close else "skipped"})
            console.print(f"  #{number}: [green]closed[/]")
            closed.append(
                TriageDecision(
                    issue_number=number,
                    aggregate_confidence=confidence,
                    risk_tier=RiskTier.HIGH,
                    rationale=f"Addressed in v{version}",
                    actions=(
                        TriageAction(ActionType.COMMENT, "Post release comment", {"kind": "post_release"}),
                        TriageAction(ActionType.CLOSE, "Close as fixed in release", {"state_reason": "completed"}),
                    ),
                )
            )
    return actions


def _process_cross_repo_issue(
    entry: dict[str, Any],
    config: dict[str, Any],
    executor: ActionExecutor,
    version: str,
    url: str,
    thresholds: Thresholds,
    dry_run: bool,
) -> dict[str, Any] | None:
    number = int(entry["number"])
    repo = str(entry.get("repo") or "")
    confidence = float(entry.get("confidence") or 0.0)
    if not repo or confidence < thresholds.comment:
        return None
    action: dict[str, Any] = {"type": "cross_repo_comment", "issue": number, "repo": repo}
    if dry_run:
        return {**action, "status": "dry_run"}

    body = build_cross_repo_comment(config, version, url, confidence, thresholds)
    try:
        posted = executor.post_comment_once(
            number, body, cross_repo_release_marker(version, repo, number), repo=repo
        )
    except GitHubError as exc:
        _LOGGER.warning("%s#%d: release comment failed: %s", repo, number, exc)
        return {**action, "status": "failed", "detail": str(exc)}
    console.print(f"  {repo}#{number}: {'commented' if posted else 'already commented'}")
    return {**action, "status": "executed" if posted else "skipped"}


def _update_linked_issues(
    config: dict[str, Any],
    repo_root: Path,
    version: str,
    manifest: dict[str, Any],
    actions: list[dict[str, Any]],
) -> None:
    version_dir = repo_root / config["repository"]["release_notes_path"] / f"v{version}"
    if not version_dir.is_dir():
        _LOGGER.debug("No release notes directory %s; linked_issues.json not updated", version_dir)
        return

    touched = {
        (action.get("repo"), action["issue"])
        for action in actions
        if action.get("status") in ("executed", "skipped") and "issue" in action
    }
    path = version_dir / "linked_issues.json"
    added = 0
    for entry in manifest["github_issues"]:
        if (None, int(entry["number"])) in touched:
            added += add_linked_issue(
                path,
                {"number": int(entry["number"]), "confidence": entry.get("confidence"), "source": "post_release"},
            )
    for entry in manifest["cross_repo_issues"]:
        if (entry.get("repo"), int(entry["number"])) in touched:
            added += add_linked_issue(
                path,
                {
                    "number": f"{entry['repo']}#{entry['number']}",
                    "confidence": entry.get("confidence"),
                    "source": "cross_repo_release",
                },
            )
    if added:
        console.print(f"  Recorded {added} issue(s) in {path}")
