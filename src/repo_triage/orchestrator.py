"""Phase orchestrator: Plan -> Investigate -> Act -> Verify -> Link -> Cross-Repo-Link.

The run state is a ``Phase`` naming the last completed phase. ``TRANSITIONS``
gives the next phase, and a checkpoint is written after every transition so
``resume`` only has to load the checkpoint and continue the loop.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from rich.console import Console
from rich.table import Table

from .agent_service import AgentService, create_agent_service
from .aggregator import Thresholds, build_decision
from .dispatcher import AgentDispatcher, sort_results, summarize_results
from .errors import CheckpointError, PlanError, RunInterrupted
from .executor import ActionExecutor
from .github import GitHubClient
from .linker import Linker
from .models import Checkpoint, GamePlan, IssuePlan, Phase, RunState, TriageDecision, TriageTask
from .retry import RetryPolicy
from .run_lock import RunLock
from .run_store import RunStore, find_latest_run, list_runs, read_json
from .specialties import SPECIALTIES, specialties_for
from .verifier import verify_decisions

console = Console()
_LOGGER = logging.getLogger(__name__)

TRANSITIONS: dict[Phase, Phase] = {
    Phase.PLANNED: Phase.INVESTIGATED,
    Phase.INVESTIGATED: Phase.ACTED,
    Phase.ACTED: Phase.VERIFIED,
    Phase.VERIFIED: Phase.LINKED,
    Phase.LINKED: Phase.CROSS_REPO_LINKED,
    Phase.CROSS_REPO_LINKED: Phase.DONE,
}
PREVIOUS: dict[Phase, Phase] = {after: before for before, after in TRANSITIONS.items()}

PHASE_TITLES = {
    Phase.INVESTIGATED: "INVESTIGATE",
    Phase.ACTED: "ACT",
    Phase.VERIFIED: "VERIFY",
    Phase.LINKED: "LINK",
    Phase.CROSS_REPO_LINKED: "CROSS-REPO LINK",
    Phase.DONE: "DONE",
}

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def next_phase(current: Phase, dry_run: bool) -> Phase:
    """Next state after ``current``. Dry runs stop after Investigate."""
    if current not in TRANSITIONS:
        raise CheckpointError(f"No transition out of phase {current.value}")
    if dry_run and current is Phase.INVESTIGATED:
        return Phase.DONE
    return TRANSITIONS[current]


def resume_state(state: RunState) -> RunState:
    """State to re-enter from: a failed phase is retried from its predecessor."""
    if state.phase is Phase.DONE:
        raise PlanError("Run already completed; nothing to resume")
    if state.phase is Phase.FAILED:
        failed = state.failed_phase or Phase.INVESTIGATED
        return RunState(PREVIOUS.get(failed, Phase.PLANNED))
    return state


@contextlib.contextmanager
def _stop_on_interrupt(stop_event: threading.Event) -> Iterator[None]:
    """First Ctrl-C stops new agent tasks from starting; a second one aborts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        if stop_event.is_set():
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        console.print("[yellow]Stop requested: finishing in-flight agent tasks, then checkpointing.[/]")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class Orchestrator:
    def __init__(
        self,
        config: dict[str, Any],
        *,
        repo_root: str | Path = ".",
        github: GitHubClient | None = None,
        agent_service: AgentService | None = None,
        dry_run: bool = False,
        force: bool = False,
        reissue: bool = False,
        stop_event: threading.Event | None = None,
        show_progress: bool = True,
    ):
        self.config = config
        self.repo_root = Path(repo_root)
        self.github = github or GitHubClient.from_config(config)
        self.agent_service = agent_service or create_agent_service(config, self.repo_root)
        self.dry_run = dry_run
        self.force = force
        self.reissue = reissue
        self.stop_event = stop_event or threading.Event()
        self.show_progress = show_progress
        self.thresholds = Thresholds.from_config(config)
        self.triaged_label = config["repository"]["triaged_label"]
        self.needs_label = config["repository"]["needs_investigation_label"]
        self._steps: dict[Phase, Callable[[RunStore, Checkpoint], None]] = {
            Phase.INVESTIGATED: self._investigate,
            Phase.ACTED: self._act,
            Phase.VERIFIED: self._verify,
            Phase.LINKED: self._link,
            Phase.CROSS_REPO_LINKED: self._cross_repo_link,
            Phase.DONE: self._finish,
        }

    @property
    def runs_dir(self) -> Path:
        return self.repo_root / self.config["paths"]["runs_dir"]

    # Planning

    def _issue_plan(self, issue: dict[str, Any]) -> IssuePlan:
        specialties = specialties_for(self.config, self.repo_root)
        if not specialties:
            raise PlanError("No investigation agents are enabled")
        return IssuePlan(
            number=issue["number"],
            title=issue["title"],
            author=issue.get("author", ""),
            existing_labels=tuple(issue.get("labels", [])),
            tasks=tuple(TriageTask(s.task_id(issue["number"]), s.agent) for s in specialties),
        )

    def plan_single(self, issue_number: int) -> GamePlan:
        issue = self.github.view_issue(issue_number)
        return GamePlan.new([self._issue_plan(issue)])

    def plan_auto(self) -> GamePlan:
        gh_cfg = self.config["github"]
        issues = self.github.list_open_issues(
            exclude_label=self.triaged_label,
            per_page=int(gh_cfg.get("auto_page_size", 100)),
            max_pages=int(gh_cfg.get("auto_max_pages", 5)),
        )
        return GamePlan.new([self._issue_plan(issue) for issue in issues])

    # Entry points

    def run_single(self, issue_number: int) -> Checkpoint:
        return self._start("triage", {"issue": issue_number}, "single", lambda: self.plan_single(issue_number))

    def run_auto(self) -> Checkpoint:
        return self._start("auto", {}, "auto", self.plan_auto)

    def resume(self, run_id: str) -> Checkpoint:
        store = RunStore.open(self.runs_dir, run_id)
        checkpoint = store.load_checkpoint()
        if checkpoint is None:
            raise CheckpointError(f"Run {run_id} has no checkpoint to resume from")
        checkpoint.state = resume_state(checkpoint.state)
        self.dry_run = checkpoint.dry_run
        console.print(f"[bold]Resuming {run_id} after phase {checkpoint.state.phase.value}[/]")
        store.record_event("resume", phase=checkpoint.state.to_dict())

        with self._lock():
            return self._run_to_completion(store, checkpoint)

    @contextlib.contextmanager
    def _lock(self) -> Iterator[None]:
        if self.dry_run:
            yield
            return
        with RunLock(self.config["paths"]["lock_file"]) as lock:
            lock.acquire(force=self.force)
            yield

    def _start(
        self,
        command: str,
        args: dict[str, Any],
        mode: str,
        build_plan: Callable[[], GamePlan],
    ) -> Checkpoint:
        with self._lock():
            store = RunStore.create(
                self.runs_dir, command, {**args, "dry_run": self.dry_run}, repo_root=self.repo_root
            )
            console.print(f"[bold]Run {store.run_id}[/] ({mode}{', dry run' if self.dry_run else ''})")
            console.print("[bold]Phase 1 [PLAN][/]")
            try:
                plan = build_plan()
            except Exception:
                store.finalize(EXIT_FAILED)
                raise
            store.save_json("plan", "game_plan.json", plan.to_dict())
            console.print(f"  {len(plan.issues)} issue(s), {plan.task_count} investigation task(s)")

            checkpoint = Checkpoint(
                run_id=store.run_id,
                state=RunState(Phase.PLANNED),
                mode=mode,
                game_plan=plan,
                dry_run=self.dry_run,
            )
            store.save_checkpoint(checkpoint)
            return self._run_to_completion(store, checkpoint)

    def _run_to_completion(self, store: RunStore, checkpoint: Checkpoint) -> Checkpoint:
        exit_code = EXIT_FAILED
        try:
            self._drive(store, checkpoint)
            exit_code = EXIT_OK
        except RunInterrupted:
            exit_code = EXIT_INTERRUPTED
            raise
        except Exception:
            console.print(f"[red]Run {store.run_id} failed; resume with: repo-triage resume {store.run_id}[/]")
            raise
        finally:
            store.finalize(exit_code)
        return checkpoint

    def _drive(self, store: RunStore, checkpoint: Checkpoint) -> None:
        while checkpoint.state.phase not in (Phase.DONE, Phase.FAILED):
            target = next_phase(checkpoint.state.phase, checkpoint.dry_run)
            if target is not Phase.DONE:
                console.print(f"[bold]Phase [{PHASE_TITLES[target]}][/]")
            store.record_event("phase_start", phase=target.value)
            try:
                self._steps[target](store, checkpoint)
            except RunInterrupted:
                raise
            except Exception as exc:
                checkpoint.state = RunState.failed(target, f"{type(exc).__name__}: {exc}")
                store.save_checkpoint(checkpoint)
                _LOGGER.error("Phase %s failed: %s", target.value, exc)
                raise
            checkpoint.state = RunState(target)
            store.save_checkpoint(checkpoint)

    # Phases

    def decisions_for(self, checkpoint: Checkpoint) -> list[TriageDecision]:
        return [
            build_decision(issue.number, checkpoint.results_for(issue.number), self.thresholds, self.needs_label)
            for issue in checkpoint.game_plan.issues
        ]

    def _investigate(self, store: RunStore, checkpoint: Checkpoint) -> None:
        tasks = []
        reused = 0
        for issue in checkpoint.game_plan.issues:
            finished = {r.agent_id for r in checkpoint.results_for(issue.number) if not r.failed_investigation}
            for task in issue.tasks:
                if task.agent.value in finished:
                    reused += 1
                    continue
                tasks.append(SPECIALTIES[task.agent].build_task(issue, self.config))
        if reused:
            console.print(f"  Reusing {reused} completed result(s) from the checkpoint")

        dispatcher = AgentDispatcher(
            self.agent_service,
            store=store,
            retry_policy=RetryPolicy.from_config(self.config["gemini"]),
            max_concurrent=int(self.config["gemini"]["max_concurrent"]),
            stop_event=self.stop_event,
            show_progress=self.show_progress,
        )
        with _stop_on_interrupt(self.stop_event):
            outcome = dispatcher.dispatch(tasks)

        for number, new_results in outcome.results.items():
            replaced = {r.agent_id for r in new_results}
            kept = [r for r in checkpoint.results_for(number) if r.agent_id not in replaced]
            checkpoint.results[number] = sort_results(kept + new_results)

        store.save_json("investigate", "results.json", summarize_results(checkpoint.results))
        if outcome.errors:
            store.save_json("investigate", "task_errors.json", outcome.errors)

        if outcome.stopped:
            store.save_checkpoint(checkpoint)
            raise RunInterrupted(checkpoint.run_id)

        decisions = self.decisions_for(checkpoint)
        checkpoint.decisions = {decision.issue_number: decision for decision in decisions}
        for decision in decisions:
            count = len(checkpoint.results_for(decision.issue_number))
            console.print(
                f"  Issue #{decision.issue_number}: {count} result(s), "
                f"aggregate {decision.aggregate_confidence * 100:.0f}% -> {decision.risk_tier.value}"
            )

    def _act(self, store: RunStore, checkpoint: Checkpoint) -> None:
        executor = ActionExecutor(self.github, checkpoint.run_id, self.triaged_label, reissue=self.reissue)
        decisions = self.decisions_for(checkpoint)
        checkpoint.decisions = {decision.issue_number: decision for decision in decisions}
        entries = []
        for decision in decisions:
            report = executor.apply_decision(decision)
            status_color = "green" if report.status == "acted" else "yellow"
            console.print(f"  #{decision.issue_number}: [{status_color}]{report.status}[/] ({decision.risk_tier.value})")
            entries.append({**decision.to_dict(), "act": report.to_dict()})
        store.save_json("act", "triage_decisions.json", {"run_id": checkpoint.run_id, "decisions": entries})

    def _act_statuses(self, store: RunStore) -> dict[int, str]:
        payload = store.load_json("act", "triage_decisions.json", {}) or {}
        statuses = {}
        for entry in payload.get("decisions", []):
            act = entry.get("act") or {}
            statuses[int(entry["issue_number"])] = str(act.get("status", ""))
        return statuses

    def _verify(self, store: RunStore, checkpoint: Checkpoint) -> None:
        statuses = self._act_statuses(store)
        skip = {
            number: "issue was already closed"
            for number, status in statuses.items()
            if status == "skipped_closed"
        }
        report = verify_decisions(self.github, self.decisions_for(checkpoint), self.triaged_label, skip=skip)
        store.save_json("verify", "triage_verification.json", report)
        if not report["all_passed"]:
            console.print("[red]  Verification found problems; applied actions are left in place.[/]")

    def _acted_decisions(self, store: RunStore, checkpoint: Checkpoint) -> list[TriageDecision]:
        statuses = self._act_statuses(store)
        return [d for d in self.decisions_for(checkpoint) if statuses.get(d.issue_number) != "skipped_closed"]

    def _linker(self, checkpoint: Checkpoint) -> Linker:
        executor = ActionExecutor(self.github, checkpoint.run_id, self.triaged_label, reissue=self.reissue)
        return Linker(self.github, executor, self.repo_root, self.config)

    def _link(self, store: RunStore, checkpoint: Checkpoint) -> None:
        report = self._linker(checkpoint).link_all(self._acted_decisions(store, checkpoint))
        store.save_json("link", "triage_links.json", report)

    def _cross_repo_link(self, store: RunStore, checkpoint: Checkpoint) -> None:
        report = self._linker(checkpoint).cross_repo_link(
            checkpoint.game_plan, self._acted_decisions(store, checkpoint)
        )
        if not report["enabled"]:
            console.print("  Cross-repo linking disabled")
        store.save_json("cross_repo", "triage_cross_repo_links.json", report)

    def _finish(self, store: RunStore, checkpoint: Checkpoint) -> None:
        table = Table(title=f"Triage {checkpoint.run_id}")
        table.add_column("Issue", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Tier")
        table.add_column("Actions")
        for decision in self.decisions_for(checkpoint):
            table.add_row(
                f"#{decision.issue_number}",
                f"{decision.aggregate_confidence * 100:.0f}%",
                decision.risk_tier.value,
                ", ".join(action.type.value for action in decision.actions),
            )
        console.print(table)
        if checkpoint.dry_run:
            console.print("[yellow]Dry run: no labels, comments or closes were applied.[/]")


def triage_status(config: dict[str, Any], run_id: str | None = None, repo_root: str | Path = ".") -> dict[str, Any]:
    runs_dir = Path(repo_root) / config["paths"]["runs_dir"]
    selected = run_id.strip() if isinstance(run_id, str) and run_id.strip() and run_id != "latest" else None
    if not selected:
        selected = find_latest_run(runs_dir)
    if not selected:
        return {"run_id": None, "status": "unavailable", "message": "No runs found. Start triage first.", "exit_code": 5}

    try:
        store = RunStore.open(runs_dir, selected)
        checkpoint = store.load_checkpoint()
    except (PlanError, CheckpointError) as exc:
        return {"run_id": selected, "status": "unavailable", "message": str(exc), "exit_code": 5}

    meta = store.meta
    if checkpoint is None:
        return {
            "run_id": selected,
            "status": "unavailable",
            "message": f"Run {selected} has no checkpoint",
            "meta": meta,
            "exit_code": 5,
        }

    phase = checkpoint.state.phase
    verification = store.load_json("verify", "triage_verification.json", None)
    exit_code_map = {Phase.DONE: 0, Phase.FAILED: 4}
    return {
        "run_id": selected,
        "status": phase.value,
        "phase": checkpoint.state.to_dict(),
        "mode": checkpoint.mode,
        "dry_run": checkpoint.dry_run,
        "command": meta.get("command"),
        "started_at": meta.get("started_at"),
        "completed_at": meta.get("completed_at"),
        "issues": [
            {
                "number": decision.issue_number,
                "confidence": round(decision.aggregate_confidence, 4),
                "risk_tier": decision.risk_tier.value,
            }
            for decision in checkpoint.decisions.values()
        ],
        "verification_passed": verification.get("all_passed") if isinstance(verification, dict) else None,
        "exit_code": exit_code_map.get(phase, 2),
    }


def recent_runs(config: dict[str, Any], repo_root: str | Path = ".", limit: int = 10) -> list[dict[str, Any]]:
    runs_dir = Path(repo_root) / config["paths"]["runs_dir"]
    rows = []
    for meta in list_runs(runs_dir)[:limit]:
        checkpoint = read_json(runs_dir / meta["run_id"] / "checkpoint.json", {}) or {}
        phase = checkpoint.get("phase") or {}
        rows.append(
            {
                "run_id": meta["run_id"],
                "command": meta.get("command", ""),
                "phase": phase.get("state", "unknown"),
                "issues": len((checkpoint.get("game_plan") or {}).get("issues", [])),
                "exit_code": meta.get("exit_code"),
            }
        )
    return rows
