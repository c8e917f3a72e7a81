"""Investigate phase: fan InvestigationTasks out to the agent service on a bounded pool."""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any

from rich.console import Console
from rich.progress import Progress

from .agent_service import AgentResponse, AgentService
from .errors import AgentServiceError, TransientAgentError
from .models import AgentType, InvestigationResult, InvestigationTask
from .retry import RetryPolicy, call_with_retry
from .run_store import RunStore

console = Console()
_LOGGER = logging.getLogger(__name__)

AGENT_ORDER = [agent.value for agent in AgentType]


@dataclass
class DispatchOutcome:
    results: dict[int, list[InvestigationResult]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    not_started: list[str] = field(default_factory=list)

    @property
    def stopped(self) -> bool:
        return bool(self.not_started)


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, TransientAgentError)


def apply_specialty_rules(result: InvestigationResult) -> InvestigationResult:
    """Pin duplicate detection to 0.0 when it names no related issue."""
    if result.agent_id == AgentType.DUPLICATE.value and result.confidence > 0.0:
        if not any(entity.type == "issue" for entity in result.related_entities):
            return replace(result, confidence=0.0)
    return result


def sort_results(results: list[InvestigationResult]) -> list[InvestigationResult]:
    def _key(result: InvestigationResult) -> tuple[int, str]:
        if result.agent_id in AGENT_ORDER:
            return AGENT_ORDER.index(result.agent_id), result.agent_id
        return len(AGENT_ORDER), result.agent_id

    return sorted(results, key=_key)


class AgentDispatcher:
    def __init__(
        self,
        service: AgentService,
        store: RunStore | None = None,
        retry_policy: RetryPolicy | None = None,
        max_concurrent: int = 4,
        stop_event: threading.Event | None = None,
        show_progress: bool = True,
    ):
        self.service = service
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrent = max(1, max_concurrent)
        self.stop_event = stop_event or threading.Event()
        self.show_progress = show_progress

    def dispatch(self, tasks: list[InvestigationTask]) -> DispatchOutcome:
        outcome = DispatchOutcome()
        if not tasks:
            return outcome

        _LOGGER.info("Dispatching %d tasks (max %d concurrent)", len(tasks), self.max_concurrent)
        with ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="triage-agent") as pool:
            futures = {pool.submit(self._run_task, task): task for task in tasks}
            if self.show_progress:
                with Progress(console=console, transient=True) as progress:
                    bar = progress.add_task("Investigating...", total=len(tasks))
                    for future in as_completed(futures):
                        self._collect(futures[future], future.result(), outcome)
                        progress.update(bar, advance=1)
            else:
                for future in as_completed(futures):
                    self._collect(futures[future], future.result(), outcome)

        for number in outcome.results:
            outcome.results[number] = sort_results(outcome.results[number])

        succeeded = sum(len(results) for results in outcome.results.values()) - len(outcome.errors)
        _LOGGER.info(
            "Batch complete: %d succeeded, %d failed, %d not started",
            succeeded,
            len(outcome.errors),
            len(outcome.not_started),
        )
        return outcome

    def _collect(
        self,
        task: InvestigationTask,
        run: tuple[InvestigationResult, str | None] | None,
        outcome: DispatchOutcome,
    ) -> None:
        if run is None:
            outcome.not_started.append(task.task_id)
            return
        result, error = run
        outcome.results.setdefault(task.issue_number, []).append(result)
        if error:
            outcome.errors[task.task_id] = error

    def _run_task(self, task: InvestigationTask) -> tuple[InvestigationResult, str | None] | None:
        """Run one task to a result; failures become a 0.0 result. None means it never started."""
        if self.stop_event.is_set():
            return None

        self._audit_text(f"{task.task_id}_prompt.txt", task.prompt)
        started = time.monotonic()
        attempts = 0

        def _invoke() -> AgentResponse:
            nonlocal attempts
            attempts += 1
            _LOGGER.debug("[%s] attempt %d/%d", task.task_id, attempts, self.retry_policy.max_attempts)
            return self.service.invoke(
                task.prompt,
                list(task.allowed_tools),
                task.model,
                task_id=task.task_id,
                file_includes=task.file_includes,
            )

        try:
            response = call_with_retry(_invoke, self.retry_policy, _is_transient, label=task.task_id)
        except AgentServiceError as exc:
            return self._failure(task, started, attempts, exc.error_type, str(exc), exc.raw)
        except Exception as exc:
            _LOGGER.exception("[%s] unexpected agent failure", task.task_id)
            return self._failure(task, started, attempts, type(exc).__name__, str(exc), "")

        duration_ms = int((time.monotonic() - started) * 1000)
        self._audit_text(f"{task.task_id}_response.json", response.raw)
        try:
            parsed = InvestigationResult.from_dict(response.payload)
        except (TypeError, ValueError) as exc:
            return self._failure(task, started, attempts, "InvalidResult", str(exc), "")

        result = replace(
            parsed,
            agent_id=task.agent.value,
            issue_number=task.issue_number,
            turns_used=response.tool_calls,
            tool_calls_made=response.tool_calls,
            duration_ms=duration_ms,
        )
        return apply_specialty_rules(result), None

    def _failure(
        self,
        task: InvestigationTask,
        started: float,
        attempts: int,
        error_type: str,
        message: str,
        raw: str,
    ) -> tuple[InvestigationResult, str]:
        duration_ms = int((time.monotonic() - started) * 1000)
        _LOGGER.warning("[%s] failed after %d attempt(s): %s: %s", task.task_id, attempts, error_type, message)
        self._audit_text(
            f"{task.task_id}_response.json",
            raw
            or json.dumps(
                {"task_id": task.task_id, "error": {"type": error_type, "message": message}, "attempts": attempts},
                indent=2,
            ),
        )
        error = f"{error_type}: {message}"
        return InvestigationResult.failed(task.agent.value, task.issue_number, error, duration_ms=duration_ms), error

    def _audit_text(self, name: str, content: str) -> None:
        if self.store is not None:
            self.store.save_text("investigate", f"agents/{name}", content)


def summarize_results(results: dict[int, list[InvestigationResult]]) -> dict[str, Any]:
    return {
        str(number): [result.to_dict() for result in items] for number, items in sorted(results.items())
    }
