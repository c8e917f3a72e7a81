"""Data model for triage runs: plans, investigation results, decisions and checkpoints."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AgentType(str, Enum):
    CODE_ANALYSIS = "code_analysis"
    PR_CORRELATION = "pr_correlation"
    DUPLICATE = "duplicate"
    SENTIMENT = "sentiment"
    CHANGELOG = "changelog"
    RELEASE_CORRELATION = "release_correlation"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionType(str, Enum):
    LABEL = "label"
    COMMENT = "comment"
    CLOSE = "close"
    LINK_PR = "link_pr"
    LINK_ISSUE = "link_issue"


class Phase(str, Enum):
    """Orchestrator states. Each value names the last phase that completed."""

    PLANNED = "planned"
    INVESTIGATED = "investigated"
    ACTED = "acted"
    VERIFIED = "verified"
    LINKED = "linked"
    CROSS_REPO_LINKED = "cross_repo_linked"
    DONE = "done"
    FAILED = "failed"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _to_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def clamp_confidence(value: Any) -> float:
    """Coerce to [0, 1]; NaN and infinities count as no confidence."""
    return max(0.0, min(1.0, _to_float(value)))


@dataclass(frozen=True)
class RunState:
    """Tagged orchestrator state; `failed_phase` and `error` are only set for FAILED."""

    phase: Phase
    failed_phase: Phase | None = None
    error: str | None = None

    @classmethod
    def failed(cls, failed_phase: Phase, error: str) -> "RunState":
        return cls(Phase.FAILED, failed_phase=failed_phase, error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"state": self.phase.value}
        if self.phase is Phase.FAILED:
            payload["failed_phase"] = self.failed_phase.value if self.failed_phase else None
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RunState":
        phase = Phase(raw["state"])
        if phase is Phase.FAILED:
            failed_phase = raw.get("failed_phase")
            return cls(
                phase,
                failed_phase=Phase(failed_phase) if failed_phase else None,
                error=raw.get("error"),
            )
        return cls(phase)


@dataclass(frozen=True)
class TriageTask:
    id: str
    agent: AgentType

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "agent": self.agent.value}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TriageTask":
        return cls(id=str(raw["id"]), agent=AgentType(raw["agent"]))


@dataclass(frozen=True)
class IssuePlan:
    number: int
    title: str
    author: str = ""
    existing_labels: tuple[str, ...] = ()
    tasks: tuple[TriageTask, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "author": self.author,
            "existing_labels": list(self.existing_labels),
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "IssuePlan":
        return cls(
            number=int(raw["number"]),
            title=str(raw.get("title", "")),
            author=str(raw.get("author", "")),
            existing_labels=tuple(str(label) for label in _to_list(raw.get("existing_labels"))),
            tasks=tuple(TriageTask.from_dict(task) for task in _to_list(raw.get("tasks"))),
        )


@dataclass(frozen=True)
class GamePlan:
    plan_id: str
    created_at: str
    issues: tuple[IssuePlan, ...] = ()

    @classmethod
    def new(cls, issues: list[IssuePlan]) -> "GamePlan":
        now = datetime.now(timezone.utc)
        plan_id = f"triage-{now.strftime('%Y-%m-%d')}-{os.getpid()}_{int(now.timestamp() * 1000)}"
        return cls(plan_id=plan_id, created_at=now.isoformat(), issues=tuple(issues))

    @property
    def task_count(self) -> int:
        return sum(len(issue.tasks) for issue in self.issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "created_at": self.created_at,
            "issues": [issue.to_dict() for issue in self.issues],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GamePlan":
        return cls(
            plan_id=str(raw["plan_id"]),
            created_at=str(raw.get("created_at", "")),
            issues=tuple(IssuePlan.from_dict(issue) for issue in _to_list(raw.get("issues"))),
        )


@dataclass(frozen=True)
class InvestigationTask:
    """One (issue, specialty) pair ready for the agent service."""

    task_id: str
    issue_number: int
    agent: AgentType
    prompt: str
    allowed_tools: tuple[str, ...]
    model: str
    file_includes: tuple[str, ...] = ()


@dataclass(frozen=True)
class RelatedEntity:
    type: str  # pr, issue, commit, file
    id: str
    description: str = ""
    relevance: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "description": self.description,
            "relevance": self.relevance,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RelatedEntity":
        return cls(
            type=str(raw.get("type", "")),
            id=str(raw.get("id", "")).lstrip("#"),
            description=str(raw.get("description") or ""),
            relevance=clamp_confidence(raw.get("relevance", 0.5)),
        )


@dataclass(frozen=True)
class InvestigationResult:
    agent_id: str
    issue_number: int
    confidence: float
    summary: str
    evidence: tuple[str, ...] = ()
    recommended_labels: tuple[str, ...] = ()
    suggested_comment: str | None = None
    suggest_close: bool = False
    close_reason: str | None = None
    related_entities: tuple[RelatedEntity, ...] = ()
    turns_used: int = 0
    tool_calls_made: int = 0
    duration_ms: int = 0

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    @property
    def failed_investigation(self) -> bool:
        return self.summary.startswith("Investigation failed:")

    @classmethod
    def failed(cls, agent_id: str, issue_number: int, error: str, duration_ms: int = 0) -> "InvestigationResult":
        return cls(
            agent_id=agent_id,
            issue_number=issue_number,
            confidence=0.0,
            summary=f"Investigation failed: {error}",
            evidence=(f"Agent failed: {error}",),
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "issue_number": self.issue_number,
            "confidence": self.confidence,
            "summary": self.summary,
            "evidence": list(self.evidence),
            "recommended_labels": list(self.recommended_labels),
            "suggested_comment": self.suggested_comment,
            "suggest_close": self.suggest_close,
            "close_reason": self.close_reason,
            "related_entities": [entity.to_dict() for entity in self.related_entities],
            "turns_used": self.turns_used,
            "tool_calls_made": self.tool_calls_made,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "InvestigationResult":
        """Build a result from agent JSON, clamping confidence into [0, 1]."""
        entities = [
            RelatedEntity.from_dict(entity)
            for entity in _to_list(raw.get("related_entities"))
            if isinstance(entity, dict)
        ]
        comment = raw.get("suggested_comment")
        close_reason = raw.get("close_reason")
        return cls(
            agent_id=str(raw.get("agent_id", "unknown")),
            issue_number=int(_to_float(raw.get("issue_number"), 0)),
            confidence=clamp_confidence(raw.get("confidence")),
            summary=str(raw.get("summary") or ""),
            evidence=tuple(str(item) for item in _to_list(raw.get("evidence"))),
            recommended_labels=tuple(
                str(label) for label in _to_list(raw.get("recommended_labels")) if str(label).strip()
            ),
            suggested_comment=str(comment) if comment else None,
            suggest_close=bool(raw.get("suggest_close", False)),
            close_reason=str(close_reason) if close_reason else None,
            related_entities=tuple(entities),
            turns_used=int(_to_float(raw.get("turns_used"), 0)),
            tool_calls_made=int(_to_float(raw.get("tool_calls_made"), 0)),
            duration_ms=int(_to_float(raw.get("duration_ms"), 0)),
        )


@dataclass(frozen=True)
class TriageAction:
    type: ActionType
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "description": self.description, "parameters": dict(self.parameters)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TriageAction":
        return cls(
            type=ActionType(raw["type"]),
            description=str(raw.get("description", "")),
            parameters=dict(raw.get("parameters") or {}),
        )


@dataclass(frozen=True)
class TriageDecision:
    issue_number: int
    aggregate_confidence: float
    risk_tier: RiskTier
    rationale: str
    actions: tuple[TriageAction, ...] = ()

    @property
    def closes_issue(self) -> bool:
        return any(action.type is ActionType.CLOSE for action in self.actions)

    def labels(self) -> list[str]:
        labels: list[str] = []
        for action in self.actions:
            if action.type is ActionType.LABEL:
                for label in action.parameters.get("labels", []):
                    if label not in labels:
                        labels.append(label)
        return labels

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "aggregate_confidence": self.aggregate_confidence,
            "risk_tier": self.risk_tier.value,
            "rationale": self.rationale,
            "actions": [action.to_dict() for action in self.actions],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TriageDecision":
        return cls(
            issue_number=int(raw["issue_number"]),
            aggregate_confidence=clamp_confidence(raw.get("aggregate_confidence")),
            risk_tier=RiskTier(raw.get("risk_tier", RiskTier.LOW.value)),
            rationale=str(raw.get("rationale", "")),
            actions=tuple(TriageAction.from_dict(action) for action in _to_list(raw.get("actions"))),
        )


@dataclass
class Checkpoint:
    """Resumable orchestrator state, rewritten after every phase transition."""

    run_id: str
    state: RunState
    mode: str
    game_plan: GamePlan
    results: dict[int, list[InvestigationResult]] = field(default_factory=dict)
    decisions: dict[int, TriageDecision] = field(default_factory=dict)
    dry_run: bool = False
    saved_at: str = ""

    def results_for(self, issue_number: int) -> list[InvestigationResult]:
        return self.results.get(issue_number, [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.state.to_dict(),
            "mode": self.mode,
            "dry_run": self.dry_run,
            "game_plan": self.game_plan.to_dict(),
            "results": {
                str(number): [result.to_dict() for result in results]
                for number, results in sorted(self.results.items())
            },
            "decisions": {
                str(number): decision.to_dict() for number, decision in sorted(self.decisions.items())
            },
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Checkpoint":
        results = {
            int(number): [InvestigationResult.from_dict(item) for item in _to_list(items)]
            for number, items in (raw.get("results") or {}).items()
        }
        decisions = {
            int(number): TriageDecision.from_dict(item)
            for number, item in (raw.get("decisions") or {}).items()
        }
        return cls(
            run_id=str(raw["run_id"]),
            state=RunState.from_dict(raw["phase"]),
            mode=str(raw.get("mode", "single")),
            game_plan=GamePlan.from_dict(raw["game_plan"]),
            results=results,
            decisions=decisions,
            dry_run=bool(raw.get("dry_run", False)),
            saved_at=str(raw.get("saved_at", "")),
        )
