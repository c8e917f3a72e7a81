"""Combine per-agent InvestigationResults into one TriageDecision.

Everything here is a pure function of the results and the configured
thresholds: results are put in a canonical order first and the mean uses
``math.fsum``, so the decision does not depend on input order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .models import ActionType, AgentType, InvestigationResult, RiskTier, TriageAction, TriageDecision

HIGH_CONFIDENCE = 0.7
AGREEMENT_STEP = 0.05

_AGENT_ORDER = [agent.value for agent in AgentType]


@dataclass(frozen=True)
class Thresholds:
    auto_close: float = 0.9
    suggest_close: float = 0.7
    comment: float = 0.5
    link_pr: float = 0.6
    link_issue: float = 0.7

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "Thresholds":
        values = config.get("thresholds", {})
        defaults = cls()
        return cls(**{name: float(values.get(name, getattr(defaults, name))) for name in cls.__dataclass_fields__})


def _canonical(results: list[InvestigationResult]) -> list[InvestigationResult]:
    def _key(result: InvestigationResult):
        rank = _AGENT_ORDER.index(result.agent_id) if result.agent_id in _AGENT_ORDER else len(_AGENT_ORDER)
        return (rank, result.agent_id, result.confidence, result.summary)

    return sorted(results, key=_key)


def aggregate_confidence(confidences: list[float]) -> float:
    """Mean confidence plus 0.05 per additional agent at or above 0.7, clamped to [0, 1]."""
    if not confidences:
        return 0.0
    mean = math.fsum(confidences) / len(confidences)
    high = sum(1 for value in confidences if value >= HIGH_CONFIDENCE)
    boost = max(0.0, AGREEMENT_STEP * (high - 1))
    return max(0.0, min(1.0, mean + boost))


def risk_tier(confidence: float, thresholds: Thresholds) -> RiskTier:
    if confidence >= thresholds.auto_close:
        return RiskTier.HIGH
    if confidence >= thresholds.suggest_close:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%"


def _summary_lines(results: list[InvestigationResult]) -> list[str]:
    return [f"- **{r.agent_id}** ({_pct(r.confidence)}): {r.summary}" for r in results if r.summary]


def _evidence_lines(results: list[InvestigationResult], limit: int = 3) -> list[str]:
    lines = []
    for result in results:
        if result.failed_investigation:
            continue
        for item in result.evidence[:limit]:
            lines.append(f"- {item}")
    return lines


def build_close_comment(results: list[InvestigationResult], confidence: float) -> str:
    lines = [
        "## Automated Triage: Resolved",
        "",
        f"Automated triage analyzed this issue and is **{_pct(confidence)} confident** that it has been resolved.",
        "",
        "### Investigation Summary",
        *_summary_lines(results),
    ]
    related_prs = [entity for r in results for entity in r.related_entities if entity.type == "pr"]
    if related_prs:
        lines += ["", "### Related Pull Requests"]
        seen = set()
        for pr in related_prs:
            if pr.id in seen:
                continue
            seen.add(pr.id)
            lines.append(f"- #{pr.id}: {pr.description}")
    lines += ["", "If this was closed in error, please reopen and it will be re-investigated."]
    return "\n".join(lines) + "\n"


def build_suggest_comment(results: list[InvestigationResult], confidence: float) -> str:
    lines = [
        "## Automated Triage: Likely Resolved",
        "",
        f"The analysis suggests this issue may be resolved ({_pct(confidence)} confidence), "
        "but a human should confirm before it is closed.",
        "",
        "### Findings",
        *_summary_lines(results),
    ]
    evidence = _evidence_lines(results)
    if evidence:
        lines += ["", "### Evidence", *evidence]
    lines += ["", "If this is resolved for you, please close the issue. Otherwise, reply with what is still failing."]
    return "\n".join(lines) + "\n"


def build_info_comment(results: list[InvestigationResult], confidence: float) -> str:
    lines = [
        "## Automated Triage: Investigation Update",
        "",
        f"Automated triage found related activity for this issue ({_pct(confidence)} confidence).",
        "",
        "### Findings",
        *_summary_lines(results),
    ]
    suggestions = [r.suggested_comment for r in results if r.suggested_comment]
    if suggestions:
        lines += ["", "### Notes", *(f"- {text}" for text in suggestions)]
    return "\n".join(lines) + "\n"


def build_rationale(results: list[InvestigationResult], confidence: float) -> str:
    lines = [f"Aggregate confidence: {confidence * 100:.1f}%", f"Results from {len(results)} agents:"]
    lines += [f"  - {r.agent_id}: {_pct(r.confidence)} -- {r.summary}" for r in results]
    return "\n".join(lines)


def _link_actions(results: list[InvestigationResult], thresholds: Thresholds) -> list[TriageAction]:
    best: dict[tuple[str, str], tuple[float, str]] = {}
    for result in results:
        for entity in result.related_entities:
            if not entity.id.isdigit():
                continue
            if entity.type == "pr" and entity.relevance >= thresholds.link_pr:
                key = ("pr", entity.id)
            elif entity.type == "issue" and entity.relevance >= thresholds.link_issue:
                key = ("issue", entity.id)
            else:
                continue
            if key not in best or entity.relevance > best[key][0]:
                best[key] = (entity.relevance, entity.description)

    actions = []
    ordered = sorted(best.items(), key=lambda item: (item[0][0], int(item[0][1])))
    for (kind, target), (relevance, description) in ordered:
        if kind == "pr":
            actions.append(
                TriageAction(
                    ActionType.LINK_PR,
                    f"Link to related PR #{target}",
                    {"pr_number": int(target), "relevance": relevance, "description": description},
                )
            )
        else:
            actions.append(
                TriageAction(
                    ActionType.LINK_ISSUE,
                    f"Link to related issue #{target}",
                    {"issue_number": int(target), "relevance": relevance, "description": description},
                )
            )
    return actions


def build_decision(
    issue_number: int,
    results: list[InvestigationResult],
    thresholds: Thresholds | None = None,
    needs_investigation_label: str = "needs-investigation",
) -> TriageDecision:
    thresholds = thresholds or Thresholds()
    ordered = _canonical(results)
    needs_investigation = TriageAction(
        ActionType.LABEL,
        f"Add {needs_investigation_label} label",
        {"labels": [needs_investigation_label]},
    )

    if not ordered:
        return TriageDecision(
            issue_number=issue_number,
            aggregate_confidence=0.0,
            risk_tier=RiskTier.LOW,
            rationale="No investigation results available.",
            actions=(needs_investigation,),
        )

    confidence = aggregate_confidence([r.confidence for r in ordered])
    tier = risk_tier(confidence, thresholds)
    labels = sorted({label for r in ordered for label in r.recommended_labels})

    actions: list[TriageAction] = []
    if confidence >= thresholds.comment and labels:
        actions.append(
            TriageAction(ActionType.LABEL, f"Apply recommended labels: {', '.join(labels)}", {"labels": labels})
        )

    if confidence >= thresholds.auto_close:
        closer = next((r for r in ordered if r.suggest_close), ordered[0])
        actions.append(
            TriageAction(
                ActionType.COMMENT,
                "Post detailed findings comment",
                {"kind": "resolved", "body": build_close_comment(ordered, confidence)},
            )
        )
        actions.append(
            TriageAction(
                ActionType.CLOSE,
                f"Auto-close with high confidence ({_pct(confidence)})",
                {"state": "closed", "state_reason": closer.close_reason or "completed"},
            )
        )
    elif confidence >= thresholds.suggest_close:
        actions.append(
            TriageAction(
                ActionType.COMMENT,
                "Post findings and suggest closure",
                {"kind": "suggest_close", "body": build_suggest_comment(ordered, confidence)},
            )
        )
    elif confidence >= thresholds.comment:
        actions.append(
            TriageAction(
                ActionType.COMMENT,
                "Post informational findings",
                {"kind": "info", "body": build_info_comment(ordered, confidence)},
            )
        )
    else:
        actions.append(needs_investigation)

    actions.extend(_link_actions(ordered, thresholds))

    return TriageDecision(
        issue_number=issue_number,
        aggregate_confidence=confidence,
        risk_tier=tier,
        rationale=build_rationale(ordered, confidence),
        actions=tuple(actions),
    )
