"""Verify phase: re-read acted-upon issues and check the intended post-conditions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console

from .errors import GitHubError
from .github import GitHubClient
from .models import ActionType, TriageDecision

console = Console()
_LOGGER = logging.getLogger(__name__)


@dataclass
class Check:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class IssueVerification:
    issue_number: int
    checks: list[Check] = field(default_factory=list)
    skipped: str = ""

    @property
    def passed(self) -> bool:
        return bool(self.skipped) or all(check.passed for check in self.checks)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "issue_number": self.issue_number,
            "passed": self.passed,
            "checks": [{"name": c.name, "passed": c.passed, "detail": c.detail} for c in self.checks],
        }
        if self.skipped:
            payload["skipped"] = self.skipped
        return payload


def verify_issue(
    github: GitHubClient,
    decision: TriageDecision,
    triaged_label: str | None = "triaged",
) -> IssueVerification:
    number = decision.issue_number
    result = IssueVerification(issue_number=number)
    try:
        issue = github.view_issue(number)
    except GitHubError as exc:
        result.checks.append(Check("fetch", False, str(exc)))
        return result

    labels = set(issue["labels"])
    for label in decision.labels():
        result.checks.append(Check(f"label:{label}", label in labels, "present" if label in labels else "missing"))

    expected_state = "CLOSED" if decision.closes_issue else "OPEN"
    result.checks.append(
        Check("state", issue["state"] == expected_state, f"expected {expected_state}, found {issue['state']}")
    )

    if any(action.type is ActionType.COMMENT for action in decision.actions):
        count = issue["comment_count"]
        result.checks.append(Check("comment", count > 0, f"{count} comment(s)"))

    if triaged_label:
        present = triaged_label in labels
        result.checks.append(Check(f"label:{triaged_label}", present, "present" if present else "missing"))
    return result


def verify_decisions(
    github: GitHubClient,
    decisions: list[TriageDecision],
    triaged_label: str | None = "triaged",
    skip: dict[int, str] | None = None,
) -> dict[str, Any]:
    """Verify each decision. Failures are reported, never rolled back."""
    skip = skip or {}
    issues = []
    for decision in decisions:
        if decision.issue_number in skip:
            issues.append(IssueVerification(decision.issue_number, skipped=skip[decision.issue_number]))
            continue
        verification = verify_issue(github, decision, triaged_label)
        if verification.passed:
            console.print(f"  #{decision.issue_number}: [green]verified[/]")
        else:
            failed = ", ".join(f"{c.name} ({c.detail})" for c in verification.checks if not c.passed)
            console.print(f"  #{decision.issue_number}: [red]verification failed: {failed}[/]")
            _LOGGER.warning("Verification failed for #%d: %s", decision.issue_number, failed)
        issues.append(verification)

    return {
        "all_passed": all(item.passed for item in issues),
        "issues": [item.to_dict() for item in issues],
    }
