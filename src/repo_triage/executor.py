"""Act phase: apply TriageDecisions to the tracker so that repeated runs converge."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import GitHubError
from .github import GitHubClient
from .models import ActionType, TriageAction, TriageDecision

_LOGGER = logging.getLogger(__name__)

EXECUTED = "executed"
SKIPPED = "skipped"
FAILED = "failed"


def triage_marker(run_id: str, issue_number: int, kind: str) -> str:
    return f"<!-- triage-bot:{run_id}:{issue_number}:{kind} -->"


def with_marker(body: str, marker: str) -> str:
    return f"{body.rstrip()}\n\n{marker}\n"


def has_marker(comments: list[dict[str, Any]], marker: str) -> bool:
    return any(marker in comment.get("body", "") for comment in comments)


def has_prior_triage_comment(comments: list[dict[str, Any]], issue_number: int, kind: str) -> bool:
    pattern = re.compile(rf"<!-- triage-bot:[^:\s]+:{issue_number}:{re.escape(kind)} -->")
    return any(pattern.search(comment.get("body", "")) for comment in comments)


@dataclass
class ActionOutcome:
    type: str
    description: str
    status: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IssueActReport:
    issue_number: int
    status: str = "acted"
    actions: list[ActionOutcome] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    commented: bool = False
    closed: bool = False

    @property
    def failures(self) -> list[ActionOutcome]:
        return [action for action in self.actions if action.status == FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "status": self.status,
            "labels": self.labels,
            "commented": self.commented,
            "closed": self.closed,
            "actions": [action.to_dict() for action in self.actions],
        }


class ActionExecutor:
    """Idempotent label/comment/close operations.

    Comments carry a hidden ``triage-bot`` marker naming the run, the issue and
    the comment kind. A comment is skipped when its exact marker is present,
    and also when an earlier run already posted the same kind on the issue
    unless ``reissue`` is set.
    """

    def __init__(self, github: GitHubClient, run_id: str, triaged_label: str = "triaged", reissue: bool = False):
        self.github = github
        self.run_id = run_id
        self.triaged_label = triaged_label
        self.reissue = reissue

    def ensure_labels(self, number: int, labels: list[str], current: list[str] | None = None) -> list[str]:
        """Add each missing label, creating it at the project level when needed. Returns labels added."""
        if current is None:
            current = self.github.view_issue(number)["labels"]
        present = set(current)
        added = []
        for label in labels:
            if label in present:
                continue
            try:
                self.github.add_labels(number, [label])
            except GitHubError as exc:
                if exc.transient:
                    raise
                _LOGGER.info("Adding label %r to #%d failed (%s); creating it", label, number, exc)
                self.github.create_label(label)
                self.github.add_labels(number, [label])
            present.add(label)
            current.append(label)
            added.append(label)
        return added

    def post_comment_once(
        self,
        number: int,
        body: str,
        marker: str,
        comments: list[dict[str, Any]] | None = None,
        repo: str | None = None,
        prior_kind: str | None = None,
    ) -> bool:
        """Post ``body`` with ``marker`` unless the marker (or a prior run's equivalent) is already there."""
        if comments is None:
            comments = self.github.view_issue(number, repo=repo)["comments"]
        if has_marker(comments, marker):
            return False
        if prior_kind and not self.reissue and has_prior_triage_comment(comments, number, prior_kind):
            return False
        full_body = with_marker(body, marker)
        self.github.comment(number, full_body, repo=repo)
        comments.append({"author": "", "body": full_body})
        return True

    def close_once(self, number: int, reason: str = "completed") -> bool:
        state = self.github.view_issue(number)["state"]
        if state == "CLOSED":
            return False
        self.github.close(number, reason)
        return True

    def apply_decision(self, decision: TriageDecision) -> IssueActReport:
        number = decision.issue_number
        report = IssueActReport(issue_number=number)
        try:
            issue = self.github.view_issue(number)
        except GitHubError as exc:
            report.status = FAILED
            report.actions.append(ActionOutcome("fetch", f"Read issue #{number}", FAILED, str(exc)))
            return report

        if issue["state"] == "CLOSED":
            report.status = "skipped_closed"
            report.actions.append(ActionOutcome("fetch", f"Issue #{number} is already closed", SKIPPED))
            return report

        labels = issue["labels"]
        comments = issue["comments"]
        actions = [a for a in decision.actions if a.type not in (ActionType.LINK_PR, ActionType.LINK_ISSUE)]
        actions.append(
            TriageAction(ActionType.LABEL, f"Add {self.triaged_label} label", {"labels": [self.triaged_label]})
        )

        for action in actions:
            report.actions.append(self._apply(number, action, labels, comments, report))

        if report.failures:
            report.status = "partial"
        return report

    def _apply(
        self,
        number: int,
        action: TriageAction,
        labels: list[str],
        comments: list[dict[str, Any]],
        report: IssueActReport,
    ) -> ActionOutcome:
        try:
            if action.type is ActionType.LABEL:
                wanted = list(action.parameters.get("labels", []))
                added = self.ensure_labels(number, wanted, current=labels)
                report.labels.extend(label for label in wanted if label not in report.labels)
                if not added:
                    return ActionOutcome(action.type.value, action.description, SKIPPED, "labels already present")
                return ActionOutcome(action.type.value, action.description, EXECUTED, ", ".join(added))

            if action.type is ActionType.COMMENT:
                kind = str(action.parameters.get("kind", "comment"))
                marker = triage_marker(self.run_id, number, kind)
                posted = self.post_comment_once(
                    number, str(action.parameters.get("body", "")), marker, comments=comments, prior_kind=kind
                )
                report.commented = True
                if not posted:
                    return ActionOutcome(action.type.value, action.description, SKIPPED, "comment already posted")
                return ActionOutcome(action.type.value, action.description, EXECUTED)

            if action.type is ActionType.CLOSE:
                reason = str(action.parameters.get("state_reason", "completed"))
                closed = self.close_once(number, reason)
                report.closed = True
                if not closed:
                    return ActionOutcome(action.type.value, action.description, SKIPPED, "already closed")
                return ActionOutcome(action.type.value, action.description, EXECUTED, reason)
        except GitHubError as exc:
            _LOGGER.warning("#%d: %s failed: %s", number, action.description, exc)
            return ActionOutcome(action.type.value, action.description, FAILED, str(exc))

        return ActionOutcome(action.type.value, action.description, SKIPPED, "not handled in Act")
