"""Link and Cross-Repo-Link phases."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from rich.console import Console

from .config import repo_slug
from .errors import GitHubError
from .executor import ActionExecutor
from .github import GitHubClient
from .models import ActionType, GamePlan, TriageDecision, utc_now
from .run_store import read_json, write_json_atomic

console = Console()
_LOGGER = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "with", "when", "not", "but", "this", "that", "from", "into", "are",
        "was", "were", "has", "have", "had", "does", "doesn", "don", "can", "cannot", "can't",
        "should", "would", "could", "will", "after", "before", "while", "using", "use", "via",
        "bug", "issue", "error", "fails", "failed", "failing", "broken", "crash", "crashes",
        "feature", "request", "support", "add", "allow", "make", "there", "their", "its",
        "what", "which", "why", "how", "all", "any", "some", "more", "than", "then", "also",
    }
)


def link_marker(issue_number: int, kind: str, target: str) -> str:
    return f"<!-- triage-link:{issue_number}:{kind}:{target} -->"


def cross_repo_marker(source_repo: str, issue_number: int) -> str:
    return f"<!-- cross-repo-triage:{source_repo}#{issue_number} -->"


def build_cross_repo_comment(source_repo: str, issue_number: int, title: str, decision: TriageDecision) -> str:
    if source_repo:
        url = f"https://github.com/{source_repo}/issues/{issue_number}"
        reference = f"Related issue in **{source_repo}**: [#{issue_number}]({url})"
    else:
        reference = f"Related issue #{issue_number} in the triaged repository"
    return "\n".join(
        [
            "## Cross-Repository Reference",
            "",
            reference,
            "",
            f"**{title}**",
            "",
            f"Confidence: {decision.aggregate_confidence * 100:.0f}% | Risk: {decision.risk_tier.value}",
        ]
    )


def extract_search_terms(title: str, max_terms: int = 5) -> list[str]:
    """Salient words from an issue title: punctuation and stop-words removed, first N unique kept."""
    words = re.sub(r"[^\w\s-]", " ", title.lower()).split()
    terms: list[str] = []
    for word in words:
        word = word.strip("-_")
        if len(word) <= 2 or word in STOP_WORDS or word.isdigit():
            continue
        if word not in terms:
            terms.append(word)
        if len(terms) >= max_terms:
            break
    return terms


def _mentions_issue(text: str, issue_number: int) -> bool:
    return re.search(rf"#{issue_number}\b", text) is not None


@dataclass
class LinkRecord:
    source_issue: int
    target_type: str
    target_id: str
    description: str
    applied: bool = False
    posted: bool = False
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Linker:
    def __init__(self, github: GitHubClient, executor: ActionExecutor, repo_root: str | Path, config: dict[str, Any]):
        self.github = github
        self.executor = executor
        self.repo_root = Path(repo_root)
        self.config = config

    @property
    def changelog_path(self) -> Path:
        return self.repo_root / self.config["repository"].get("changelog_path", "CHANGELOG.md")

    @property
    def release_notes_dir(self) -> Path:
        return self.repo_root / self.config["repository"].get("release_notes_path", "release_notes")

    def _post_link(self, record: LinkRecord, number: int, body: str, marker: str, repo: str | None = None) -> None:
        try:
            record.posted = self.executor.post_comment_once(number, body, marker, repo=repo)
            record.applied = True
        except GitHubError as exc:
            record.error = str(exc)
            _LOGGER.warning("#%d: link to %s %s failed: %s", number, record.target_type, record.target_id, exc)

    def link_decision(self, decision: TriageDecision) -> list[LinkRecord]:
        number = decision.issue_number
        records: list[LinkRecord] = []

        for action in decision.actions:
            if action.type is ActionType.LINK_PR:
                pr_number = int(action.parameters["pr_number"])
                description = str(action.parameters.get("description") or "")
                record = LinkRecord(number, "pr", str(pr_number), description)
                try:
                    pr = self.github.view_pull_request(pr_number)
                except GitHubError as exc:
                    _LOGGER.info("Could not read PR #%d: %s", pr_number, exc)
                    pr = {}
                title = pr.get("title") or description
                state = str(pr.get("state") or "").lower()
                suffix = f" ({state})" if state else ""
                body = f"Linked by triage: PR #{pr_number}{suffix}" + (f" -- {title}" if title else "")
                self._post_link(record, number, body, link_marker(number, "pr", str(pr_number)))
                records.append(record)

            elif action.type is ActionType.LINK_ISSUE:
                other = int(action.parameters["issue_number"])
                if other == number:
                    continue
                description = str(action.parameters.get("description") or "")
                record = LinkRecord(number, "issue", str(other), description)
                body = f"Related: #{other}" + (f" -- {description}" if description else "")
                self._post_link(record, number, body, link_marker(number, "issue", str(other)))
                if record.applied:
                    back = f"Related: #{number}" + (f" -- {description}" if description else "")
                    self._post_link(
                        LinkRecord(other, "issue", str(number), description),
                        other,
                        back,
                        link_marker(other, "issue", str(number)),
                    )
                records.append(record)

        records.extend(self._release_links(decision))
        return records

    def _release_links(self, decision: TriageDecision) -> list[LinkRecord]:
        number = decision.issue_number
        records = []
        changelog = self.changelog_path
        if changelog.exists() and _mentions_issue(changelog.read_text(encoding="utf-8"), number):
            records.append(
                LinkRecord(number, "changelog", changelog.name, f"Issue referenced in {changelog.name}", applied=True)
            )

        if self.release_notes_dir.is_dir():
            for version_dir in sorted(p for p in self.release_notes_dir.iterdir() if p.is_dir()):
                notes = version_dir / "release_notes.md"
                if not notes.exists() or not _mentions_issue(notes.read_text(encoding="utf-8"), number):
                    continue
                records.append(
                    LinkRecord(
                        number,
                        "release_notes",
                        version_dir.name,
                        f"Issue referenced in release notes {version_dir.name}",
                        applied=True,
                    )
                )
                add_linked_issue(
                    version_dir / "linked_issues.json",
                    {
                        "number": number,
                        "confidence": decision.aggregate_confidence,
                        "risk_tier": decision.risk_tier.value,
                    },
                )
        return records

    def link_all(self, decisions: list[TriageDecision]) -> dict[str, Any]:
        records: list[LinkRecord] = []
        for decision in decisions:
            records.extend(self.link_decision(decision))
        applied = sum(1 for record in records if record.applied)
        console.print(f"  Links: {applied}/{len(records)} applied")
        return {"links": [record.to_dict() for record in records], "timestamp": utc_now()}

    def cross_repo_link(self, plan: GamePlan, decisions: list[TriageDecision]) -> dict[str, Any]:
        """Post a cross-reference on matching open issues in each configured dependent repo.

        Only issues with a decision (those acted on) are linked. The comment
        lands on the dependent repo's issue and carries a marker naming the
        source issue, so a repeated run finds it and posts nothing.
        """
        cross_cfg = self.config.get("cross_repo", {})
        if not cross_cfg.get("enabled"):
            return {"enabled": False, "links": [], "timestamp": utc_now()}

        max_terms = int(cross_cfg.get("max_search_terms", 5))
        max_matches = int(cross_cfg.get("max_matches", 3))
        source_repo = repo_slug(self.config) or ""
        by_number = {decision.issue_number: decision for decision in decisions}
        records: list[LinkRecord] = []

        for issue in plan.issues:
            decision = by_number.get(issue.number)
            if decision is None:
                continue
            terms = extract_search_terms(issue.title, max_terms)
            if not terms:
                continue
            body = build_cross_repo_comment(source_repo, issue.number, issue.title, decision)
            marker = cross_repo_marker(source_repo, issue.number)
            for entry in cross_cfg.get("repos", []):
                repo = f"{entry['owner']}/{entry['repo']}"
                try:
                    matches = self.github.search_issues(terms, repo=repo, state="open", limit=max_matches)
                except GitHubError as exc:
                    _LOGGER.warning("Cross-repo search in %s failed: %s", repo, exc)
                    records.append(LinkRecord(issue.number, "cross_repo_search", repo, " ".join(terms), error=str(exc)))
                    continue
                for match in matches[:max_matches]:
                    target = f"{repo}#{match['number']}"
                    record = LinkRecord(issue.number, "cross_repo_issue", target, str(match.get("title") or ""))
                    self._post_link(record, int(match["number"]), body, marker, repo=repo)
                    records.append(record)

        return {"enabled": True, "links": [record.to_dict() for record in records], "timestamp": utc_now()}


def add_linked_issue(path: Path, entry: dict[str, Any]) -> bool:
    """Append ``entry`` to a release's linked_issues.json unless its number is already listed."""
    data = read_json(path, None)
    if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
        data = {"issues": []}
    if any(isinstance(item, dict) and item.get("number") == entry["number"] for item in data["issues"]):
        return False
    data["issues"].append({**entry, "linked_at": utc_now()})
    write_json_atomic(path, data)
    _LOGGER.debug("Recorded #%s in %s", entry["number"], path)
    return True
