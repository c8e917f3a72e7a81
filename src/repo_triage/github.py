"""Issue-tracker access through the gh CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

from .config import repo_slug
from .errors import GitHubError
from .retry import RetryPolicy, call_with_retry

_LOGGER = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "rate limit",
    "secondary rate",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "temporarily",
    "try again",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "internal server error",
    "bad gateway",
    "service unavailable",
)

ISSUE_FIELDS = "number,title,state,labels,author,comments,url"


def _is_transient_stderr(stderr: str) -> bool:
    lower = stderr.lower()
    return any(marker in lower for marker in _TRANSIENT_MARKERS)


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, GitHubError) and exc.transient


def _label_names(raw_labels: Any) -> list[str]:
    names = []
    for label in raw_labels or []:
        if isinstance(label, dict):
            name = label.get("name")
        else:
            name = label
        if name:
            names.append(str(name))
    return names


def _login(raw_user: Any) -> str:
    if isinstance(raw_user, dict):
        return str(raw_user.get("login") or "")
    return str(raw_user or "")


def _normalize_issue(issue: dict) -> dict:
    """Normalize REST (`gh api`) and `gh issue view --json` payloads to one shape."""
    comments = issue.get("comments")
    comment_list = []
    if isinstance(comments, list):
        comment_list = [
            {
                "author": _login(comment.get("author") or comment.get("user")),
                "body": str(comment.get("body") or ""),
            }
            for comment in comments
            if isinstance(comment, dict)
        ]
    return {
        "number": int(issue["number"]),
        "title": str(issue.get("title") or ""),
        "state": str(issue.get("state") or "").upper(),
        "author": _login(issue.get("author") or issue.get("user")),
        "labels": _label_names(issue.get("labels")),
        "comments": comment_list,
        "comment_count": len(comment_list) if isinstance(comments, list) else int(comments or 0),
        "url": issue.get("url") or issue.get("html_url") or "",
    }


class GitHubClient:
    """Thin retrying wrapper over ``gh``.

    When ``repo`` is empty, commands run against the repository of the current
    working directory (``gh`` resolves ``{owner}/{repo}`` placeholders itself).
    """

    def __init__(self, repo: str | None = None, retry_policy: RetryPolicy | None = None):
        self.repo = repo or None
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "GitHubClient":
        return cls(
            repo_slug(config),
            RetryPolicy(
                max_attempts=int(config["github"]["max_retries"]),
                initial_backoff_ms=int(config["gemini"]["initial_backoff_ms"]),
                max_backoff_ms=int(config["gemini"]["max_backoff_ms"]),
            ),
        )

    def _repo_args(self, repo: str | None = None) -> list[str]:
        target = repo or self.repo
        return ["--repo", target] if target else []

    def _run_once(self, args: list[str], input_text: str | None = None) -> str:
        cmd = ["gh", *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, input=input_text)
        except FileNotFoundError as exc:
            raise GitHubError("gh CLI not found on PATH") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise GitHubError(
                f"gh {' '.join(args[:3])} failed: {stderr}",
                transient=_is_transient_stderr(stderr),
                stderr=stderr,
            )
        return result.stdout

    def run(self, args: list[str], input_text: str | None = None) -> str:
        return call_with_retry(
            lambda: self._run_once(args, input_text),
            self.retry_policy,
            _is_transient,
            label=f"gh {args[0] if args else ''}",
        )

    def run_json(self, args: list[str]) -> Any:
        output = self.run(args)
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise GitHubError(f"gh {' '.join(args[:3])} returned invalid JSON: {exc}") from exc

    # Reads

    def list_open_issues(
        self,
        exclude_label: str | None = None,
        per_page: int = 100,
        max_pages: int = 5,
    ) -> list[dict]:
        """List open issues (not PRs), skipping those carrying ``exclude_label``."""
        repo = self.repo or "{owner}/{repo}"
        per_page = max(1, min(per_page, 100))
        issues: list[dict] = []
        for page in range(1, max_pages + 1):
            endpoint = f"repos/{repo}/issues?state=open&per_page={per_page}&page={page}"
            batch = self.run_json(["api", endpoint]) or []
            if not batch:
                break
            for issue in batch:
                if "pull_request" in issue:
                    continue
                normalized = _normalize_issue(issue)
                if exclude_label and exclude_label in normalized["labels"]:
                    continue
                issues.append(normalized)
            if len(batch) < per_page:
                break
        return issues

    def view_issue(self, number: int, repo: str | None = None) -> dict:
        payload = self.run_json(
            ["issue", "view", str(number), "--json", ISSUE_FIELDS, *self._repo_args(repo)]
        )
        if not isinstance(payload, dict):
            raise GitHubError(f"gh issue view {number} returned no data")
        return _normalize_issue(payload)

    def view_pull_request(self, number: int) -> dict:
        payload = self.run_json(
            ["pr", "view", str(number), "--json", "number,title,state,url", *self._repo_args()]
        )
        return payload if isinstance(payload, dict) else {}

    def search_issues(
        self,
        terms: list[str],
        repo: str | None = None,
        state: str = "open",
        limit: int = 5,
    ) -> list[dict]:
        if not terms:
            return []
        args = ["search", "issues", *self._repo_args(repo), "--state", state, "--limit", str(limit)]
        args += ["--json", "number,title,url,state", "--", *terms]
        payload = self.run_json(args) or []
        return [item for item in payload if isinstance(item, dict) and "number" in item]

    # Writes

    def add_labels(self, number: int, labels: list[str]) -> None:
        self.run(["issue", "edit", str(number), "--add-label", ",".join(labels), *self._repo_args()])

    def create_label(self, name: str) -> None:
        self.run(["label", "create", name, "--force", *self._repo_args()])

    def comment(self, number: int, body: str, repo: str | None = None) -> None:
        self.run(
            ["issue", "comment", str(number), "--body-file", "-", *self._repo_args(repo)],
            input_text=body,
        )

    def close(self, number: int, reason: str = "completed") -> None:
        gh_reason = "not planned" if reason in {"not_planned", "not planned", "duplicate"} else "completed"
        self.run(["issue", "close", str(number), "--reason", gh_reason, *self._repo_args()])
