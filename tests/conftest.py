import copy

import pytest

from repo_triage.agent_service import AgentResponse
from repo_triage.config import DEFAULT_CONFIG
from repo_triage.errors import GitHubError


class FakeGitHub:
    """In-memory tracker with the GitHubClient surface the pipeline uses."""

    def __init__(self, issues=None, pulls=None, search_results=None, close_works=True):
        self.issues = {}
        for issue in issues or []:
            self.add_issue(**issue)
        self.pulls = pulls or {}
        self.search_results = search_results or {}
        self.close_works = close_works
        self.mutations = []
        self.searches = []

    def add_issue(self, number, title="", state="OPEN", labels=(), comments=(), author="reporter", repo=None):
        self.issues[(repo, number)] = {
            "number": number,
            "title": title,
            "state": state,
            "author": author,
            "labels": list(labels),
            "comments": [dict(c) for c in comments],
            "url": f"https://github.com/acme/widget/issues/{number}",
        }

    def issue(self, number, repo=None):
        return self.issues[(repo, number)]

    def view_issue(self, number, repo=None):
        try:
            issue = self.issues[(repo, number)]
        except KeyError:
            raise GitHubError(f"issue {number} not found") from None
        return {
            **issue,
            "labels": list(issue["labels"]),
            "comments": [dict(c) for c in issue["comments"]],
            "comment_count": len(issue["comments"]),
        }

    def view_pull_request(self, number):
        return dict(self.pulls.get(number, {}))

    def list_open_issues(self, exclude_label=None, per_page=100, max_pages=5):
        return [
            self.view_issue(number)
            for (repo, number), issue in sorted(self.issues.items(), key=lambda item: item[0][1])
            if repo is None and issue["state"] == "OPEN" and exclude_label not in issue["labels"]
        ]

    def search_issues(self, terms, repo=None, state="open", limit=5):
        self.searches.append((repo, tuple(terms)))
        return list(self.search_results.get((repo, " ".join(terms)), []))[:limit]

    def add_labels(self, number, labels):
        self.mutations.append(("label", number, tuple(labels)))
        for label in labels:
            if label not in self.issues[(None, number)]["labels"]:
                self.issues[(None, number)]["labels"].append(label)

    def create_label(self, name):
        self.mutations.append(("create_label", name))

    def comment(self, number, body, repo=None):
        self.mutations.append(("comment", repo, number))
        self.issues[(repo, number)]["comments"].append({"author": "triage-bot", "body": body})

    def close(self, number, reason="completed"):
        self.mutations.append(("close", number, reason))
        if self.close_works:
            self.issues[(None, number)]["state"] = "CLOSED"

    def comments_on(self, number, repo=None):
        return [c["body"] for c in self.issues[(repo, number)]["comments"]]


class StubAgentService:
    """Returns canned payloads keyed by full task id or by task-id suffix; exceptions in the table are raised."""

    def __init__(self, payloads):
        self.payloads = payloads
        self.calls = []

    def invoke(self, prompt, allowed_tools, model, *, task_id="", file_includes=()):
        self.calls.append(task_id)
        key = task_id if task_id in self.payloads else task_id.rsplit("-", 1)[-1]
        outcome = self.payloads[key]
        if isinstance(outcome, Exception):
            raise outcome
        return AgentResponse(payload=outcome, raw="{}", stats={"tools": {"totalCalls": 2}})


def agent_payload(confidence, **extra):
    payload = {
        "confidence": confidence,
        "summary": f"Finding at {confidence}",
        "evidence": ["commit abc123 touches the parser"],
        "recommended_labels": [],
        "related_entities": [],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def config(tmp_path):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["repository"]["owner"] = "acme"
    cfg["repository"]["name"] = "widget"
    cfg["paths"]["lock_file"] = str(tmp_path / "triage.lock")
    return cfg


@pytest.fixture
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr("repo_triage.retry.time.sleep", delays.append)
    return delays
