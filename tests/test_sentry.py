import httpx

from repo_triage.sentry import fetch_unresolved_issues, match_changed_files

SENTRY_CFG = {
    "organization": "acme",
    "projects": ["widget-app"],
    "recent_errors_hours": 168,
    "token_env": "SENTRY_AUTH_TOKEN",
    "base_url": "https://sentry.example/api/0",
}


class _Response:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://sentry.example")
            raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(self.status_code))

    def json(self):
        return self._payload


def test_fetch_unresolved_issues_normalizes(monkeypatch):
    monkeypatch.setenv("SENTRY_AUTH_TOKEN", "secret")
    captured = {}

    def fake_get(url, headers=None, params=None, timeout=None):
        captured.update(url=url, headers=headers, params=params)
        return _Response(
            [
                {
                    "id": "123",
                    "shortId": "WIDGET-1",
                    "title": "FormatException",
                    "culprit": "yaml_loader.dart in parse",
                    "count": "17",
                    "lastSeen": "2026-10-01T00:00:00Z",
                    "metadata": {"filename": "lib/src/parser/yaml_loader.dart"},
                }
            ]
        )

    monkeypatch.setattr("repo_triage.sentry.httpx.get", fake_get)

    issues = fetch_unresolved_issues(SENTRY_CFG)

    assert captured["url"] == "https://sentry.example/api/0/projects/acme/widget-app/issues/"
    assert captured["headers"] == {"Authorization": "Bearer secret"}
    assert captured["params"] == {"query": "is:unresolved", "statsPeriod": "14d"}
    assert issues[0]["short_id"] == "WIDGET-1"
    assert issues[0]["count"] == 17
    assert issues[0]["project"] == "widget-app"


def test_fetch_skips_without_token_and_on_http_errors(monkeypatch):
    monkeypatch.delenv("SENTRY_AUTH_TOKEN", raising=False)
    assert fetch_unresolved_issues(SENTRY_CFG) == []

    monkeypatch.setenv("SENTRY_AUTH_TOKEN", "secret")
    monkeypatch.setattr("repo_triage.sentry.httpx.get", lambda *args, **kwargs: _Response([], status_code=500))
    assert fetch_unresolved_issues(SENTRY_CFG) == []


def test_match_changed_files_keeps_stack_trace_hits():
    issues = [
        {"id": "1", "culprit": "yaml_loader.dart in parse", "filename": ""},
        {"id": "2", "culprit": "network.dart in fetch", "filename": ""},
    ]

    matched = match_changed_files(issues, ["lib/src/parser/yaml_loader.dart", "lib/a.py"])

    assert [issue["id"] for issue in matched] == ["1"]
    assert matched[0]["confidence"] == 0.5
    assert "yaml_loader" in matched[0]["evidence"]
