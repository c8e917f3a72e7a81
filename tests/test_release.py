import json
import subprocess

import pytest
from conftest import FakeGitHub, StubAgentService, agent_payload

from repo_triage.errors import FatalAgentError, ManifestError
from repo_triage.release import (
    extract_issue_refs,
    extract_keywords,
    load_manifest,
    post_release,
    post_release_marker,
    pre_release,
)

CHANGED = ["lib/src/parser/yaml_loader.dart", "docs/README.md"]
COMMITS = ["fix(parser): handle anchors in nested documents (#12)", "chore: bump version"]


def _unavailable_agent():
    return StubAgentService({"release": FatalAgentError("no output", error_type="NoJsonOutput")})


def _fake_git(monkeypatch):
    def fake_run(cmd, capture_output=True, text=True, cwd=None):
        if cmd[:3] == ["git", "diff", "--name-only"]:
            return subprocess.CompletedProcess(cmd, 0, stdout="\n".join(CHANGED) + "\n", stderr="")
        if cmd[:2] == ["git", "log"]:
            return subprocess.CompletedProcess(cmd, 0, stdout="\n".join(COMMITS) + "\n", stderr="")
        raise AssertionError(f"Unexpected command: {cmd}")

    monkeypatch.setattr("repo_triage.release.subprocess.run", fake_run)


def test_extract_keywords_from_paths_and_commit_subjects():
    assert extract_keywords(CHANGED, COMMITS) == [
        "yaml_loader",
        "parser",
        "README",
        "docs",
        "handle",
        "anchors",
        "nested",
        "version",
    ]
    assert extract_issue_refs(COMMITS + ["Revert #3, refs #12"]) == [3, 12]


def test_pre_release_builds_manifest(tmp_path, config, monkeypatch):
    _fake_git(monkeypatch)
    github = FakeGitHub(
        issues=[{"number": 12, "title": "Anchors break the parser"}],
        search_results={
            (None, "anchors"): [
                {"number": 12, "title": "Anchors break the parser"},
                {"number": 30, "title": "Nested anchors are slow"},
            ]
        },
    )

    manifest = pre_release(
        config, "v1.1.0", "1.2.0", repo_root=tmp_path, github=github, agent_service=_unavailable_agent()
    )

    by_number = {entry["number"]: entry for entry in manifest["github_issues"]}
    assert by_number[12]["category"] == "referenced"
    assert by_number[12]["confidence"] == 0.8
    assert by_number[30]["category"] == "keyword"
    assert by_number[30]["confidence"] == 0.5
    assert {entry["scored_by"] for entry in manifest["github_issues"]} == {"heuristic"}
    assert manifest["cross_repo_issues"] == []
    assert manifest["sentry_issues"] == []
    assert manifest["summary"].startswith("Found 2 GitHub issues, 0 cross-repo issues, and 0 Sentry errors")
    assert github.mutations == []
    assert len(github.searches) == 8


def _manifest(path):
    path.write_text(
        json.dumps(
            {
                "version": "1.2.0",
                "github_issues": [
                    {"number": 12, "title": "Anchors", "confidence": 0.95},
                    {"number": 30, "title": "Slow", "confidence": 0.6},
                    {"number": 40, "title": "Unrelated", "confidence": 0.3},
                ],
                "cross_repo_issues": [{"repo": "acme/app", "number": 90, "title": "App crash", "confidence": 0.8}],
                "sentry_issues": [],
            }
        )
    )
    return path


def _release_github():
    github = FakeGitHub(
        issues=[
            {"number": 12, "title": "Anchors"},
            {"number": 30, "title": "Slow"},
            {"number": 40, "title": "Unrelated"},
        ]
    )
    github.add_issue(90, title="App crash", repo="acme/app")
    return github


def test_post_release_comments_closes_and_verifies(tmp_path, config):
    manifest = _manifest(tmp_path / "manifest.json")
    notes = tmp_path / "release_notes" / "v1.2.0"
    notes.mkdir(parents=True)
    github = _release_github()

    report = post_release(
        config, "1.2.0", "v1.2.0", manifest_path=manifest, repo_root=tmp_path, github=github
    )

    assert github.issue(12)["state"] == "CLOSED"
    assert github.issue(30)["state"] == "OPEN"
    assert post_release_marker("1.2.0", 12) in github.comments_on(12)[0]
    assert "releases/tag/v1.2.0" in github.comments_on(12)[0]
    assert len(github.comments_on(30)) == 1
    assert github.comments_on(40) == []
    assert "Cross-Repository Release Notification" in github.comments_on(90, repo="acme/app")[0]
    assert report["verification"]["all_passed"] is True
    linked = json.loads((notes / "linked_issues.json").read_text())
    assert [entry["number"] for entry in linked["issues"]] == [12, 30, "acme/app#90"]
    assert not (tmp_path / "triage.lock").exists()


def test_post_release_twice_posts_nothing_new(tmp_path, config):
    manifest = _manifest(tmp_path / "manifest.json")
    github = _release_github()
    post_release(config, "1.2.0", "v1.2.0", manifest_path=manifest, repo_root=tmp_path, github=github)
    comments = len(github.mutations)

    post_release(config, "1.2.0", "v1.2.0", manifest_path=manifest, repo_root=tmp_path, github=github)

    assert [m for m in github.mutations[comments:] if m[0] in ("comment", "close")] == []


def test_post_release_dry_run_changes_nothing(tmp_path, config):
    manifest = _manifest(tmp_path / "manifest.json")
    github = _release_github()

    report = post_release(
        config, "1.2.0", "v1.2.0", manifest_path=manifest, repo_root=tmp_path, github=github, dry_run=True
    )

    assert github.mutations == []
    assert {(a["type"], a["issue"]) for a in report["actions_taken"]} == {
        ("comment", 12),
        ("close", 12),
        ("comment", 30),
        ("cross_repo_comment", 90),
    }


def test_post_release_uses_latest_pre_release_manifest(tmp_path, config, monkeypatch):
    _fake_git(monkeypatch)
    github = FakeGitHub(issues=[{"number": 12, "title": "Anchors break the parser"}])
    pre_release(config, "v1.1.0", "1.2.0", repo_root=tmp_path, github=github, agent_service=_unavailable_agent())

    post_release(config, "1.2.0", "v1.2.0", repo_root=tmp_path, github=github)

    assert len(github.comments_on(12)) == 1
    assert github.issue(12)["state"] == "OPEN"


def test_agent_scores_drive_the_manifest_and_post_release_closes(tmp_path, config, monkeypatch):
    _fake_git(monkeypatch)
    github = FakeGitHub(
        issues=[{"number": 12, "title": "Anchors break the parser"}, {"number": 30, "title": "Nested anchors are slow"}],
        search_results={(None, "anchors"): [{"number": 30, "title": "Nested anchors are slow"}]},
    )
    service = StubAgentService(
        {
            "issue-12-release": agent_payload(0.95, summary="Commit abc123 fixes anchor parsing"),
            "issue-30-release": agent_payload(0.1),
        }
    )

    manifest = pre_release(config, "v1.1.0", "1.2.0", repo_root=tmp_path, github=github, agent_service=service)

    assert sorted(service.calls) == ["issue-12-release", "issue-30-release"]
    [entry] = manifest["github_issues"]
    assert entry["number"] == 12
    assert entry["confidence"] == 0.95
    assert entry["assessment"] == "fixed"
    assert entry["scored_by"] == "agent"
    assert entry["evidence"] == "Commit abc123 fixes anchor parsing"
    assert github.mutations == []

    report = post_release(config, "1.2.0", "v1.2.0", repo_root=tmp_path, github=github)

    assert github.issue(12)["state"] == "CLOSED"
    assert "automatically closed" in github.comments_on(12)[0]
    assert github.comments_on(30) == []
    assert report["verification"]["all_passed"] is True


def test_correlation_prompt_names_the_release_range(tmp_path, config, monkeypatch):
    _fake_git(monkeypatch)
    github = FakeGitHub(issues=[{"number": 12, "title": "Anchors break the parser"}])
    prompts = []

    class RecordingService(StubAgentService):
        def invoke(self, prompt, allowed_tools, model, **kwargs):
            prompts.append((prompt, allowed_tools, model))
            return super().invoke(prompt, allowed_tools, model, **kwargs)

    pre_release(
        config,
        "v1.1.0",
        "1.2.0",
        repo_root=tmp_path,
        github=github,
        agent_service=RecordingService({"release": agent_payload(0.7)}),
    )

    [(prompt, tools, model)] = prompts
    assert "Release Correlation Agent" in prompt
    assert "git diff v1.1.0..HEAD --stat" in prompt
    assert "Directly referenced in commit message" in prompt
    assert tools == ["run_shell_command(git)", "run_shell_command(gh)"]
    assert model == config["gemini"]["pro_model"]


def test_correlation_can_be_switched_off(tmp_path, config, monkeypatch):
    _fake_git(monkeypatch)
    config["release"]["pre_release_correlate"] = False
    github = FakeGitHub(issues=[{"number": 12, "title": "Anchors break the parser"}])

    class NoAgent:
        def invoke(self, *args, **kwargs):
            raise AssertionError("agent must not be called")

    manifest = pre_release(config, "v1.1.0", "1.2.0", repo_root=tmp_path, github=github, agent_service=NoAgent())

    assert [entry["confidence"] for entry in manifest["github_issues"]] == [0.8]


def test_missing_or_invalid_manifest(tmp_path, config):
    with pytest.raises(ManifestError, match="pre-release"):
        post_release(config, "1.2.0", "v1.2.0", repo_root=tmp_path, github=FakeGitHub())

    broken = tmp_path / "broken.json"
    broken.write_text("{nope")
    with pytest.raises(ManifestError):
        load_manifest(broken)
    with pytest.raises(ManifestError):
        load_manifest(tmp_path / "absent.json")
