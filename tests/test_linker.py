import json

from conftest import FakeGitHub

from repo_triage.executor import ActionExecutor
from repo_triage.linker import Linker, add_linked_issue, cross_repo_marker, extract_search_terms, link_marker
from repo_triage.models import ActionType, GamePlan, IssuePlan, RiskTier, TriageAction, TriageDecision


def _decision(*actions, number=7):
    return TriageDecision(number, 0.8, RiskTier.MEDIUM, "", tuple(actions))


def _linker(github, tmp_path, config, run_id="run-1"):
    return Linker(github, ActionExecutor(github, run_id), tmp_path, config)


def test_extract_search_terms_drops_stop_words_and_punctuation():
    assert extract_search_terms("Crash when parsing YAML config with anchors!", 3) == ["parsing", "yaml", "config"]
    assert extract_search_terms("The bug is in it") == []


def test_pr_and_issue_links_post_marked_comments_both_ways(tmp_path, config):
    github = FakeGitHub(
        issues=[{"number": 7, "title": "Crash"}, {"number": 3, "title": "Same crash"}],
        pulls={45: {"number": 45, "title": "Fix parser", "state": "MERGED"}},
    )
    decision = _decision(
        TriageAction(ActionType.LINK_PR, "pr", {"pr_number": 45, "description": "fixes it"}),
        TriageAction(ActionType.LINK_ISSUE, "issue", {"issue_number": 3, "description": "same stack"}),
    )

    records = _linker(github, tmp_path, config).link_decision(decision)

    assert [r.target_id for r in records] == ["45", "3"]
    assert all(r.applied and r.posted for r in records)
    seven = github.comments_on(7)
    assert "Linked by triage: PR #45 (merged) -- Fix parser" in seven[0]
    assert link_marker(7, "pr", "45") in seven[0]
    assert "Related: #3 -- same stack" in seven[1]
    assert "Related: #7" in github.comments_on(3)[0]


def test_links_are_idempotent_across_runs(tmp_path, config):
    github = FakeGitHub(
        issues=[{"number": 7, "title": "Crash"}], pulls={45: {"number": 45, "title": "Fix", "state": "OPEN"}}
    )
    decision = _decision(TriageAction(ActionType.LINK_PR, "pr", {"pr_number": 45}))

    _linker(github, tmp_path, config, "run-1").link_decision(decision)
    records = _linker(github, tmp_path, config, "run-2").link_decision(decision)

    assert len(github.comments_on(7)) == 1
    assert records[0].applied and not records[0].posted


def test_release_notes_mentioning_the_issue_are_recorded(tmp_path, config):
    (tmp_path / "CHANGELOG.md").write_text("## 1.2.0\n- Fix crash (#7)\n")
    mentioned = tmp_path / "release_notes" / "v1.2.0"
    mentioned.mkdir(parents=True)
    (mentioned / "release_notes.md").write_text("Fixes #7 and #70\n")
    other = tmp_path / "release_notes" / "v1.1.0"
    other.mkdir()
    (other / "release_notes.md").write_text("Fixes #70\n")
    github = FakeGitHub(issues=[{"number": 7, "title": "Crash"}])

    records = _linker(github, tmp_path, config).link_decision(_decision())

    assert [(r.target_type, r.target_id) for r in records] == [("changelog", "CHANGELOG.md"), ("release_notes", "v1.2.0")]
    linked = json.loads((mentioned / "linked_issues.json").read_text())
    assert [entry["number"] for entry in linked["issues"]] == [7]
    assert not (other / "linked_issues.json").exists()


def test_add_linked_issue_does_not_duplicate(tmp_path):
    path = tmp_path / "linked_issues.json"

    assert add_linked_issue(path, {"number": 7}) is True
    assert add_linked_issue(path, {"number": 7}) is False
    assert len(json.loads(path.read_text())["issues"]) == 1


def _cross_repo_setup(config):
    config["cross_repo"]["enabled"] = True
    config["cross_repo"]["repos"] = [{"owner": "acme", "repo": "app", "relationship": "dependent"}]
    github = FakeGitHub(
        issues=[{"number": 7, "title": "Parser crash on anchors"}, {"number": 8, "title": "Parser anchors slow"}],
        search_results={("acme/app", "parser anchors"): [{"number": 90, "title": "App dies on YAML anchors"}]},
    )
    github.add_issue(90, title="App dies on YAML anchors", repo="acme/app")
    plan = GamePlan.new([IssuePlan(7, "Parser crash on anchors"), IssuePlan(8, "Parser anchors slow")])
    return github, plan


def test_cross_repo_link_comments_on_the_dependent_issue(tmp_path, config):
    github, plan = _cross_repo_setup(config)
    decision = TriageDecision(7, 0.92, RiskTier.HIGH, "", ())

    report = _linker(github, tmp_path, config).cross_repo_link(plan, [decision])

    assert report["enabled"] is True
    assert github.searches == [("acme/app", ("parser", "anchors"))]
    assert report["links"][0]["target_id"] == "acme/app#90"
    assert github.comments_on(7) == []
    [body] = github.comments_on(90, repo="acme/app")
    assert cross_repo_marker("acme/widget", 7) in body
    assert "https://github.com/acme/widget/issues/7" in body
    assert "Parser crash on anchors" in body
    assert "Confidence: 92% | Risk: high" in body


def test_cross_repo_link_is_idempotent_and_skips_issues_without_decisions(tmp_path, config):
    github, plan = _cross_repo_setup(config)
    decisions = [TriageDecision(7, 0.92, RiskTier.HIGH, "", ())]

    _linker(github, tmp_path, config).cross_repo_link(plan, decisions)
    _linker(github, tmp_path, config, run_id="run-2").cross_repo_link(plan, decisions)

    assert len(github.comments_on(90, repo="acme/app")) == 1
    assert [issue for _, issue in github.searches] == [("parser", "anchors"), ("parser", "anchors")]


def test_cross_repo_link_disabled_by_default(tmp_path, config):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    decision = TriageDecision(7, 0.5, RiskTier.LOW, "", ())
    plan = GamePlan.new([IssuePlan(7, "Parser crash")])

    report = _linker(github, tmp_path, config).cross_repo_link(plan, [decision])

    assert report["enabled"] is False
    assert github.searches == []
