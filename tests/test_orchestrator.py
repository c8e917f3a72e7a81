import json
import threading

import pytest
from conftest import FakeGitHub, StubAgentService, agent_payload

from repo_triage.errors import AlreadyLocked, FatalAgentError, PlanError, RunInterrupted, TransientAgentError
from repo_triage.models import Checkpoint, InvestigationResult, Phase, RunState
from repo_triage.orchestrator import Orchestrator, next_phase, resume_state, triage_status
from repo_triage.run_store import RunStore

CONFIDENT = {
    "code": agent_payload(
        0.95,
        suggest_close=True,
        close_reason="completed",
        recommended_labels=["bug"],
        related_entities=[{"type": "pr", "id": "45", "description": "Fix parser", "relevance": 0.9}],
    ),
    "prs": agent_payload(0.95),
    "dupes": agent_payload(0.92, related_entities=[{"type": "issue", "id": "2", "relevance": 0.4}]),
    "sentiment": agent_payload(0.9),
}


class ExplodingService:
    def invoke(self, *args, **kwargs):
        raise AssertionError("agent service must not be called")


def _orchestrator(config, tmp_path, github, service, **kwargs):
    kwargs.setdefault("show_progress", False)
    return Orchestrator(config, repo_root=tmp_path, github=github, agent_service=service, **kwargs)


def _store(tmp_path, run_id):
    return RunStore.open(tmp_path / ".triage_runs", run_id)


def test_full_run_closes_confident_issue(tmp_path, config, no_sleep):
    github = FakeGitHub(
        issues=[{"number": 7, "title": "Parser crash"}],
        pulls={45: {"number": 45, "title": "Fix parser", "state": "MERGED"}},
    )
    service = StubAgentService(CONFIDENT)

    checkpoint = _orchestrator(config, tmp_path, github, service).run_single(7)

    assert checkpoint.state.phase is Phase.DONE
    assert sorted(service.calls) == ["issue-7-code", "issue-7-dupes", "issue-7-prs", "issue-7-sentiment"]
    issue = github.issue(7)
    assert issue["state"] == "CLOSED"
    assert issue["labels"] == ["bug", "triaged"]
    assert any("Linked by triage: PR #45" in body for body in github.comments_on(7))

    store = _store(tmp_path, checkpoint.run_id)
    verification = store.load_json("verify", "triage_verification.json")
    assert verification["all_passed"] is True
    assert store.meta["exit_code"] == 0
    assert (store.run_dir / "link" / "triage_links.json").exists()
    assert store.load_json("cross_repo", "triage_cross_repo_links.json")["enabled"] is False
    assert not (tmp_path / "triage.lock").exists()


def test_dry_run_investigates_but_never_mutates(tmp_path, config, no_sleep):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])

    checkpoint = _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT), dry_run=True).run_single(7)

    assert checkpoint.state.phase is Phase.DONE
    assert github.mutations == []
    assert checkpoint.decisions[7].closes_issue
    assert not (_store(tmp_path, checkpoint.run_id).run_dir / "act").exists()


def test_all_agents_failing_only_requests_investigation(tmp_path, config, no_sleep):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    fatal = FatalAgentError("no output", error_type="NoJsonOutput")
    service = StubAgentService({suffix: fatal for suffix in CONFIDENT})

    checkpoint = _orchestrator(config, tmp_path, github, service).run_single(7)

    assert checkpoint.state.phase is Phase.DONE
    assert checkpoint.decisions[7].aggregate_confidence == 0.0
    assert github.issue(7)["labels"] == ["needs-investigation", "triaged"]
    assert github.issue(7)["state"] == "OPEN"
    assert github.comments_on(7) == []
    errors = _store(tmp_path, checkpoint.run_id).load_json("investigate", "task_errors.json")
    assert len(errors) == 4


def test_rate_limited_agents_exhaust_retries_and_run_completes(tmp_path, config, no_sleep):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    limited = TransientAgentError("quota exhausted", error_type="RateLimitError")
    service = StubAgentService({suffix: limited for suffix in CONFIDENT})

    checkpoint = _orchestrator(config, tmp_path, github, service).run_single(7)

    assert checkpoint.state.phase is Phase.DONE
    assert len(service.calls) == 4 * config["gemini"]["max_retries"]
    assert len(no_sleep) == 4 * (config["gemini"]["max_retries"] - 1)
    assert all(r.confidence == 0.0 for r in checkpoint.results[7])
    assert github.issue(7)["labels"] == ["needs-investigation", "triaged"]
    assert github.issue(7)["state"] == "OPEN"


def test_verification_failure_still_completes(tmp_path, config, no_sleep):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}], close_works=False)

    checkpoint = _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT)).run_single(7)

    assert checkpoint.state.phase is Phase.DONE
    verification = _store(tmp_path, checkpoint.run_id).load_json("verify", "triage_verification.json")
    assert verification["all_passed"] is False
    assert github.issue(7)["labels"] == ["bug", "triaged"]


def test_resume_after_investigate_does_not_call_agents(tmp_path, config):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    first = _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT))
    plan = first.plan_single(7)
    store = RunStore.create(tmp_path / ".triage_runs", "triage", {"issue": 7}, repo_root=tmp_path)
    store.save_checkpoint(
        Checkpoint(
            run_id=store.run_id,
            state=RunState(Phase.INVESTIGATED),
            mode="single",
            game_plan=plan,
            results={7: [InvestigationResult("code_analysis", 7, 0.3, "Unclear")]},
        )
    )

    checkpoint = _orchestrator(config, tmp_path, github, ExplodingService()).resume(store.run_id)

    assert checkpoint.state.phase is Phase.DONE
    assert github.issue(7)["labels"] == ["needs-investigation", "triaged"]


def test_interrupted_run_resumes_only_missing_tasks(tmp_path, config, no_sleep):
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    stop = threading.Event()
    stop.set()

    with pytest.raises(RunInterrupted) as excinfo:
        _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT), stop_event=stop).run_single(7)

    run_id = excinfo.value.run_id
    store = _store(tmp_path, run_id)
    assert store.load_checkpoint().state.phase is Phase.PLANNED
    assert store.meta["exit_code"] == 130
    assert github.mutations == []

    service = StubAgentService(CONFIDENT)
    checkpoint = _orchestrator(config, tmp_path, github, service).resume(run_id)

    assert checkpoint.state.phase is Phase.DONE
    assert len(service.calls) == 4
    assert github.issue(7)["state"] == "CLOSED"


def test_phase_failure_is_checkpointed_and_retried_on_resume(tmp_path, config, no_sleep):
    class BrokenList(FakeGitHub):
        def view_pull_request(self, number):
            raise RuntimeError("tracker exploded")

    github = BrokenList(issues=[{"number": 7, "title": "Parser crash"}])

    with pytest.raises(RuntimeError):
        _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT)).run_single(7)

    run_id = json.loads(next((tmp_path / ".triage_runs").glob("*/meta.json")).read_text())["run_id"]
    state = _store(tmp_path, run_id).load_checkpoint().state
    assert state.phase is Phase.FAILED
    assert state.failed_phase is Phase.LINKED
    assert resume_state(state) == RunState(Phase.VERIFIED)

    status = triage_status(config, run_id, repo_root=tmp_path)
    assert status["exit_code"] == 4


def test_live_lock_blocks_a_second_run(tmp_path, config, monkeypatch):
    (tmp_path / "triage.lock").write_text(json.dumps({"pid": 424242, "started": "x"}))
    monkeypatch.setattr("repo_triage.run_lock.psutil.pid_exists", lambda pid: True)
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])

    with pytest.raises(AlreadyLocked):
        _orchestrator(config, tmp_path, github, ExplodingService()).run_single(7)

    assert github.mutations == []


def test_auto_mode_skips_already_triaged_issues(tmp_path, config, no_sleep):
    github = FakeGitHub(
        issues=[
            {"number": 7, "title": "Parser crash"},
            {"number": 8, "title": "Old one", "labels": ["triaged"]},
        ]
    )
    service = StubAgentService(CONFIDENT)

    checkpoint = _orchestrator(config, tmp_path, github, service).run_auto()

    assert [issue.number for issue in checkpoint.game_plan.issues] == [7]
    assert all(call.startswith("issue-7-") for call in service.calls)


def test_no_enabled_agents_is_a_plan_error(tmp_path, config):
    config["agents"]["enabled"] = ["changelog"]
    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])

    with pytest.raises(PlanError):
        _orchestrator(config, tmp_path, github, ExplodingService()).run_single(7)


def test_transitions_and_resume_rules():
    assert next_phase(Phase.PLANNED, dry_run=False) is Phase.INVESTIGATED
    assert next_phase(Phase.INVESTIGATED, dry_run=True) is Phase.DONE
    assert next_phase(Phase.CROSS_REPO_LINKED, dry_run=False) is Phase.DONE
    with pytest.raises(PlanError):
        resume_state(RunState(Phase.DONE))


def test_status_reports_missing_and_completed_runs(tmp_path, config, no_sleep):
    assert triage_status(config, repo_root=tmp_path)["exit_code"] == 5

    github = FakeGitHub(issues=[{"number": 7, "title": "Parser crash"}])
    checkpoint = _orchestrator(config, tmp_path, github, StubAgentService(CONFIDENT)).run_single(7)

    status = triage_status(config, "latest", repo_root=tmp_path)
    assert status["run_id"] == checkpoint.run_id
    assert status["exit_code"] == 0
    assert status["issues"][0]["risk_tier"] == "high"
    assert status["verification_passed"] is True
