from repo_triage.models import AgentType, IssuePlan
from repo_triage.specialties import GH, GH_ISSUE_VIEW, GIT, SPECIALTIES, specialties_for

ISSUE = IssuePlan(number=42, title="Parser crash on YAML anchors", author="dev", existing_labels=("bug",))


def test_specialties_follow_enabled_agents_and_changelog_file(tmp_path, config):
    assert [s.agent for s in specialties_for(config, tmp_path)] == [
        AgentType.CODE_ANALYSIS,
        AgentType.PR_CORRELATION,
        AgentType.DUPLICATE,
        AgentType.SENTIMENT,
    ]

    (tmp_path / "CHANGELOG.md").write_text("# Changelog\n")

    assert AgentType.CHANGELOG in [s.agent for s in specialties_for(config, tmp_path)]


def test_task_carries_tools_model_and_rendered_prompt(config):
    task = SPECIALTIES[AgentType.CODE_ANALYSIS].build_task(ISSUE, config)

    assert task.task_id == "issue-42-code"
    assert task.allowed_tools == (GIT, GH)
    assert task.model == config["gemini"]["pro_model"]
    assert "#42" in task.prompt
    assert "Parser crash on YAML anchors" in task.prompt
    assert "@dev" in task.prompt
    assert '"agent_id": "code_analysis"' in task.prompt


def test_sentiment_uses_flash_and_read_only_tool(config):
    task = SPECIALTIES[AgentType.SENTIMENT].build_task(ISSUE, config)

    assert task.allowed_tools == (GH_ISSUE_VIEW,)
    assert task.model == config["gemini"]["flash_model"]


def test_changelog_task_includes_changelog_file(config):
    config["repository"]["changelog_path"] = "docs/CHANGES.md"

    task = SPECIALTIES[AgentType.CHANGELOG].build_task(ISSUE, config)

    assert task.file_includes == ("docs/CHANGES.md",)
