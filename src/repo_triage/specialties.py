"""Investigation specialties as data: prompt template, tool allow-list, model tier, precondition."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import should_run_agent
from .models import AgentType, InvestigationTask, IssuePlan

GIT = "run_shell_command(git)"
GH = "run_shell_command(gh)"
GH_ISSUE_VIEW = "run_shell_command(gh issue view)"

_RESULT_EXAMPLE = {
    "agent_id": "<agent_id>",
    "issue_number": 0,
    "confidence": 0.0,
    "summary": "One-sentence summary of findings",
    "evidence": ["Evidence item 1", "Evidence item 2"],
    "recommended_labels": ["label1"],
    "suggested_comment": None,
    "suggest_close": False,
    "close_reason": None,
    "related_entities": [
        {"type": "pr", "id": "123", "description": "Why it is related", "relevance": 0.8}
    ],
}

PROMPT_TEMPLATE = """You are a {role} investigating GitHub issue #{number}.

## Issue Details
- **Title**: {title}
- **Author**: @{author}
- **Existing Labels**: {labels}

## Investigation Instructions

{instructions}

## Required Output

Reply with exactly one JSON object and nothing after it, using this structure:
```json
{example}
```
`related_entities[].type` is one of pr, issue, commit, file. `close_reason` is completed, not_planned or duplicate.

Confidence scoring:
{bands}
{extra}
IMPORTANT: The reply must be VALID JSON.
"""


@dataclass(frozen=True)
class Specialty:
    agent: AgentType
    task_suffix: str
    role: str
    instructions: str
    confidence_bands: tuple[str, ...]
    allowed_tools: tuple[str, ...]
    model_tier: str = "pro"
    include_changelog: bool = False
    extra: str = ""

    def task_id(self, issue_number: int) -> str:
        return f"issue-{issue_number}-{self.task_suffix}"

    def model(self, config: dict[str, Any]) -> str:
        gemini = config.get("gemini", {})
        if self.model_tier == "flash":
            return str(gemini.get("flash_model"))
        return str(gemini.get("pro_model"))

    def applies(self, config: dict[str, Any], repo_root: str | Path) -> bool:
        return should_run_agent(config, self.agent.value, repo_root)

    def render_prompt(self, issue: IssuePlan, context: dict[str, Any] | None = None) -> str:
        example = dict(_RESULT_EXAMPLE, agent_id=self.agent.value, issue_number=issue.number)
        keywords = " ".join(issue.title.split()[:3])
        return PROMPT_TEMPLATE.format(
            role=self.role,
            number=issue.number,
            title=issue.title,
            author=issue.author or "unknown",
            labels=", ".join(issue.existing_labels) or "none",
            instructions=self.instructions.format(number=issue.number, keywords=keywords, **(context or {})),
            example=json.dumps(example, indent=2),
            bands="\n".join(f"- {band}" for band in self.confidence_bands),
            extra=f"\n{self.extra}\n" if self.extra else "",
        )

    def build_task(
        self, issue: IssuePlan, config: dict[str, Any], context: dict[str, Any] | None = None
    ) -> InvestigationTask:
        includes: tuple[str, ...] = ()
        if self.include_changelog:
            includes = (str(config.get("repository", {}).get("changelog_path", "CHANGELOG.md")),)
        return InvestigationTask(
            task_id=self.task_id(issue.number),
            issue_number=issue.number,
            agent=self.agent,
            prompt=self.render_prompt(issue, context),
            allowed_tools=self.allowed_tools,
            model=self.model(config),
            file_includes=includes,
        )


SPECIALTIES: dict[AgentType, Specialty] = {
    AgentType.CODE_ANALYSIS: Specialty(
        agent=AgentType.CODE_ANALYSIS,
        task_suffix="code",
        role="Code Analysis Agent",
        instructions="""1. Run `gh issue view {number} --json body --jq ".body"` to read the full issue description
2. Search for related commits:
   - `git log --oneline --all --grep="{keywords}"`
   - `git log --oneline -20` to see recent changes
3. If the issue describes a bug, look for commits mentioning "#{number}" or title keywords and
   run `git diff` on relevant files to see whether the described problem has been addressed
4. Check test files for new tests related to this issue""",
        confidence_bands=(
            "0.9-1.0: Fix is clearly merged, tests pass, behavior changed as described",
            "0.7-0.8: Strong evidence of a fix but not confirmed",
            "0.5-0.6: Related changes found but unclear if they address this issue",
            "0.0-0.4: No evidence of a fix found",
        ),
        allowed_tools=(GIT, GH),
    ),
    AgentType.PR_CORRELATION: Specialty(
        agent=AgentType.PR_CORRELATION,
        task_suffix="prs",
        role="PR Correlation Agent",
        instructions="""1. Read the full issue: `gh issue view {number} --json body,comments`
2. Search for PRs that reference this issue:
   - `gh pr list --state all --limit 50 --json number,title,state,mergedAt --search "#{number}"`
   - `gh pr list --state merged --limit 30 --json number,title,body` and look for title/body matches
3. Search commit messages: `git log --all --oneline --grep="#{number}"`
4. For each matching PR check whether it was merged: `gh pr view <number> --json state,mergedAt`
5. Decide whether the PR actually fixes the issue or only references it""",
        confidence_bands=(
            "0.9-1.0: A merged PR explicitly fixes this issue (Fixes #N / Closes #N)",
            "0.7-0.8: A merged PR very likely addresses it without referencing it",
            "0.5-0.6: An open or loosely related PR exists",
            "0.0-0.4: No related PRs found",
        ),
        allowed_tools=(GIT, GH),
        extra="List every related PR in related_entities with type \"pr\".",
    ),
    AgentType.DUPLICATE: Specialty(
        agent=AgentType.DUPLICATE,
        task_suffix="dupes",
        role="Duplicate Detection Agent",
        instructions="""1. Read the full issue: `gh issue view {number} --json body --jq ".body"`
2. List open issues: `gh issue list --state open --limit 100 --json number,title,labels`
3. List recently closed issues: `gh issue list --state closed --limit 50 --json number,title,labels`
4. Compare issue #{number} against the others for the same title, root cause, error messages or component
5. Read the body of each candidate: `gh issue view <number> --json body --jq ".body"`""",
        confidence_bands=(
            "0.9-1.0: Exact duplicate, same problem and root cause",
            "0.7-0.8: Very similar, same area and symptoms",
            "0.5-0.6: Related but distinct issue in the same area",
            "0.0-0.4: No duplicates or related issues found",
        ),
        allowed_tools=(GH,),
        extra=(
            "If no duplicates are found, set confidence to exactly 0.0 and leave related_entities empty. "
            "Use close_reason \"duplicate\" when suggesting closure."
        ),
    ),
    AgentType.SENTIMENT: Specialty(
        agent=AgentType.SENTIMENT,
        task_suffix="sentiment",
        role="Comment Sentiment Agent",
        instructions="""1. Read the issue with its discussion: `gh issue view {number} --json body,comments`
2. Assess the thread:
   - Consensus: do commenters agree the issue is resolved, still open, or stale?
   - Blockers: unresolved questions or dependencies?
   - Activity: when was the last comment? Stale means more than 90 days without activity
   - Maintainer input and reporter satisfaction
3. Decide the overall sentiment: positive (likely resolved), negative (still broken), neutral""",
        confidence_bands=(
            "0.9-1.0: Author explicitly confirmed the issue is resolved",
            "0.7-0.8: A maintainer said it is fixed or several users confirmed",
            "0.5-0.6: Positive signals without explicit confirmation",
            "0.0-0.4: Stale or active discussion showing the issue is unresolved",
        ),
        allowed_tools=(GH_ISSUE_VIEW,),
        model_tier="flash",
        extra=(
            "Recommend \"stale\" when there is no activity for 90 days, \"needs-response\" when a "
            "maintainer question is unanswered, and \"confirmed\" when the reporter confirmed the bug."
        ),
    ),
    AgentType.CHANGELOG: Specialty(
        agent=AgentType.CHANGELOG,
        task_suffix="changelog",
        role="Changelog/Release Agent",
        instructions="""1. Read the included CHANGELOG and search for "#{number}" or title keywords
2. Check release notes: `ls release_notes/` and each version folder
3. List released versions: `git tag --sort=-version:refname | head -20`
4. Search commit messages for references: `git log --all --oneline --grep="#{number}"`
5. Check whether the latest tag already contains those commits:
   `git describe --tags --abbrev=0` then `git log <tag>..HEAD --oneline --grep="#{number}"`""",
        confidence_bands=(
            "0.9-1.0: Explicitly referenced in a released changelog or release notes",
            "0.7-0.8: Related commits were released but the issue is not mentioned",
            "0.5-0.6: Fix commits exist but are not released yet",
            "0.0-0.4: No mention in any release artifact",
        ),
        allowed_tools=(GIT, GH),
        model_tier="flash",
        include_changelog=True,
        extra="Add \"released\" to recommended_labels when the issue is mentioned in a release.",
    ),
}


def specialties_for(config: dict[str, Any], repo_root: str | Path) -> list[Specialty]:
    """Specialties that are enabled and whose precondition holds, in canonical order."""
    return [specialty for specialty in SPECIALTIES.values() if specialty.applies(config, repo_root)]


# Used by pre-release to score candidate issues against the release diff; never planned for triage.
RELEASE_CORRELATION = Specialty(
    agent=AgentType.RELEASE_CORRELATION,
    task_suffix="release",
    role="Release Correlation Agent",
    instructions="""A release is being prepared from the changes in `{prev_tag}..HEAD`.
1. Read the issue: `gh issue view {number} --json body,comments`
2. Review what the release changes:
   - `git log {prev_tag}..HEAD --oneline --no-merges`
   - `git diff {prev_tag}..HEAD --stat`, then `git diff {prev_tag}..HEAD -- <path>` for files related to the issue
3. Candidate evidence found by the keyword scan: {candidate_evidence}
4. Decide whether these changes fix, improve, or merely touch the area of issue #{number}""",
    confidence_bands=(
        "0.9-1.0: The release clearly fixes this issue",
        "0.7-0.8: The release very likely addresses it",
        "0.5-0.6: Related changes without a clear fix",
        "0.0-0.4: Weak or no connection to the release",
    ),
    allowed_tools=(GIT, GH),
    extra="Put the commits that address the issue in related_entities with type \"commit\".",
)
