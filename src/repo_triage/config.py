"""Configuration loader."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_PATH = "repo-triage.yaml"

ALL_AGENTS = ["code_analysis", "pr_correlation", "duplicate", "sentiment", "changelog"]

DEFAULT_CONFIG = {
    "repository": {
        "owner": "",
        "name": "",
        "triaged_label": "triaged",
        "needs_investigation_label": "needs-investigation",
        "changelog_path": "CHANGELOG.md",
        "release_notes_path": "release_notes",
    },
    "thresholds": {
        "auto_close": 0.9,
        "suggest_close": 0.7,
        "comment": 0.5,
        "link_pr": 0.6,
        "link_issue": 0.7,
    },
    "agents": {
        "enabled": list(ALL_AGENTS),
        "conditional": {
            "changelog": {"require_file": "CHANGELOG.md"},
        },
    },
    "gemini": {
        "backend": "gemini_cli",
        "flash_model": "gemini-3-flash-preview",
        "pro_model": "gemini-3-1-pro-preview",
        "max_concurrent": 4,
        "max_retries": 3,
        "initial_backoff_ms": 500,
        "max_backoff_ms": 30_000,
        "timeout_seconds": 900,
    },
    "github": {
        "max_retries": 3,
        "auto_page_size": 100,
        "auto_max_pages": 5,
    },
    "cross_repo": {
        "enabled": False,
        "repos": [],
        "max_search_terms": 5,
        "max_matches": 3,
    },
    "release": {
        "pre_release_scan_github": True,
        "pre_release_correlate": True,
        "pre_release_scan_sentry": False,
        "post_release_close_own_repo": True,
        "post_release_comment_cross_repo": True,
        "post_release_link_sentry": False,
    },
    "sentry": {
        "organization": "",
        "projects": [],
        "recent_errors_hours": 168,
        "token_env": "SENTRY_AUTH_TOKEN",
        "base_url": "https://sentry.io/api/0",
    },
    "paths": {
        "runs_dir": ".triage_runs",
        "lock_file": "/tmp/triage.lock",
    },
    "secrets": {
        "gemini_api_key_env": "GEMINI_API_KEY",
    },
}


def load_config(path: str) -> dict:
    """Load config from YAML file, falling back to defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(path)

    if config_path.exists():
        try:
            with open(config_path) as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(user_config, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
        _deep_merge(config, user_config)

    validate_config(config)
    return config


def validate_config(config: dict[str, Any]) -> None:
    thresholds = config.get("thresholds", {})
    try:
        auto_close = float(thresholds["auto_close"])
        suggest_close = float(thresholds["suggest_close"])
        comment = float(thresholds["comment"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"thresholds must define numeric auto_close, suggest_close and comment: {exc}") from exc

    for name, value in thresholds.items():
        if not isinstance(value, (int, float)) or not 0.0 <= float(value) <= 1.0:
            raise ConfigError(f"thresholds.{name} must be a number in [0, 1], got {value!r}")
    if not auto_close >= suggest_close >= comment:
        raise ConfigError("thresholds must satisfy auto_close >= suggest_close >= comment")

    gemini = config.get("gemini", {})
    for key in ("max_concurrent", "max_retries"):
        value = gemini.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigError(f"gemini.{key} must be a positive integer, got {value!r}")
    if gemini.get("backend") not in {"gemini_cli", "litellm"}:
        raise ConfigError(f"gemini.backend must be 'gemini_cli' or 'litellm', got {gemini.get('backend')!r}")

    enabled = config.get("agents", {}).get("enabled", [])
    if not isinstance(enabled, list):
        raise ConfigError("agents.enabled must be a list")
    unknown = [agent for agent in enabled if agent not in ALL_AGENTS]
    if unknown:
        raise ConfigError(f"Unknown agents in agents.enabled: {', '.join(map(str, unknown))}")

    repos = config.get("cross_repo", {}).get("repos", [])
    if not isinstance(repos, list) or not all(
        isinstance(entry, dict) and entry.get("owner") and entry.get("repo") for entry in repos
    ):
        raise ConfigError("cross_repo.repos entries must be mappings with owner and repo")


def enabled_agents(config: dict[str, Any]) -> list[str]:
    enabled = config.get("agents", {}).get("enabled", ALL_AGENTS)
    return [agent for agent in ALL_AGENTS if agent in enabled]


def should_run_agent(config: dict[str, Any], agent_id: str, repo_root: str | Path) -> bool:
    """Return True when the agent is enabled and its file precondition (if any) holds."""
    if agent_id not in enabled_agents(config):
        return False
    conditional = config.get("agents", {}).get("conditional", {}).get(agent_id) or {}
    required = conditional.get("require_file")
    if required:
        return (Path(repo_root) / required).exists()
    return True


def repo_slug(config: dict[str, Any]) -> str | None:
    repository = config.get("repository", {})
    owner = repository.get("owner")
    name = repository.get("name")
    if owner and name:
        return f"{owner}/{name}"
    return None


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base
