"""Read-only Sentry lookup for the pre-release manifest."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

_LOGGER = logging.getLogger(__name__)


def _normalize(item: dict[str, Any], project: str) -> dict[str, Any]:
    metadata = item.get("metadata") or {}
    return {
        "id": str(item.get("id", "")),
        "short_id": item.get("shortId", ""),
        "title": item.get("title", ""),
        "culprit": item.get("culprit", ""),
        "filename": metadata.get("filename", ""),
        "permalink": item.get("permalink", ""),
        "count": int(item.get("count") or 0),
        "last_seen": item.get("lastSeen", ""),
        "project": project,
    }


def fetch_unresolved_issues(sentry_cfg: dict[str, Any], hours: int | None = None) -> list[dict[str, Any]]:
    """Unresolved issues for every configured project seen in the last ``hours``.

    Returns an empty list when no organization or token is configured. Request
    failures are logged and the project is skipped.
    """
    org = sentry_cfg.get("organization")
    token = os.getenv(sentry_cfg.get("token_env") or "SENTRY_AUTH_TOKEN")
    if not org or not token:
        _LOGGER.info("Sentry scan skipped: organization or token not configured")
        return []

    base_url = str(sentry_cfg.get("base_url") or "https://sentry.io/api/0").rstrip("/")
    hours = int(hours or sentry_cfg.get("recent_errors_hours", 168))
    # Sentry only accepts a handful of statsPeriod values.
    period = "24h" if hours <= 24 else "14d"

    out: list[dict[str, Any]] = []
    for project in sentry_cfg.get("projects") or []:
        try:
            response = httpx.get(
                f"{base_url}/projects/{org}/{project}/issues/",
                headers={"Authorization": f"Bearer {token}"},
                params={"query": "is:unresolved", "statsPeriod": period},
                timeout=15,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            _LOGGER.warning("Sentry request for %s/%s failed: %s", org, project, exc)
            continue
        payload = response.json()
        if not isinstance(payload, list):
            continue
        out.extend(_normalize(item, project) for item in payload if isinstance(item, dict))
    return out


def match_changed_files(issues: list[dict[str, Any]], changed_files: list[str]) -> list[dict[str, Any]]:
    """Keep Sentry issues whose culprit or top frame names a changed file."""
    stems = {path.rsplit("/", 1)[-1].rsplit(".", 1)[0] for path in changed_files if path}
    stems = {stem for stem in stems if len(stem) > 3}
    matched = []
    for issue in issues:
        haystack = f"{issue.get('culprit', '')} {issue.get('filename', '')}"
        hits = sorted(stem for stem in stems if stem in haystack)
        if hits:
            matched.append(
                {
                    **issue,
                    "confidence": 0.5,
                    "category": "related",
                    "evidence": f"Stack trace mentions changed file(s): {', '.join(hits)}",
                }
            )
    return matched
