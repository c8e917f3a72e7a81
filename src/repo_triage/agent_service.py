"""Boundary to the external LLM agent service.

Two backends implement ``invoke(prompt, allowed_tools, model)``:

- ``GeminiCliService`` runs the ``gemini`` CLI in headless JSON mode with the
  prompt on stdin and a tool allow-list, inside the repository checkout.
- ``LiteLLMService`` sends the prompt straight to a chat model through LiteLLM;
  it has no tool access, so it only suits environments without the CLI.

Both raise ``TransientAgentError`` for failures worth retrying and
``FatalAgentError`` otherwise.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from json import JSONDecoder
from pathlib import Path
from typing import Any, Protocol

from .errors import FatalAgentError, TransientAgentError

_LOGGER = logging.getLogger(__name__)

RETRYABLE_ERROR_TYPES = frozenset(
    {"RateLimitError", "ServiceUnavailable", "InternalError", "TimeoutError", "ProcessError"}
)

_STDERR_ERROR_TYPES = (
    ("429", "RateLimitError"),
    ("rate limit", "RateLimitError"),
    ("quota", "RateLimitError"),
    ("resource_exhausted", "RateLimitError"),
    ("503", "ServiceUnavailable"),
    ("unavailable", "ServiceUnavailable"),
    ("overloaded", "ServiceUnavailable"),
    ("500", "InternalError"),
    ("internal", "InternalError"),
    ("deadline", "TimeoutError"),
    ("timed out", "TimeoutError"),
    ("timeout", "TimeoutError"),
)


@dataclass(frozen=True)
class AgentResponse:
    payload: dict[str, Any]
    raw: str
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_calls(self) -> int:
        tools = self.stats.get("tools") if isinstance(self.stats, dict) else None
        if isinstance(tools, dict):
            try:
                return int(tools.get("totalCalls") or 0)
            except (TypeError, ValueError):
                return 0
        return 0


class AgentService(Protocol):
    def invoke(
        self,
        prompt: str,
        allowed_tools: list[str],
        model: str,
        *,
        task_id: str = "",
        file_includes: tuple[str, ...] = (),
    ) -> AgentResponse: ...


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object in ``text``, tolerating fences and leading chatter."""
    raw = text.strip()
    if not raw:
        return None

    if raw.startswith("```"):
        lines = raw.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        raw = "\n".join(lines).strip()

    decoder = JSONDecoder()
    for idx, char in enumerate(raw):
        if char != "{":
            continue
        try:
            parsed, _ = decoder.raw_decode(raw[idx:])
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _error_from_type(error_type: str, message: str, raw: str = "") -> TransientAgentError | FatalAgentError:
    if error_type in RETRYABLE_ERROR_TYPES:
        return TransientAgentError(message, error_type=error_type, raw=raw)
    return FatalAgentError(message, error_type=error_type or "FatalError", raw=raw)


def _classify_stderr(stderr: str) -> str:
    lower = stderr.lower()
    for marker, error_type in _STDERR_ERROR_TYPES:
        if marker in lower:
            return error_type
    return "ProcessError"


def _parse_envelope(stdout: str) -> dict[str, Any] | None:
    start = stdout.find("{")
    if start < 0:
        return None
    try:
        envelope, _ = JSONDecoder().raw_decode(stdout[start:])
    except json.JSONDecodeError:
        return None
    return envelope if isinstance(envelope, dict) else None


def _resolve_executable(binary: str) -> str:
    candidate = Path(binary)
    if candidate.is_absolute() or os.sep in binary:
        return binary
    resolved = shutil.which(binary)
    return resolved or binary


class GeminiCliService:
    def __init__(
        self,
        binary: str = "gemini",
        working_directory: str | Path | None = None,
        timeout_seconds: float = 900,
    ):
        self.binary = binary
        self.working_directory = str(working_directory) if working_directory else None
        self.timeout_seconds = timeout_seconds

    def build_command(
        self,
        allowed_tools: list[str],
        model: str,
        file_includes: tuple[str, ...] = (),
    ) -> list[str]:
        cmd = [_resolve_executable(self.binary), "-o", "json", "--yolo", "-m", model]
        if allowed_tools:
            cmd += ["--allowed-tools", ",".join(allowed_tools)]
        cmd += [f"@{include}" for include in file_includes]
        return cmd

    def invoke(
        self,
        prompt: str,
        allowed_tools: list[str],
        model: str,
        *,
        task_id: str = "",
        file_includes: tuple[str, ...] = (),
    ) -> AgentResponse:
        cmd = self.build_command(allowed_tools, model, file_includes)
        _LOGGER.debug("[%s] %s", task_id, " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=prompt,
                capture_output=True,
                text=True,
                cwd=self.working_directory,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise FatalAgentError(f"{self.binary} CLI not found on PATH", error_type="MissingBinary") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientAgentError(
                f"{self.binary} timed out after {self.timeout_seconds}s", error_type="TimeoutError"
            ) from exc

        stdout = result.stdout or ""
        envelope = _parse_envelope(stdout)

        if envelope is not None and isinstance(envelope.get("error"), dict):
            error = envelope["error"]
            raise _error_from_type(
                str(error.get("type") or ""), str(error.get("message") or "Unknown error"), raw=stdout
            )

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise _error_from_type(
                _classify_stderr(stderr),
                f"Exit code {result.returncode}: {stderr[:500]}",
                raw=stdout,
            )

        if envelope is None:
            raise FatalAgentError("No JSON found in agent output", error_type="NoJsonOutput", raw=stdout)

        response_text = envelope.get("response")
        payload = extract_json_object(response_text) if isinstance(response_text, str) else None
        if payload is None:
            raise FatalAgentError(
                "Agent response contained no result object", error_type="NoResultJson", raw=stdout
            )

        stats = envelope.get("stats") if isinstance(envelope.get("stats"), dict) else {}
        return AgentResponse(payload=payload, raw=stdout, stats=stats)


def _to_litellm_model_name(model_name: str) -> str:
    model = model_name.strip()
    lower = model.lower()
    if lower.startswith("anthropic/") or lower.startswith("gemini/"):
        return model
    if lower.startswith("claude"):
        return f"anthropic/{model}"
    if lower.startswith("gemini"):
        return f"gemini/{model}"
    return model


class LiteLLMService:
    def __init__(self, timeout_seconds: float = 900, api_key_env: str | None = None):
        self.timeout_seconds = timeout_seconds
        self.api_key_env = api_key_env

    def invoke(
        self,
        prompt: str,
        allowed_tools: list[str],
        model: str,
        *,
        task_id: str = "",
        file_includes: tuple[str, ...] = (),
    ) -> AgentResponse:
        import litellm

        transient = (
            litellm.RateLimitError,
            litellm.ServiceUnavailableError,
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.InternalServerError,
        )
        system = (
            "You are a repository triage agent. You cannot run commands in this mode; "
            f"reason from the prompt alone (normally allowed: {', '.join(allowed_tools) or 'none'}). "
            "Reply with a single JSON object."
        )
        kwargs: dict[str, Any] = {}
        if self.api_key_env and os.environ.get(self.api_key_env):
            kwargs["api_key"] = os.environ[self.api_key_env]

        try:
            response = litellm.completion(
                model=_to_litellm_model_name(model),
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                timeout=self.timeout_seconds,
                **kwargs,
            )
        except transient as exc:
            raise TransientAgentError(str(exc), error_type=type(exc).__name__) from exc
        except Exception as exc:
            raise FatalAgentError(str(exc), error_type=type(exc).__name__) from exc

        text = response.choices[0].message.content or ""
        payload = extract_json_object(text)
        if payload is None:
            raise FatalAgentError("Model reply contained no result object", error_type="NoResultJson")
        return AgentResponse(payload=payload, raw=text)


def create_agent_service(config: dict[str, Any], repo_root: str | Path) -> AgentService:
    gemini_cfg = config.get("gemini", {})
    timeout = float(gemini_cfg.get("timeout_seconds", 900))
    if gemini_cfg.get("backend") == "litellm":
        return LiteLLMService(
            timeout_seconds=timeout,
            api_key_env=config.get("secrets", {}).get("gemini_api_key_env"),
        )
    return GeminiCliService(working_directory=repo_root, timeout_seconds=timeout)
