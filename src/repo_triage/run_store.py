"""Filesystem-backed run store: one directory of JSON/text artifacts per triage run."""

from __future__ import annotations

import json
import logging
import os
import platform
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import CheckpointError, PlanError
from .models import Checkpoint, utc_now

_LOGGER = logging.getLogger(__name__)

META_FILE = "meta.json"
CHECKPOINT_FILE = "checkpoint.json"
EVENTS_FILE = "run_events.jsonl"
LATEST_RUN_FILE = "latest_run_id"


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        _LOGGER.warning("Could not read %s: %s", path, exc)
        return default


def _write_text_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _append_jsonl_event(path: Path, event: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(event, ensure_ascii=True) + "\n")


def new_run_id(prefix: str = "triage") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{prefix}_{stamp}_{os.getpid()}"


class RunStore:
    """Artifacts for one run under ``<runs_dir>/<run_id>/``.

    Layout::

        meta.json               command, args, timing, exit status
        checkpoint.json         orchestrator state for resume
        run_events.jsonl        phase transitions, append-only
        <phase>/...             per-phase prompts, responses and reports
    """

    def __init__(self, runs_dir: Path, run_id: str):
        self.runs_dir = Path(runs_dir)
        self.run_id = run_id
        self.run_dir = self.runs_dir / run_id

    @classmethod
    def create(
        cls,
        runs_dir: str | Path,
        command: str,
        args: dict[str, Any] | None = None,
        repo_root: str | Path | None = None,
        prefix: str = "triage",
    ) -> "RunStore":
        runs_dir = Path(runs_dir)
        run_id = new_run_id(prefix)
        suffix = 1
        while (runs_dir / run_id).exists():
            suffix += 1
            run_id = f"{new_run_id(prefix)}_{suffix}"

        store = cls(runs_dir, run_id)
        store.run_dir.mkdir(parents=True, exist_ok=False)
        meta = {
            "run_id": run_id,
            "command": command,
            "args": args or {},
            "started_at": utc_now(),
            "pid": os.getpid(),
            "platform": platform.platform(),
            "repo_root": str(Path(repo_root or Path.cwd()).resolve()),
            "run_dir": str(store.run_dir.resolve()),
            "ci": bool(os.environ.get("CI")),
        }
        write_json_atomic(store.run_dir / META_FILE, meta)
        _write_text_file(runs_dir / LATEST_RUN_FILE, run_id + "\n")
        _LOGGER.debug("Created run %s at %s", run_id, store.run_dir)
        return store

    @classmethod
    def open(cls, runs_dir: str | Path, run_id: str) -> "RunStore":
        store = cls(Path(runs_dir), run_id)
        if not store.run_dir.is_dir():
            raise PlanError(f"Run {run_id} not found under {runs_dir}")
        return store

    def phase_dir(self, phase: str) -> Path:
        path = self.run_dir / phase
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_text(self, phase: str, name: str, content: str) -> Path:
        path = self.phase_dir(phase) / name
        _write_text_file(path, content)
        return path

    def save_json(self, phase: str, name: str, payload: Any) -> Path:
        path = self.phase_dir(phase) / name
        write_json_atomic(path, payload)
        return path

    def load_json(self, phase: str, name: str, default: Any = None) -> Any:
        return read_json(self.run_dir / phase / name, default)

    @property
    def meta(self) -> dict[str, Any]:
        return read_json(self.run_dir / META_FILE, {}) or {}

    def update_meta(self, **fields: Any) -> None:
        meta = self.meta
        meta.update(fields)
        write_json_atomic(self.run_dir / META_FILE, meta)

    def record_event(self, event: str, **fields: Any) -> None:
        _append_jsonl_event(self.run_dir / EVENTS_FILE, {"ts": utc_now(), "event": event, **fields})

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        checkpoint.saved_at = utc_now()
        write_json_atomic(self.run_dir / CHECKPOINT_FILE, checkpoint.to_dict())
        self.record_event("checkpoint", phase=checkpoint.state.to_dict())

    def load_checkpoint(self) -> Checkpoint | None:
        path = self.run_dir / CHECKPOINT_FILE
        if not path.exists():
            return None
        try:
            return Checkpoint.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"Checkpoint for run {self.run_id} is unreadable: {exc}") from exc

    def artifacts(self) -> list[str]:
        return sorted(
            str(path.relative_to(self.run_dir))
            for path in self.run_dir.rglob("*")
            if path.is_file() and not path.name.endswith(".tmp")
        )

    def finalize(self, exit_code: int) -> None:
        meta = self.meta
        completed = datetime.now(timezone.utc)
        duration = 0.0
        started = meta.get("started_at")
        if started:
            try:
                duration = (completed - datetime.fromisoformat(started)).total_seconds()
            except ValueError:
                duration = 0.0
        meta.update(
            {
                "completed_at": completed.isoformat(),
                "duration_seconds": round(duration, 3),
                "exit_code": exit_code,
                "artifacts": self.artifacts(),
            }
        )
        write_json_atomic(self.run_dir / META_FILE, meta)


def list_runs(runs_dir: str | Path) -> list[dict[str, Any]]:
    """Return meta.json payloads for every run, newest first."""
    root = Path(runs_dir)
    if not root.is_dir():
        return []
    runs = []
    for run_dir in root.iterdir():
        meta_path = run_dir / META_FILE
        if not run_dir.is_dir() or not meta_path.exists():
            continue
        meta = read_json(meta_path, None)
        if isinstance(meta, dict):
            meta.setdefault("run_id", run_dir.name)
            runs.append(meta)
    runs.sort(key=lambda meta: (str(meta.get("started_at", "")), meta["run_id"]), reverse=True)
    return runs


def find_latest_run(runs_dir: str | Path, command: str | None = None) -> str | None:
    root = Path(runs_dir)
    if command is None:
        latest_path = root / LATEST_RUN_FILE
        if latest_path.exists():
            latest = latest_path.read_text(encoding="utf-8").strip()
            if latest and (root / latest).is_dir():
                return latest
    for meta in list_runs(root):
        if command is None or meta.get("command") == command:
            return str(meta["run_id"])
    return None
