"""Single-flight run lock backed by a JSON file holding the owner's pid."""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import psutil
from rich.console import Console

from .errors import AlreadyLocked
from .models import utc_now

console = Console()
_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Acquired:
    pid: int


@dataclass(frozen=True)
class StaleLockReclaimed:
    pid: int
    previous_pid: int | None


@dataclass(frozen=True)
class ForcedOverride:
    pid: int
    previous_pid: int


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


@contextlib.contextmanager
def _guarded(path: Path) -> Iterator[None]:
    """Hold an exclusive flock on ``<lock>.guard`` while the lock file is inspected or changed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    guard = path.with_name(path.name + ".guard")
    with guard.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class RunLock:
    """Advisory lock preventing two mutating runs against the same project.

    ``acquire`` returns ``Acquired``, ``StaleLockReclaimed`` (previous owner is
    dead or the file is unreadable) or ``ForcedOverride`` (live owner, force
    given). A live owner without force raises ``AlreadyLocked``.

    Checking and writing the lock file happen under a flock on a sidecar guard
    file, and the lock file itself is only ever created with ``O_EXCL``, so of
    several processes starting together exactly one becomes the owner.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.held = False

    def read_owner(self) -> dict[str, Any] | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            return {}
        if not isinstance(payload, dict) or not isinstance(payload.get("pid"), int):
            return {}
        return payload

    def acquire(self, force: bool = False) -> Acquired | StaleLockReclaimed | ForcedOverride:
        with _guarded(self.path):
            outcome = self._decide(force)
            try:
                self._create()
            except FileExistsError:
                # A writer that bypassed the guard got there first; decide once more.
                outcome = self._decide(force)
                self._create()
        self.held = True
        _LOGGER.debug("Acquired run lock %s: %s", self.path, outcome)
        return outcome

    def _decide(self, force: bool) -> Acquired | StaleLockReclaimed | ForcedOverride:
        """Inspect the current owner; unlink the file when it may be taken over."""
        owner = self.read_owner()
        if owner is None:
            return Acquired(os.getpid())

        owner_pid = owner.get("pid")
        if not owner:
            console.print(f"[yellow]Removing unreadable lock file {self.path}[/]")
            outcome: Acquired | StaleLockReclaimed | ForcedOverride = StaleLockReclaimed(
                os.getpid(), previous_pid=None
            )
        elif owner_pid == os.getpid():
            outcome = Acquired(os.getpid())
        elif pid_alive(owner_pid):
            if not force:
                raise AlreadyLocked(owner_pid, str(self.path))
            console.print(f"[yellow]Overriding lock held by live pid {owner_pid} (--force)[/]")
            outcome = ForcedOverride(os.getpid(), previous_pid=owner_pid)
        else:
            console.print(f"[yellow]Reclaiming stale lock from dead pid {owner_pid}[/]")
            outcome = StaleLockReclaimed(os.getpid(), previous_pid=owner_pid)

        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        return outcome

    def _create(self) -> None:
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump({"pid": os.getpid(), "started": utc_now()}, handle)
            handle.flush()
            os.fsync(handle.fileno())

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        with _guarded(self.path):
            owner = self.read_owner()
            if owner and owner.get("pid") != os.getpid():
                _LOGGER.warning("Lock %s now owned by pid %s, leaving it in place", self.path, owner.get("pid"))
                return
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()

    def __enter__(self) -> "RunLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
