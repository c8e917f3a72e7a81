"""Error types shared across the triage pipeline."""

from __future__ import annotations


class TriageError(RuntimeError):
    """Base class for errors the CLI reports as a one-line failure."""


class ConfigError(TriageError):
    pass


class PlanError(TriageError):
    pass


class CheckpointError(TriageError):
    pass


class ManifestError(TriageError):
    pass


class LockError(TriageError):
    def __init__(self, message: str, owner_pid: int | None = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class AlreadyLocked(LockError):
    """Another live process holds the run lock."""

    def __init__(self, owner_pid: int, lock_path: str):
        super().__init__(
            f"Another triage run (pid {owner_pid}) holds {lock_path}. Use --force to override.",
            owner_pid=owner_pid,
        )
        self.lock_path = lock_path


class GitHubError(TriageError):
    def __init__(self, message: str, *, transient: bool = False, stderr: str = ""):
        super().__init__(message)
        self.transient = transient
        self.stderr = stderr


class AgentServiceError(TriageError):
    error_type = "AgentServiceError"

    def __init__(self, message: str, error_type: str | None = None, raw: str = ""):
        super().__init__(message)
        if error_type:
            self.error_type = error_type
        self.raw = raw


class TransientAgentError(AgentServiceError):
    error_type = "ProcessError"


class FatalAgentError(AgentServiceError):
    error_type = "FatalError"


class RunInterrupted(TriageError):
    """Operator stop during a phase; the checkpoint holds the partial progress."""

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} interrupted; resume with: repo-triage resume {run_id}")
        self.run_id = run_id
