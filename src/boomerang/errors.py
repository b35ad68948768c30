from __future__ import annotations


class BoomerangError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(BoomerangError):
    """Raised when boomerang.toml cannot be interpreted."""


class NotFound(BoomerangError):
    """Raised when a context key (or a specific version of it) has no entry."""

    def __init__(self, key: str, version: int | None = None) -> None:
        detail = f"{key}@{version}" if version is not None else key
        super().__init__(f"No context entry for {detail}")
        self.key = key
        self.version = version


class VersionConflict(BoomerangError):
    """Raised when an optimistic write loses the race for the next version."""

    def __init__(self, key: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Concurrent write detected for '{key}': expected version {expected}, found {actual}."
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class StorageUnavailable(BoomerangError):
    """Raised when the durable storage backend cannot be read or written."""


StoreConflict = VersionConflict
StoreUnavailable = StorageUnavailable


class UnknownRole(BoomerangError):
    """Raised when a task is routed to a role with no registered implementation."""


class DelegationFailed(BoomerangError):
    """Raised when a delegation ends without a usable result."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str,
        role: str,
        attempts: int = 0,
        reason: str = "DelegationFailed",
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.role = role
        self.attempts = attempts
        self.reason = reason


class CancellationTimeout(DelegationFailed):
    """Raised when a role does not acknowledge cancellation within the grace period."""


class DelegationCancelled(BoomerangError):
    """Raised when awaiting a delegation that was cancelled."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Delegation {task_id} was cancelled.")
        self.task_id = task_id


class PhaseTransitionError(BoomerangError):
    """Raised on an illegal phase state machine transition."""


class RunNotFound(BoomerangError):
    """Raised when no persisted record exists for a run id."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class RunAborted(BoomerangError):
    """Raised inside the driver when an operator abort is observed for its run."""

    def __init__(self, run_id: str, reason: str = "") -> None:
        super().__init__(f"Run {run_id} was aborted{': ' + reason if reason else ''}.")
        self.run_id = run_id
        self.reason = reason
