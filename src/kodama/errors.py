"""Error taxonomy and exit code mapping for the kc CLI."""

from __future__ import annotations


class KodamaError(Exception):
    """Base error for deterministic CLI exit codes."""

    exit_code: int = 1


class ConfigurationError(KodamaError):
    """Required environment is missing or invalid. Fatal at startup."""

    exit_code = 78


class SnapshotValidationError(KodamaError):
    """Rejected input: bad schema, bad id, traversal attempt, ambiguous prefix."""

    exit_code = 2


class RestoreConflictError(SnapshotValidationError):
    """Restore target is already occupied by another file."""


class TrashItemNotFoundError(SnapshotValidationError):
    """No trash entry matches the requested id or prefix."""


class LockTimeoutError(KodamaError):
    """Advisory lock could not be acquired within the timeout."""

    exit_code = 75

    def __init__(self, target_name: str):
        super().__init__(
            f"Could not acquire lock for {target_name}; another kc process is writing it. Try again."
        )
        self.target_name = target_name


class SnapshotLoadError(KodamaError):
    """A snapshot file exists but is unreadable (corrupt, invalid or oversized)."""

    exit_code = 3


class AtomicWriteError(KodamaError):
    """Atomic write failed and was rolled back."""

    exit_code = 3


def exit_code_for_exception(exc: BaseException) -> int:
    """Resolve a deterministic exit code for an exception."""
    if isinstance(exc, KodamaError):
        return exc.exit_code
    if isinstance(exc, OSError):
        return AtomicWriteError.exit_code
    return KodamaError.exit_code
