"""Error taxonomy and exit code mapping for the state engine."""

from __future__ import annotations


class StateError(Exception):
    """Base error for deterministic CLI exit codes."""

    exit_code: int = 1


class LockUnavailableError(StateError):
    """The write lock could not be acquired before the timeout."""

    exit_code = 2


class CorruptStateError(StateError):
    """The persisted document exists but cannot be parsed or is malformed."""

    exit_code = 3


class StateValidationError(StateError):
    """A mutation would leave the document invalid; it was rolled back."""

    exit_code = 4

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class InconsistentStateError(StateError):
    """Cached state disagrees with the repository."""

    exit_code = 5

    def __init__(self, message: str, mismatches: list[str] | None = None):
        super().__init__(message)
        self.mismatches = list(mismatches or [])


class ConfigurationError(StateError):
    """The workspace configuration is missing or invalid."""

    exit_code = 6


class RepositoryError(StateError):
    """A read-only repository query failed."""

    exit_code = 7


class RepositoryTimeoutError(RepositoryError):
    """A repository query exceeded its time bound."""

    exit_code = 8


class TransactionError(StateError):
    """Transaction used out of order (nested begin, commit while idle)."""


class LockNotHeldError(StateError):
    """A locked operation was attempted without holding the lock."""


def exit_code_for_exception(exc: BaseException) -> int:
    """Resolve a deterministic exit code for an exception."""
    if isinstance(exc, StateError):
        return exc.exit_code
    return StateError.exit_code
