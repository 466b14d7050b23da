# ==============================================================================
# Storage Errors
# ==============================================================================
"""
Exceptions raised by storage engine backends.

Backends translate driver-specific exceptions (aiosqlite, opensearch-py,
filesystem errors) into these types at the adapter boundary so callers can
map them without knowing which backend is active.

Location resolution failures are not exceptions: the pipeline always returns
a terminal result (see core/location.py).
"""


class StorageError(Exception):
    """Base class for storage engine failures."""

    def __init__(self, message: str, backend: str | None = None):
        super().__init__(message)
        self.backend = backend

    def __str__(self) -> str:
        message = super().__str__()
        if self.backend:
            return f"[{self.backend}] {message}"
        return message


class StorageUnavailable(StorageError):
    """The backing file, database, or cluster cannot be reached."""


class ConstraintViolation(StorageError):
    """A write violated a uniqueness or foreign-key rule enforced by the backend."""
