"""
cogit.core.errors — Error kinds raised by the COGIT core.

Filesystem and serialisation errors abort the current operation.  Embedding
service errors carry a :class:`ServiceFailureKind` so callers can tell a
missing credential from a flaky network without parsing messages.
"""

from __future__ import annotations

from enum import StrEnum


class CogitError(Exception):
    """Base class for every error raised by the COGIT core."""


class IOFailure(CogitError):
    """A filesystem read or write failed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class PathNotFoundError(IOFailure):
    """A path given to ``add`` exists neither on disk nor in HEAD."""


class NotARepositoryError(CogitError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Not a COGIT repository (or any parent): {path}")
        self.path = path


class RepositoryExistsError(CogitError):
    def __init__(self, path: str) -> None:
        super().__init__(f"COGIT repository already exists at {path}")
        self.path = path


class EmptyStagingError(CogitError):
    def __init__(self) -> None:
        super().__init__("Nothing staged to commit (use 'cogit add <path>')")


class SerializationError(CogitError):
    """Persisted JSON or a stored object could not be parsed."""


class ObjectNotFoundError(CogitError):
    def __init__(self, key: str, reason: str = "not found") -> None:
        super().__init__(f"Object {key}: {reason}")
        self.key = key


class CorruptObjectError(CogitError):
    """Stored bytes no longer hash to the key they are filed under."""

    def __init__(self, key: str, actual: str | None = None) -> None:
        detail = f" (content hashes to {actual})" if actual else ""
        super().__init__(f"Object {key} is corrupt{detail}")
        self.key = key
        self.actual = actual


# ---------------------------------------------------------------------------
# External service failures
# ---------------------------------------------------------------------------

class ServiceFailureKind(StrEnum):
    UNCONFIGURED = "unconfigured"       # No credential / provider supplied
    UNAUTHORIZED = "unauthorized"       # 401 / 403
    RATE_LIMITED = "rate_limited"       # 429 after retries
    TRANSPORT = "transport"             # Timeout, connection error, 5xx, bad payload


class EmbeddingServiceError(CogitError):
    """An embedding or completion service call failed."""

    kind: ServiceFailureKind = ServiceFailureKind.TRANSPORT

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceUnconfiguredError(EmbeddingServiceError):
    kind = ServiceFailureKind.UNCONFIGURED


class ServiceUnauthorizedError(EmbeddingServiceError):
    kind = ServiceFailureKind.UNAUTHORIZED


class ServiceRateLimitedError(EmbeddingServiceError):
    kind = ServiceFailureKind.RATE_LIMITED


class ServiceTransportError(EmbeddingServiceError):
    kind = ServiceFailureKind.TRANSPORT
