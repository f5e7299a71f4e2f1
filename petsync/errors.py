"""Structured failures raised by the sync core."""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Failure categories surfaced to callers of the sync core."""

    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    TRANSIENT = "transient"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def retryable(self) -> bool:
        return self is FailureKind.TRANSIENT


_HTTP_STATUS: dict[FailureKind, int] = {
    FailureKind.BAD_REQUEST: 400,
    FailureKind.NOT_FOUND: 404,
    FailureKind.FORBIDDEN: 403,
    FailureKind.TRANSIENT: 503,
}


class PetSyncError(RuntimeError):
    """Base class for expected failures: a kind plus a human readable message."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, *, kind: FailureKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind.value, "message": self.message}

    @classmethod
    def from_status(cls, status: int, message: str) -> PetSyncError:
        """Map an HTTP status returned by the sync service back onto an error."""

        for error_cls in (BadRequestError, NotFoundError, ForbiddenError):
            if error_cls.kind.http_status == status:
                return error_cls(message)
        return TransientSyncError(message)


class BadRequestError(PetSyncError):
    """Malformed or incomplete input; not retried automatically."""

    kind = FailureKind.BAD_REQUEST


class NotFoundError(PetSyncError):
    """Referenced pet, token or redemption does not exist."""

    kind = FailureKind.NOT_FOUND


class ForbiddenError(PetSyncError):
    """The caller's tier does not allow the requested operation."""

    kind = FailureKind.FORBIDDEN


class TransientSyncError(PetSyncError):
    """Network or storage unavailability; the whole round is safe to retry."""

    kind = FailureKind.TRANSIENT


class TokenSpaceExhaustedError(RuntimeError):
    """Raised when no unused share code could be drawn within the retry budget."""


__all__ = [
    "BadRequestError",
    "FailureKind",
    "ForbiddenError",
    "NotFoundError",
    "PetSyncError",
    "TokenSpaceExhaustedError",
    "TransientSyncError",
]
