"""
Error taxonomy and the Result wrapper returned across the public boundary.

Gateway, decoder, agent and repository operations never raise past their
public methods: they return a Result carrying either a value or one of the
SyncError subclasses below. Presentation code only ever sees `kind` and the
human-readable message.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class SyncError(Exception):
    """Base class for every failure surfaced by the sync layer."""

    kind = "SyncError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NetworkError(SyncError):
    """Transport-level failure (DNS, TLS, timeout); no HTTP status exists."""

    kind = "NetworkError"


class FetchError(SyncError):
    """The gateway answered but the answer is unusable."""

    kind = "FetchError"


class HttpStatusError(FetchError):
    kind = "HttpStatusError"

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {code}")
        self.code = code


class EmptyResultError(FetchError):
    """Tool call succeeded but result.content had no usable first element."""

    kind = "EmptyResultError"


class RpcError(FetchError):
    kind = "RpcError"

    def __init__(self, code: int | None, message: str) -> None:
        super().__init__(message)
        self.code = code


class DecodeReason(str, Enum):
    EMPTY = "empty"
    MALFORMED = "malformed"


class DecodeError(SyncError):
    kind = "DecodeError"

    def __init__(self, reason: DecodeReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason

    @classmethod
    def empty(cls, message: str = "Empty response received") -> "DecodeError":
        return cls(DecodeReason.EMPTY, message)

    @classmethod
    def malformed(cls, message: str) -> "DecodeError":
        return cls(DecodeReason.MALFORMED, message)


class AuthError(SyncError):
    """Login sequence failed. `step` is validate | session | login | persist."""

    kind = "AuthError"

    def __init__(self, step: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.status_code = status_code


class StoreError(SyncError):
    """Realtime store read / write / subscribe failure."""

    kind = "StoreError"


class InvalidInputError(SyncError):
    """Caller-supplied value rejected before any request was made."""

    kind = "InvalidInputError"


class CancelledFetchError(SyncError):
    """The fetch was cancelled through its scope before it finished."""

    kind = "CancelledFetchError"


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SyncError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
