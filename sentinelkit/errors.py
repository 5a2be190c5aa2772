"""Error kinds and exceptions shared across Sentinelkit."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    APPLICATION = "application"
    STORE = "store"
    RATE_LIMIT_WAIT = "rate_limit_wait"
    HANDLER = "handler"
    TIMEOUT = "timeout"


class SentinelError(RuntimeError):
    """Base class for errors raised by Sentinelkit."""


class TransportError(SentinelError):
    """Raised on network failures, timeouts and non-2xx HTTP responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApplicationError(SentinelError):
    """Raised when a caller unwraps an API error envelope."""

    def __init__(self, message: str, *, code: int) -> None:
        super().__init__(message)
        self.code = code


class RateLimitWaitExceeded(SentinelError):
    """Raised when a key stayed saturated for every allowed wait cycle."""

    def __init__(self, key_hash: str, cycles: int) -> None:
        super().__init__(
            f"rate limit wait exceeded after {cycles} cycles for key {key_hash[:12]}"
        )
        self.key_hash = key_hash
        self.cycles = cycles


class JobNotFoundError(SentinelError):
    """Raised when an operation targets a job without a schedule row."""


@dataclass(frozen=True, slots=True)
class Failure:
    """Error carried as data instead of being raised."""

    kind: ErrorKind
    message: str
    code: int | None = None

    @classmethod
    def from_exception(
        cls, exc: BaseException, *, kind: ErrorKind | None = None
    ) -> "Failure":
        if kind is None:
            kind = _classify(exc)
        code: int | None = None
        if isinstance(exc, TransportError):
            code = exc.status_code
        elif isinstance(exc, ApplicationError):
            code = exc.code
        return cls(kind=kind, message=str(exc) or exc.__class__.__name__, code=code)

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.kind.value}[{self.code}]: {self.message}"
        return f"{self.kind.value}: {self.message}"


def _classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSPORT
    if isinstance(exc, ApplicationError):
        return ErrorKind.APPLICATION
    if isinstance(exc, RateLimitWaitExceeded):
        return ErrorKind.RATE_LIMIT_WAIT
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.HANDLER


__all__ = [
    "ApplicationError",
    "ErrorKind",
    "Failure",
    "JobNotFoundError",
    "RateLimitWaitExceeded",
    "SentinelError",
    "TransportError",
]
