"""Tests for error kinds and the exception-to-data conversion."""

from __future__ import annotations

import pytest

from sentinelkit.errors import (
    ApplicationError,
    ErrorKind,
    Failure,
    RateLimitWaitExceeded,
    SentinelError,
    TransportError,
)


@pytest.mark.parametrize(
    "exc, kind, code",
    [
        (TransportError("bad gateway", status_code=502), ErrorKind.TRANSPORT, 502),
        (TransportError("refused"), ErrorKind.TRANSPORT, None),
        (ApplicationError("Incorrect key", code=2), ErrorKind.APPLICATION, 2),
        (RateLimitWaitExceeded("f" * 64, 10), ErrorKind.RATE_LIMIT_WAIT, None),
        (TimeoutError(), ErrorKind.TIMEOUT, None),
        (RuntimeError("boom"), ErrorKind.HANDLER, None),
    ],
)
def test_failure_from_exception_classifies(exc, kind, code) -> None:
    failure = Failure.from_exception(exc)
    assert failure.kind is kind
    assert failure.code == code
    assert failure.message


def test_failure_kind_can_be_overridden() -> None:
    failure = Failure.from_exception(ConnectionError("db down"), kind=ErrorKind.STORE)
    assert failure == Failure(ErrorKind.STORE, "db down")


def test_failure_str_includes_code() -> None:
    assert str(Failure(ErrorKind.APPLICATION, "Incorrect key", code=2)) == "application[2]: Incorrect key"
    assert str(Failure(ErrorKind.HANDLER, "boom")) == "handler: boom"
    assert Failure.from_exception(TimeoutError()).message == "TimeoutError"


def test_rate_limit_wait_exceeded_truncates_hash() -> None:
    exc = RateLimitWaitExceeded("abcdef0123456789" * 4, 3)
    assert isinstance(exc, SentinelError)
    assert "abcdef012345" in str(exc)
    assert "abcdef0123456789abcdef" not in str(exc)
    assert exc.cycles == 3
