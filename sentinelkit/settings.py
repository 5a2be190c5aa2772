"""Environment-driven configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Mapping, TypeVar

from .client import REQUEST_TIMEOUT_S
from .ratelimit import DEFAULT_MAX_REQUESTS, DEFAULT_WINDOW_S
from .scheduler import DEFAULT_POLL_INTERVAL_S

T = TypeVar("T")

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str | None = None
    hash_pepper: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL_S
    rate_limit_max: int = DEFAULT_MAX_REQUESTS
    rate_limit_window: float = DEFAULT_WINDOW_S
    api_timeout: float = REQUEST_TIMEOUT_S
    stale_claim_after: float | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        log_level = (env.get("SENTINEL_LOG_LEVEL") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"SENTINEL_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return cls(
            database_url=env.get("SENTINEL_DATABASE_URL") or None,
            hash_pepper=env.get("API_KEY_HASH_PEPPER") or None,
            poll_interval=_positive(env, "SENTINEL_POLL_INTERVAL", float, DEFAULT_POLL_INTERVAL_S),
            rate_limit_max=_positive(env, "SENTINEL_RATE_LIMIT_MAX", int, DEFAULT_MAX_REQUESTS),
            rate_limit_window=_positive(env, "SENTINEL_RATE_LIMIT_WINDOW", float, DEFAULT_WINDOW_S),
            api_timeout=_positive(env, "SENTINEL_API_TIMEOUT", float, REQUEST_TIMEOUT_S),
            stale_claim_after=_positive(env, "SENTINEL_STALE_CLAIM_AFTER", float, None),
            log_level=log_level,
        )


def _positive(env: Mapping[str, str], name: str, convert: Callable[[str], T], default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:  # type: ignore[operator]
        raise ValueError(f"{name} must be greater than 0")
    return value
