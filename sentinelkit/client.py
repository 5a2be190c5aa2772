"""Rate-limited Torn API client built on httpx.AsyncClient.

Application errors (the API's ``{"error": {"code", "error"}}`` envelope) are
returned as :class:`ApiFailure` values so callers can branch on the code.
Transport problems (network errors, timeouts, non-2xx responses, unreadable
bodies) raise :class:`~sentinelkit.errors.TransportError` and are not retried
here. An error envelope on a non-2xx response still reaches the invalid-key
callback before the exception is raised.
"""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Union

import httpx

from . import metrics
from .contracts import RateLimitTracker
from .errors import ApplicationError, ErrorKind, Failure, TransportError

if TYPE_CHECKING:  # pragma: no cover
    from .settings import Settings

TORN_API_BASE = "https://api.torn.com/v2"
TORN_API_V1_BASE = "https://api.torn.com"
REQUEST_TIMEOUT_S = 30.0
INVALID_KEY_CODES = frozenset({2})
API_KEY_PATTERN = re.compile(r"[A-Za-z0-9]{16}")

TORN_ERROR_CODES: dict[int, str] = {
    0: "Unknown error",
    1: "Key is empty",
    2: "Incorrect key",
    3: "Wrong type",
    4: "Wrong fields",
    5: "Too many requests",
    6: "Incorrect ID",
    7: "Incorrect ID/entity relation",
    8: "IP blocked",
    9: "API disabled",
    10: "Key owner in federal jail",
    11: "Key change cooldown",
    12: "Key read error",
    13: "Key temporarily disabled",
    14: "Daily read limit reached",
    15: "Log unavailable",
    16: "Access level too low",
    17: "Backend error",
    18: "API key paused",
    19: "Must migrate to Crimes v2",
    20: "Race not finished",
    21: "Incorrect category",
    22: "Only available in API v1",
    23: "Only available in API v2",
    24: "Closed temporarily",
    25: "Invalid stat requested",
    26: "Only category or stats allowed",
    27: "Must migrate to Organized Crimes v2",
    28: "Incorrect log ID",
    29: "Category selection unavailable for interaction logs",
}

InvalidKeyCallback = Callable[[str, int], Union[Awaitable[None], None]]

logger = logging.getLogger(__name__)


def is_valid_api_key(api_key: str) -> bool:
    return bool(API_KEY_PATTERN.fullmatch(api_key))


@dataclass(frozen=True, slots=True)
class ApiSuccess:
    data: Any

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> Any:
        return self.data


@dataclass(frozen=True, slots=True)
class ApiFailure:
    error: Failure

    @property
    def ok(self) -> bool:
        return False

    @property
    def code(self) -> int | None:
        return self.error.code

    def unwrap(self) -> Any:
        """Raise the envelope as :class:`ApplicationError`."""

        raise ApplicationError(self.error.message, code=self.error.code if self.error.code is not None else 0)


ApiResult = Union[ApiSuccess, ApiFailure]


class TornApiClient:
    """GET-only client for the Torn API.

    Parameters:
        rate_limiter: Optional tracker; consulted before and recorded after
            each successful request.
        on_invalid_key: Called with ``(api_key, code)`` when the API reports a
            code in ``invalid_key_codes``. May be a coroutine function.
        timeout: Per-request timeout in seconds.
        client: Shared ``httpx.AsyncClient``; when omitted a client is opened
            per request.
    """

    def __init__(
        self,
        *,
        rate_limiter: RateLimitTracker | None = None,
        on_invalid_key: InvalidKeyCallback | None = None,
        timeout: float = REQUEST_TIMEOUT_S,
        base_url: str = TORN_API_BASE,
        v1_base_url: str = TORN_API_V1_BASE,
        invalid_key_codes: frozenset[int] = INVALID_KEY_CODES,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be greater than 0")
        self.rate_limiter = rate_limiter
        self.on_invalid_key = on_invalid_key
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.v1_base_url = v1_base_url.rstrip("/")
        self.invalid_key_codes = invalid_key_codes
        self._client = client

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "TornApiClient":
        """Build a client whose request timeout comes from ``settings``."""

        return cls(timeout=settings.api_timeout, **kwargs)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"TornApiClient(base_url={self.base_url!r}, timeout={self.timeout}, "
            f"rate_limited={self.rate_limiter is not None})"
        )

    async def __aenter__(self) -> "TornApiClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def get(
        self,
        path: str,
        *,
        api_key: str,
        path_params: Mapping[str, Any] | None = None,
        query_params: Mapping[str, Any] | None = None,
    ) -> ApiResult:
        """GET a v2 endpoint; ``{name}`` placeholders come from ``path_params``."""

        url = self.base_url + self.build_path(path, path_params)
        return await self._request(url, api_key, query_params, cache_bust=True)

    async def get_raw(
        self,
        path: str,
        api_key: str,
        query_params: Mapping[str, Any] | None = None,
    ) -> ApiResult:
        """GET a v1 endpoint that the v2 API does not cover."""

        return await self._request(self.v1_base_url + path, api_key, query_params, cache_bust=False)

    @staticmethod
    def build_path(path: str, params: Mapping[str, Any] | None) -> str:
        if not params:
            return path
        for name, value in params.items():
            path = path.replace("{" + name + "}", str(value))
        return path

    @staticmethod
    def build_query(
        api_key: str, query_params: Mapping[str, Any] | None, *, cache_bust: bool
    ) -> dict[str, str]:
        params = {"key": api_key}
        if cache_bust:
            params["timestamp"] = str(int(time.time()))
        for name, value in (query_params or {}).items():
            if value is None or value == "":
                continue
            if isinstance(value, (list, tuple)):
                params[name] = ",".join(str(part) for part in value)
            elif isinstance(value, bool):
                params[name] = "true" if value else "false"
            else:
                params[name] = str(value)
        return params

    async def _request(
        self,
        url: str,
        api_key: str,
        query_params: Mapping[str, Any] | None,
        *,
        cache_bust: bool,
    ) -> ApiResult:
        if self.rate_limiter is not None:
            await self.rate_limiter.wait_if_needed(api_key)

        params = self.build_query(api_key, query_params, cache_bust=cache_bust)
        started = time.perf_counter()
        try:
            if self._client is not None:
                response = await self._send(self._client, url, params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._send(client, url, params)
        except httpx.TimeoutException as exc:
            metrics.api_requests.labels(outcome="transport_error").inc()
            raise TransportError(f"request to {url} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            metrics.api_requests.labels(outcome="transport_error").inc()
            raise TransportError(f"request to {url} failed: {exc}") from exc
        duration = int((time.perf_counter() - started) * 1000)

        try:
            data = response.json()
        except ValueError as exc:
            metrics.api_requests.labels(outcome="transport_error").inc()
            if not response.is_success:
                raise TransportError(
                    f"Torn API returned status {response.status_code}",
                    status_code=response.status_code,
                ) from exc
            raise TransportError(
                "Torn API returned a non-JSON body", status_code=response.status_code
            ) from exc

        # The invalid-key callback fires for error envelopes on any status.
        envelope = data.get("error") if isinstance(data, dict) else None
        failure = None
        if isinstance(envelope, dict):
            failure = await self._application_failure(api_key, envelope)
        if not response.is_success:
            metrics.api_requests.labels(outcome="transport_error").inc()
            detail = f": {failure.error}" if failure is not None else ""
            raise TransportError(
                f"Torn API returned status {response.status_code}{detail}",
                status_code=response.status_code,
            )
        if failure is not None:
            metrics.api_requests.labels(outcome="api_error").inc()
            return failure

        logger.debug("GET %s -> %s in %dms", url, response.status_code, duration)
        metrics.api_requests.labels(outcome="ok").inc()
        if self.rate_limiter is not None:
            await self.rate_limiter.record_request(api_key)
        return ApiSuccess(data)

    async def _send(
        self, client: httpx.AsyncClient, url: str, params: dict[str, str]
    ) -> httpx.Response:
        return await client.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    async def _application_failure(self, api_key: str, envelope: dict) -> ApiFailure:
        try:
            code = int(envelope.get("code", 0))
        except (TypeError, ValueError):
            code = 0
        message = TORN_ERROR_CODES.get(code) or envelope.get("error") or f"Error code {code}"
        logger.info("Torn API error %s: %s", code, message)
        if code in self.invalid_key_codes and self.on_invalid_key is not None:
            try:
                outcome = self.on_invalid_key(api_key, code)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.error("invalid-key callback failed", exc_info=True)
        return ApiFailure(Failure(kind=ErrorKind.APPLICATION, message=str(message), code=code))
