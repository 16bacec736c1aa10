"""RetryingRequestClient: every outbound cloud-calendar API call goes through here.

* Rate-limit responses (429, 503, and 403 with a ``rateLimitExceeded`` /
  ``userRateLimitExceeded`` reason) are retried with exponential backoff plus
  jitter, capped at ``max_backoff_seconds``; a ``Retry-After`` header wins over
  the computed delay.  When attempts run out the client raises
  :class:`RateLimited`.
* 401 raises :class:`TokenExpired` immediately; the caller owns the
  refresh-once policy.
* Methods that are not safe to repeat (POST, PATCH) are sent exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from calsync.errors import CloudRequestError, RateLimited, SourceUnavailable, TokenExpired

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
RATE_LIMIT_MAX_BACKOFF_SECONDS = 30.0
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def safe_error_message(response: httpx.Response) -> str:
    """Short, single-line description of an API error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return set()
    reasons: set[str] = set()
    for item in payload["error"].get("errors") or []:
        if isinstance(item, dict) and isinstance(item.get("reason"), str):
            reasons.add(item["reason"])
    status = payload["error"].get("status")
    if status == "RESOURCE_EXHAUSTED":
        reasons.add("rateLimitExceeded")
    return reasons


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
        return True
    return response.status_code == 403 and bool(_error_reasons(response) & RATE_LIMIT_REASONS)


def _retry_after_seconds(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        value = float(header)
    except ValueError:
        return None
    return value if value >= 0 else None


class RetryingRequestClient:
    """Bounded-retry wrapper around an ``httpx.AsyncClient``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
        base_backoff_seconds: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = RATE_LIMIT_MAX_BACKOFF_SECONDS,
        jitter: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        source: str = "cloud",
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._http_client = http_client
        self._max_retries = max_retries
        self._base_backoff = base_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._source = source

    def backoff_for(self, attempt: int, response: httpx.Response | None = None) -> float:
        """Delay before retry number ``attempt + 1``."""
        if response is not None:
            retry_after = _retry_after_seconds(response)
            if retry_after is not None:
                return min(retry_after, self._max_backoff)
        delay = self._base_backoff * (2**attempt) + self._jitter() * self._base_backoff
        return min(delay, self._max_backoff)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying rate limits and transport errors when safe.

        Returns the final 2xx response.

        Raises
        ------
        TokenExpired
            On 401.
        RateLimited
            When rate-limit responses persist past ``max_retries``.
        SourceUnavailable
            When the transport keeps failing.
        CloudRequestError
            On any other non-2xx response.
        """
        method = method.upper()
        retryable = method in IDEMPOTENT_METHODS
        attempt = 0
        while True:
            try:
                response = await self._http_client.request(
                    method, url, params=params, data=data, json=json_body, headers=headers
                )
            except httpx.HTTPError as exc:
                if not retryable or attempt >= self._max_retries:
                    raise SourceUnavailable(
                        f"Cloud calendar request failed: {type(exc).__name__}",
                        source=self._source,
                    ) from exc
                delay = self.backoff_for(attempt)
                logger.warning(
                    "Cloud calendar transport error (%s), retrying in %.1fs (attempt %d/%d)",
                    type(exc).__name__,
                    delay,
                    attempt + 1,
                    self._max_retries,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if 200 <= response.status_code < 300:
                return response

            if response.status_code == 401:
                raise TokenExpired(
                    f"Cloud calendar API rejected the access token: {safe_error_message(response)}",
                    source=self._source,
                )

            if is_rate_limited(response):
                if not retryable or attempt >= self._max_retries:
                    raise RateLimited(
                        f"Cloud calendar API rate limit persisted after {attempt + 1} attempt(s): "
                        f"{safe_error_message(response)}",
                        source=self._source,
                        attempts=attempt + 1,
                        status_code=response.status_code,
                    )
                delay = self.backoff_for(attempt, response)
                logger.warning(
                    "Cloud calendar API rate-limited (status=%d), retrying in %.1fs "
                    "(attempt %d/%d)",
                    response.status_code,
                    delay,
                    attempt + 1,
                    self._max_retries,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            raise CloudRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                source=self._source,
            )

    async def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request("GET", url, params=params, headers=headers)
        return _json_object(response)

    async def post_form(
        self,
        url: str,
        *,
        data: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request("POST", url, data=data, headers=headers)
        return _json_object(response)


def _json_object(response: httpx.Response) -> dict[str, Any]:
    if response.status_code == 204:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise CloudRequestError(
            status_code=response.status_code,
            message="API returned invalid JSON for a successful response",
        ) from exc
    if not isinstance(payload, dict):
        raise CloudRequestError(
            status_code=response.status_code,
            message="API returned an unexpected JSON payload shape",
        )
    return payload
