"""CloudAccountProvider: events from every calendar one connected account can see.

Access tokens are minted from the stored refresh token and cached until 60
seconds before expiry.  When the API answers 401 the token is refreshed once
and the call repeated; a second rejection propagates as ``TokenExpired``.
Rotated refresh tokens and new expiries are written back through
:meth:`CredentialStore.refresh`.

Each fetch spreads a results budget over the account's calendars: every
calendar gets ``max(min_results_per_calendar, max_results // n_calendars)``
so one busy calendar cannot starve the rest.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

from pydantic import SecretStr

from calsync.credential_store import CredentialStore
from calsync.errors import (
    AccountNotFound,
    CalendarError,
    CloudRequestError,
    ParseError,
    TokenExpired,
)
from calsync.models import EventSource, RawEvent, TimeRange
from calsync.oauth import ACCESS_TOKEN_EARLY_REFRESH_SECONDS, OAuthClient
from calsync.retry import RetryingRequestClient
from calsync.sources.base import FetchResult, SourceProvider

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_MAX_RESULTS = 250
DEFAULT_MIN_RESULTS_PER_CALENDAR = 25
# The API caps a single page at this many items.
API_PAGE_LIMIT = 2500
_SKIPPED_ACCESS_ROLES = {"freeBusyReader"}


def results_budget(max_results: int, min_per_calendar: int, calendar_count: int) -> int:
    """Per-calendar result budget: an even share, but never below the floor."""
    if calendar_count <= 0:
        return 0
    return min(max(min_per_calendar, max_results // calendar_count), API_PAGE_LIMIT)


class CloudAccountProvider(SourceProvider):
    """One connected cloud account."""

    def __init__(
        self,
        email: str,
        *,
        credential_store: CredentialStore,
        oauth: OAuthClient,
        requests: RetryingRequestClient,
        max_results: int = DEFAULT_MAX_RESULTS,
        min_results_per_calendar: int = DEFAULT_MIN_RESULTS_PER_CALENDAR,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._email = email
        self._store = credential_store
        self._oauth = oauth
        self._requests = requests
        self._max_results = max_results
        self._min_per_calendar = min_results_per_calendar
        self._api_base_url = api_base_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(UTC))
        self._access_token: SecretStr | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return f"{EventSource.cloud.value}:{self._email}"

    @property
    def source(self) -> EventSource:
        return EventSource.cloud

    @property
    def email(self) -> str:
        return self._email

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return self._clock() < self._access_token_expires_at

    async def get_access_token(self, *, force_refresh: bool = False) -> SecretStr:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token
            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    async def _refresh_access_token(self) -> None:
        account = await self._store.get(self._email)
        if account is None:
            raise AccountNotFound(self._email)
        try:
            grant = await self._oauth.refresh(account.refresh_token)
        except TokenExpired as exc:
            exc.source = self.name
            raise
        self._access_token = grant.access_token
        self._access_token_expires_at = grant.expires_at - timedelta(
            seconds=ACCESS_TOKEN_EARLY_REFRESH_SECONDS
        )
        await self._store.refresh(self._email, grant.refresh_token, grant.expires_at)
        if grant.refresh_token is not None:
            logger.info("Stored rotated refresh token for %s", self._email)

    # ------------------------------------------------------------------
    # API access
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._api_base_url}{path}"
        token = await self.get_access_token()
        try:
            return await self._requests.get_json(
                url, params=params, headers=self._auth_headers(token)
            )
        except TokenExpired:
            logger.info("Access token for %s rejected; refreshing once", self._email)
        token = await self.get_access_token(force_refresh=True)
        return await self._requests.get_json(url, params=params, headers=self._auth_headers(token))

    @staticmethod
    def _auth_headers(token: SecretStr) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.get_secret_value()}"}

    async def list_calendars(self) -> list[dict[str, Any]]:
        calendars: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"minAccessRole": "reader"}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._get_json("/users/me/calendarList", params)
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or not item.get("id"):
                    continue
                if item.get("accessRole") in _SKIPPED_ACCESS_ROLES or item.get("deleted"):
                    continue
                calendars.append(item)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    async def _list_events(
        self, calendar_id: str, window: TimeRange, budget: int
    ) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        page_token: str | None = None
        while len(events) < budget:
            params: dict[str, Any] = {
                "timeMin": window.start.isoformat(),
                "timeMax": window.end.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": budget - len(events),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = await self._get_json(
                f"/calendars/{quote(calendar_id, safe='')}/events", params
            )
            items = payload.get("items") or []
            events.extend(item for item in items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return events[:budget]

    async def fetch(self, window: TimeRange) -> FetchResult:
        calendars = await self.list_calendars()
        result = FetchResult()
        if not calendars:
            return result

        budget = results_budget(self._max_results, self._min_per_calendar, len(calendars))
        failures: list[CalendarError] = []
        for calendar in calendars:
            calendar_name = calendar.get("summaryOverride") or calendar.get("summary")
            try:
                items = await self._list_events(calendar["id"], window, budget)
            except CloudRequestError as exc:
                logger.warning(
                    "Skipping calendar %r for %s: %s", calendar_name, self._email, exc.message
                )
                exc.source = self.name
                failures.append(exc)
                continue
            for index, item in enumerate(items):
                if item.get("status") == "cancelled":
                    continue
                if not item.get("start"):
                    result.errors.append(
                        ParseError("Event has no start", source=self.name, record_index=index)
                    )
                    continue
                result.records.append(
                    RawEvent(
                        source=EventSource.cloud,
                        payload=item,
                        calendar_name=calendar_name,
                        account_email=self._email,
                    )
                )

        if failures and len(failures) == len(calendars):
            raise failures[0]
        result.errors.extend(failures)
        return result
