"""Unit tests for calsync.sources.cloud.CloudAccountProvider.

The cloud API and the OAuth token endpoint are served by an
``httpx.MockTransport``; no network access is required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import SecretStr

from calsync.credential_store import CredentialStore, InMemorySettingsStore
from calsync.errors import AccountNotFound, CloudRequestError, TokenExpired
from calsync.models import AccountUserInfo, EventSource, TimeRange
from calsync.oauth import OAuthClient, OAuthClientCredentials
from calsync.retry import RetryingRequestClient
from calsync.sources.cloud import CloudAccountProvider, results_budget

pytestmark = pytest.mark.unit

_WINDOW = TimeRange(
    start=datetime(2026, 3, 10, tzinfo=UTC), end=datetime(2026, 3, 11, tzinfo=UTC)
)
_EMAIL = "alice@example.com"


def _event(event_id: str, **extra) -> dict:
    item = {
        "id": event_id,
        "iCalUID": f"{event_id}@google.com",
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2026-03-10T09:00:00Z"},
        "end": {"dateTime": "2026-03-10T10:00:00Z"},
    }
    item.update(extra)
    return item


class FakeCalendarApi:
    """Routes token, calendar-list and events requests; records every call."""

    def __init__(self) -> None:
        self.calendars: list[dict] = [
            {"id": "primary", "summary": "Alice", "accessRole": "owner"},
            {"id": "team@group.calendar.google.com", "summary": "Team", "accessRole": "reader"},
        ]
        self.events: dict[str, list[dict]] = {
            "primary": [_event("a"), _event("b", status="cancelled")],
            "team@group.calendar.google.com": [_event("c")],
        }
        self.failing_calendars: dict[str, int] = {}
        self.token_responses: list[httpx.Response] = []
        self.reject_tokens: set[str] = set()
        self.token_calls = 0
        self.requests: list[httpx.Request] = []
        self._issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            self.token_calls += 1
            if self.token_responses:
                return self.token_responses.pop(0)
            self._issued += 1
            return httpx.Response(
                200, json={"access_token": f"ya29.{self._issued}", "expires_in": 3600}
            )

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.reject_tokens:
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        path = request.url.path
        if path.endswith("/users/me/calendarList"):
            return httpx.Response(200, json={"items": self.calendars})
        for calendar_id, items in self.events.items():
            if path.endswith(f"/calendars/{calendar_id}/events"):
                status = self.failing_calendars.get(calendar_id)
                if status:
                    return httpx.Response(status, json={"error": {"message": "Not Found"}})
                return httpx.Response(200, json={"items": items})
        return httpx.Response(404, json={"error": {"message": f"unrouted {path}"}})


async def _setup(api: FakeCalendarApi, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api.handler))
    requests = RetryingRequestClient(http, sleep=_no_sleep)
    oauth = OAuthClient(
        OAuthClientCredentials(client_id="cid", client_secret=SecretStr("secret")),
        http,
        request_client=requests,
    )
    store = CredentialStore(InMemorySettingsStore())
    await store.add(AccountUserInfo(email=_EMAIL), "1//refresh")
    provider = CloudAccountProvider(
        _EMAIL, credential_store=store, oauth=oauth, requests=requests, **kwargs
    )
    return provider, store


async def _no_sleep(delay: float) -> None:
    return None


class TestFetch:
    async def test_fetches_all_calendars_tagged_with_account(self) -> None:
        api = FakeCalendarApi()
        provider, _ = await _setup(api)
        result = await provider.fetch(_WINDOW)

        assert [r.payload["id"] for r in result.records] == ["a", "c"]
        assert {r.account_email for r in result.records} == {_EMAIL}
        assert all(r.source is EventSource.cloud for r in result.records)
        assert [r.calendar_name for r in result.records] == ["Alice", "Team"]
        assert result.errors == []

    async def test_event_query_parameters(self) -> None:
        api = FakeCalendarApi()
        provider, _ = await _setup(api, max_results=10, min_results_per_calendar=2)
        await provider.fetch(_WINDOW)

        event_requests = [r for r in api.requests if r.url.path.endswith("/events")]
        params = parse_qs(event_requests[0].url.query.decode())
        assert params["singleEvents"] == ["true"]
        assert params["orderBy"] == ["startTime"]
        assert params["maxResults"] == ["5"]
        assert params["timeMin"] == ["2026-03-10T00:00:00+00:00"]

    async def test_free_busy_calendars_skipped(self) -> None:
        api = FakeCalendarApi()
        api.calendars.append({"id": "fb", "summary": "Busy", "accessRole": "freeBusyReader"})
        provider, _ = await _setup(api)
        calendars = await provider.list_calendars()
        assert [c["id"] for c in calendars] == ["primary", "team@group.calendar.google.com"]

    async def test_one_failing_calendar_is_not_fatal(self) -> None:
        api = FakeCalendarApi()
        api.failing_calendars["team@group.calendar.google.com"] = 404
        provider, _ = await _setup(api)
        result = await provider.fetch(_WINDOW)
        assert [r.payload["id"] for r in result.records] == ["a"]
        assert isinstance(result.errors[0], CloudRequestError)

    async def test_all_calendars_failing_is_fatal(self) -> None:
        api = FakeCalendarApi()
        api.failing_calendars = {"primary": 404, "team@group.calendar.google.com": 404}
        provider, _ = await _setup(api)
        with pytest.raises(CloudRequestError):
            await provider.fetch(_WINDOW)

    async def test_no_calendars(self) -> None:
        api = FakeCalendarApi()
        api.calendars = []
        provider, _ = await _setup(api)
        result = await provider.fetch(_WINDOW)
        assert result.records == []


class TestTokens:
    async def test_access_token_cached_between_calls(self) -> None:
        api = FakeCalendarApi()
        provider, _ = await _setup(api)
        await provider.fetch(_WINDOW)
        await provider.fetch(_WINDOW)
        assert api.token_calls == 1

    async def test_401_refreshes_once_and_retries(self) -> None:
        api = FakeCalendarApi()
        api.reject_tokens.add("ya29.1")
        provider, _ = await _setup(api)
        result = await provider.fetch(_WINDOW)
        assert api.token_calls == 2
        assert len(result.records) == 2

    async def test_second_401_propagates(self) -> None:
        api = FakeCalendarApi()
        api.reject_tokens.update({"ya29.1", "ya29.2"})
        provider, _ = await _setup(api)
        with pytest.raises(TokenExpired):
            await provider.fetch(_WINDOW)

    async def test_rotated_refresh_token_written_back(self) -> None:
        api = FakeCalendarApi()
        api.token_responses.append(
            httpx.Response(
                200,
                json={"access_token": "ya29.x", "refresh_token": "1//rotated", "expires_in": 3600},
            )
        )
        provider, store = await _setup(api)
        await provider.get_access_token()
        account = await store.get(_EMAIL)
        assert account is not None
        assert account.refresh_token.get_secret_value() == "1//rotated"
        assert account.token_expiry is not None

    async def test_revoked_refresh_token(self) -> None:
        api = FakeCalendarApi()
        api.token_responses.append(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"})
        )
        provider, _ = await _setup(api)
        with pytest.raises(TokenExpired) as exc_info:
            await provider.fetch(_WINDOW)
        assert exc_info.value.source == f"cloud:{_EMAIL}"

    async def test_removed_account(self) -> None:
        api = FakeCalendarApi()
        provider, store = await _setup(api)
        await store.remove(_EMAIL)
        with pytest.raises(AccountNotFound):
            await provider.fetch(_WINDOW)


@pytest.mark.parametrize(
    ("max_results", "floor", "count", "expected"),
    [(250, 25, 2, 125), (250, 25, 20, 25), (10000, 25, 1, 2500), (250, 25, 0, 0)],
)
def test_results_budget(max_results: int, floor: int, count: int, expected: int) -> None:
    assert results_budget(max_results, floor, count) == expected
