"""Unit tests for calsync.credential_store.CredentialStore.

Coverage:
- add()     : ceiling, case-insensitive uniqueness, concurrent adds
- remove()  : idempotent, listener notification
- refresh() : token rotation, unknown account
- JsonFileSettingsStore: atomic write, owner-only permissions
- secrets never appear in reprs or log output
"""

from __future__ import annotations

import asyncio
import json
import logging
import stat
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr

from calsync.credential_store import (
    ACCOUNTS_KEY,
    CredentialStore,
    InMemorySettingsStore,
    JsonFileSettingsStore,
)
from calsync.errors import AccountAlreadyConnected, AccountLimitExceeded, AccountNotFound
from calsync.models import AccountUserInfo

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _info(email: str, name: str | None = None) -> AccountUserInfo:
    return AccountUserInfo(email=email, display_name=name)


def _store(**kwargs) -> CredentialStore:
    return CredentialStore(InMemorySettingsStore(), clock=lambda: _NOW, **kwargs)


# ---------------------------------------------------------------------------
# add()
# ---------------------------------------------------------------------------


class TestAdd:
    async def test_add_persists_account(self) -> None:
        settings = InMemorySettingsStore()
        store = CredentialStore(settings, clock=lambda: _NOW)
        account = await store.add(_info("a@example.com", "Alice"), "1//tok")

        assert account.connected_at == _NOW
        raw = await settings.get(ACCOUNTS_KEY)
        assert raw[0]["email"] == "a@example.com"
        assert raw[0]["refreshToken"] == "1//tok"
        assert await store.count() == 1

    async def test_duplicate_email_is_case_insensitive(self) -> None:
        store = _store()
        await store.add(_info("a@example.com"), "1//tok")
        with pytest.raises(AccountAlreadyConnected):
            await store.add(_info("A@Example.COM"), "1//other")
        assert await store.count() == 1

    async def test_sixth_account_rejected_and_existing_unchanged(self) -> None:
        store = _store()
        for i in range(5):
            await store.add(_info(f"user{i}@example.com"), f"1//tok{i}")
        before = await store.list()

        with pytest.raises(AccountLimitExceeded) as exc_info:
            await store.add(_info("user5@example.com"), "1//tok5")

        assert exc_info.value.message == "Maximum of 5 cloud accounts allowed"
        assert await store.list() == before

    async def test_concurrent_adds_at_ceiling_minus_one(self) -> None:
        store = _store()
        for i in range(4):
            await store.add(_info(f"user{i}@example.com"), f"1//tok{i}")

        results = await asyncio.gather(
            store.add(_info("x@example.com"), "1//x"),
            store.add(_info("y@example.com"), "1//y"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], AccountLimitExceeded)
        assert await store.count() == 5

    async def test_concurrent_duplicate_adds_store_one(self) -> None:
        store = _store()
        results = await asyncio.gather(
            store.add(_info("a@example.com"), "1//one"),
            store.add(_info("A@example.com"), "1//two"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, AccountAlreadyConnected) for r in results) == 1
        assert await store.count() == 1

    async def test_empty_refresh_token_rejected(self) -> None:
        with pytest.raises(ValueError):
            await _store().add(_info("a@example.com"), "")

    async def test_custom_ceiling(self) -> None:
        store = _store(max_accounts=1)
        await store.add(_info("a@example.com"), "1//a")
        with pytest.raises(AccountLimitExceeded):
            await store.add(_info("b@example.com"), "1//b")

    async def test_listener_notified(self) -> None:
        store = _store()
        listener = AsyncMock()
        store.add_listener(listener)
        await store.add(_info("a@example.com"), "1//a")
        listener.assert_awaited_once()

    async def test_secret_not_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        store = _store()
        with caplog.at_level(logging.DEBUG, logger="calsync.credential_store"):
            account = await store.add(_info("a@example.com"), "1//super-secret")
        assert "super-secret" not in caplog.text
        assert "super-secret" not in repr(account)
        assert "super-secret" not in repr(store)


# ---------------------------------------------------------------------------
# remove()
# ---------------------------------------------------------------------------


class TestRemove:
    async def test_remove_is_case_insensitive(self) -> None:
        store = _store()
        await store.add(_info("a@example.com"), "1//a")
        assert await store.remove("A@EXAMPLE.com") is True
        assert await store.list() == []

    async def test_remove_unknown_is_noop(self) -> None:
        store = _store()
        listener = AsyncMock()
        store.add_listener(listener)
        assert await store.remove("nobody@example.com") is False
        listener.assert_not_awaited()

    async def test_remove_frees_a_slot(self) -> None:
        store = _store(max_accounts=1)
        await store.add(_info("a@example.com"), "1//a")
        await store.remove("a@example.com")
        await store.add(_info("b@example.com"), "1//b")
        assert [a.email for a in await store.list()] == ["b@example.com"]


# ---------------------------------------------------------------------------
# refresh()
# ---------------------------------------------------------------------------


class TestRefresh:
    async def test_rotated_token_and_expiry_written_back(self) -> None:
        store = _store()
        await store.add(_info("a@example.com"), "1//old")
        expiry = _NOW + timedelta(hours=1)

        updated = await store.refresh("A@example.com", "1//new", expiry)

        assert updated.refresh_token.get_secret_value() == "1//new"
        stored = await store.get("a@example.com")
        assert stored is not None
        assert stored.token_expiry == expiry
        assert stored.refresh_token.get_secret_value() == "1//new"

    async def test_none_keeps_existing_token(self) -> None:
        store = _store()
        await store.add(_info("a@example.com"), SecretStr("1//keep"))
        updated = await store.refresh("a@example.com", None, _NOW)
        assert updated.refresh_token.get_secret_value() == "1//keep"

    async def test_unknown_account(self) -> None:
        with pytest.raises(AccountNotFound):
            await _store().refresh("ghost@example.com", "1//x", None)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestJsonFileSettingsStore:
    async def test_round_trip_with_owner_only_permissions(self, tmp_path) -> None:
        path = tmp_path / "nested" / "settings.json"
        store = CredentialStore(JsonFileSettingsStore(path), clock=lambda: _NOW)
        await store.add(_info("a@example.com"), "1//file")

        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == 0o600
        data = json.loads(path.read_text())
        assert data[ACCOUNTS_KEY][0]["email"] == "a@example.com"

        reopened = CredentialStore(JsonFileSettingsStore(path))
        account = await reopened.get("a@example.com")
        assert account is not None
        assert account.refresh_token.get_secret_value() == "1//file"

    async def test_preserves_unrelated_keys(self, tmp_path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"theme": "dark"}))
        store = CredentialStore(JsonFileSettingsStore(path))
        await store.add(_info("a@example.com"), "1//a")
        assert json.loads(path.read_text())["theme"] == "dark"

    async def test_missing_file_means_no_accounts(self, tmp_path) -> None:
        store = CredentialStore(JsonFileSettingsStore(tmp_path / "absent.json"))
        assert await store.list() == []

    async def test_unreadable_entries_are_skipped(self) -> None:
        settings = InMemorySettingsStore({ACCOUNTS_KEY: [{"email": "broken"}]})
        assert await CredentialStore(settings).list() == []

    async def test_unreadable_entries_survive_writes(self) -> None:
        broken = {"email": "broken", "refreshToken": "1//keep-me"}
        settings = InMemorySettingsStore({ACCOUNTS_KEY: [broken]})
        store = CredentialStore(settings, clock=lambda: _NOW)

        await store.add(_info("a@example.com"), "1//a")
        await store.refresh("a@example.com", "1//a2", None)
        await store.remove("a@example.com")

        assert await settings.get(ACCOUNTS_KEY) == [broken]
        assert await store.list() == []
