"""Cloud account credential store.

Accounts (email, display name, refresh token, token expiry) live in a
:class:`SettingsStore` under a single key.  Every mutation runs under one
``asyncio.Lock`` and re-reads the persisted list inside the lock, so the
account ceiling and the case-insensitive uniqueness rule are checked and
applied as one atomic step.

Usage::

    store = CredentialStore(JsonFileSettingsStore(path))
    account = await store.add(AccountUserInfo(email="a@example.com"), refresh_token)
    await store.refresh("A@example.com", new_token, new_expiry)
    await store.remove("a@example.com")   # idempotent

Note: refresh tokens are held as ``SecretStr`` and never appear in reprs or
log output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import SecretStr, ValidationError

from calsync.errors import AccountAlreadyConnected, AccountLimitExceeded, AccountNotFound
from calsync.models import Account, AccountPublic, AccountUserInfo, normalize_email

logger = logging.getLogger(__name__)

MAX_ACCOUNTS = 5
ACCOUNTS_KEY = "cloud_accounts"

ChangeListener = Callable[[], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Settings storage
# ---------------------------------------------------------------------------


class SettingsStore(Protocol):
    """Minimal persistent key/value contract used for account storage."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


class InMemorySettingsStore:
    """Process-local settings store (tests and ephemeral runs)."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = json.loads(json.dumps(initial or {}))

    async def get(self, key: str) -> Any:
        value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.loads(json.dumps(value))


class JsonFileSettingsStore:
    """JSON-file settings store, written atomically with owner-only permissions."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {self._path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)

    async def get(self, key: str) -> Any:
        data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        def _update() -> None:
            data = self._read()
            data[key] = value
            self._write(data)

        await asyncio.to_thread(_update)


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class CredentialStore:
    """Concurrency-safe store of connected cloud accounts with a hard ceiling."""

    def __init__(
        self,
        settings: SettingsStore,
        *,
        max_accounts: int = MAX_ACCOUNTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_accounts < 1:
            raise ValueError("max_accounts must be >= 1")
        self._settings = settings
        self._max_accounts = max_accounts
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []

    def __repr__(self) -> str:
        return f"CredentialStore(max_accounts={self._max_accounts})"

    @property
    def max_accounts(self) -> int:
        return self._max_accounts

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback run after an account is added or removed."""
        self._listeners.append(listener)

    async def _load_entries(self) -> tuple[list[Account], list[Any]]:
        """Stored accounts plus the raw entries that failed validation."""
        raw = await self._settings.get(ACCOUNTS_KEY)
        if not raw:
            return [], []
        accounts: list[Account] = []
        unreadable: list[Any] = []
        for index, item in enumerate(raw):
            try:
                accounts.append(Account.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "Skipping unreadable stored account #%d (%d validation errors)",
                    index,
                    exc.error_count(),
                )
                unreadable.append(item)
        return accounts, unreadable

    async def _load(self) -> list[Account]:
        accounts, _ = await self._load_entries()
        return accounts

    async def _save(self, accounts: list[Account], unreadable: list[Any]) -> None:
        # unreadable entries are written back untouched so their tokens survive
        await self._settings.set(ACCOUNTS_KEY, [*(a.to_storage() for a in accounts), *unreadable])

    async def _notify(self) -> None:
        for listener in self._listeners:
            result = listener()
            if asyncio.iscoroutine(result):
                await result

    async def list(self) -> list[Account]:
        async with self._lock:
            return await self._load()

    async def list_public(self) -> list[AccountPublic]:
        return [account.public() for account in await self.list()]

    async def get(self, email: str) -> Account | None:
        key = normalize_email(email)
        for account in await self.list():
            if account.key == key:
                return account
        return None

    async def count(self) -> int:
        return len(await self.list())

    async def add(
        self,
        user_info: AccountUserInfo,
        refresh_token: str | SecretStr,
        *,
        token_expiry: datetime | None = None,
    ) -> Account:
        """Connect a new account.

        Raises
        ------
        AccountAlreadyConnected
            An account with the same email (case-insensitive) exists.
        AccountLimitExceeded
            The ceiling is already reached.
        """
        secret = refresh_token if isinstance(refresh_token, SecretStr) else SecretStr(refresh_token)
        if not secret.get_secret_value():
            raise ValueError("refresh_token must be a non-empty string")

        # Fast-path rejection; the authoritative check runs again under the lock.
        existing = await self.list()
        self._check_can_add(existing, user_info.email)

        async with self._lock:
            accounts, unreadable = await self._load_entries()
            self._check_can_add(accounts, user_info.email)
            account = Account(
                email=user_info.email,
                display_name=user_info.display_name,
                refresh_token=secret,
                token_expiry=token_expiry,
                connected_at=self._clock(),
            )
            accounts.append(account)
            await self._save(accounts, unreadable)

        logger.info(
            "Connected cloud account %s (%d/%d)", account.email, len(accounts), self._max_accounts
        )
        await self._notify()
        return account

    def _check_can_add(self, accounts: list[Account], email: str) -> None:
        if any(account.matches(email) for account in accounts):
            raise AccountAlreadyConnected(email)
        if len(accounts) >= self._max_accounts:
            raise AccountLimitExceeded(self._max_accounts)

    async def remove(self, email: str) -> bool:
        """Disconnect an account locally. Returns whether anything was removed."""
        async with self._lock:
            accounts, unreadable = await self._load_entries()
            remaining = [a for a in accounts if not a.matches(email)]
            removed = len(remaining) != len(accounts)
            if removed:
                await self._save(remaining, unreadable)
        if removed:
            logger.info("Disconnected cloud account %s", email)
            await self._notify()
        return removed

    async def refresh(
        self,
        email: str,
        new_token: str | SecretStr | None,
        new_expiry: datetime | None,
    ) -> Account:
        """Record a token refresh. ``new_token=None`` keeps the stored refresh token.

        Raises
        ------
        AccountNotFound
            No account matches *email*.
        """
        async with self._lock:
            accounts, unreadable = await self._load_entries()
            for index, account in enumerate(accounts):
                if account.matches(email):
                    update: dict[str, Any] = {"token_expiry": new_expiry}
                    if new_token is not None:
                        update["refresh_token"] = (
                            new_token if isinstance(new_token, SecretStr) else SecretStr(new_token)
                        )
                    accounts[index] = account.model_copy(update=update)
                    await self._save(accounts, unreadable)
                    return accounts[index]
        raise AccountNotFound(email)
