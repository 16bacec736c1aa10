"""CalendarService: the caller-facing facade over the aggregation engine.

Wires the credential store, the providers, the cache, the aggregator and the
scheduler together and exposes the operations a UI layer needs:
``get_aggregated_events``, ``get_sync_status``, ``trigger_manual_sync``,
``add_account`` / ``connect_account``, ``remove_account``,
``invalidate_cache``, plus account state, file import and native calendar
discovery.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from datetime import datetime, timedelta, tzinfo
from pathlib import Path

import httpx
from pydantic import SecretStr

from calsync.aggregator import CalendarAggregator
from calsync.cache import AggregationCache
from calsync.config import CalsyncConfig
from calsync.credential_store import CredentialStore, JsonFileSettingsStore, SettingsStore
from calsync.errors import (
    CloudNotConfigured,
    InvalidCalendarFile,
    OAuthExchangeError,
    PathTraversalRejected,
    SourceUnavailable,
)
from calsync.models import (
    Account,
    AccountState,
    AccountUserInfo,
    AggregationResult,
    CalendarMetadata,
    SyncResult,
    SyncStatus,
    TimeRange,
)
from calsync.normalizer import EventNormalizer
from calsync.oauth import OAuthClient, OAuthClientCredentials
from calsync.retry import RetryingRequestClient
from calsync.scheduler import SyncScheduler
from calsync.sources.base import SourceProvider
from calsync.sources.cloud import CloudAccountProvider
from calsync.sources.fallback import NativeCalendarProvider
from calsync.sources.ics import MAX_FILE_BYTES, FileImportProvider, resolve_calendar_file
from calsync.sources.native import NativeHelperProvider
from calsync.sources.script import ScriptFallbackProvider

logger = logging.getLogger(__name__)

MAX_PENDING_OAUTH_STATES = 16


class CalendarService:
    def __init__(
        self,
        *,
        tz: tzinfo,
        credential_store: CredentialStore,
        cache: AggregationCache | None = None,
        native: NativeCalendarProvider | None = None,
        oauth: OAuthClient | None = None,
        request_client: RetryingRequestClient | None = None,
        file_root: str | Path = ".",
        file_paths: list[str | Path] | None = None,
        max_file_bytes: int = MAX_FILE_BYTES,
        window_days: int = 1,
        cloud_concurrency: int = 2,
        cloud_max_results: int = 250,
        cloud_min_results_per_calendar: int = 25,
        scheduler_options: dict | None = None,
        http_client: httpx.AsyncClient | None = None,
        owns_http_client: bool = False,
    ) -> None:
        self._tz = tz
        self._store = credential_store
        self._cache = cache or AggregationCache()
        self._native = native
        self._oauth = oauth
        self._requests = request_client
        self._file_root = Path(file_root)
        self._max_file_bytes = max_file_bytes
        self._window_days = window_days
        self._cloud_max_results = cloud_max_results
        self._cloud_min_per_calendar = cloud_min_results_per_calendar
        self._http_client = http_client
        self._owns_http_client = owns_http_client

        self._files: dict[Path, FileImportProvider] = {}
        for path in file_paths or []:
            self._register_configured_file(Path(path))
        self._cloud_providers: dict[str, CloudAccountProvider] = {}
        self._pending_states: deque[str] = deque(maxlen=MAX_PENDING_OAUTH_STATES)

        self._aggregator = CalendarAggregator(
            self._providers,
            EventNormalizer(tz),
            self._cache,
            cloud_concurrency=cloud_concurrency,
        )
        self._scheduler = SyncScheduler(
            self._aggregator,
            tz=tz,
            window_factory=self.default_window,
            **(scheduler_options or {}),
        )
        self._store.add_listener(self._on_accounts_changed)

    # ------------------------------------------------------------------
    # Construction from config
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: CalsyncConfig,
        *,
        settings: SettingsStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> CalendarService:
        tz = config.tzinfo()
        owns_http_client = http_client is None
        http_client = http_client or httpx.AsyncClient(timeout=30.0)
        store = CredentialStore(
            settings or JsonFileSettingsStore(config.settings_path),
            max_accounts=config.cloud.max_accounts,
        )

        native: NativeCalendarProvider | None = None
        if config.native.enabled and (config.native.helper_path or sys.platform == "darwin"):
            helper = (
                NativeHelperProvider(
                    config.native.helper_path,
                    timeout_seconds=config.native.timeout_seconds,
                    calendars=config.native.calendars,
                )
                if config.native.helper_path
                else None
            )
            script = (
                ScriptFallbackProvider(
                    tz,
                    calendars=config.native.calendars,
                    timeout_seconds=config.native.script_timeout_seconds,
                )
                if config.native.script_fallback
                else None
            )
            if helper is not None or script is not None:
                native = NativeCalendarProvider(helper, script)

        request_client = RetryingRequestClient(
            http_client,
            max_retries=config.cloud.max_retries,
            base_backoff_seconds=config.cloud.base_backoff_seconds,
            max_backoff_seconds=config.cloud.max_backoff_seconds,
        )
        oauth: OAuthClient | None = None
        if config.cloud.configured:
            assert config.cloud.client_id is not None
            assert config.cloud.client_secret is not None
            oauth = OAuthClient(
                OAuthClientCredentials(
                    client_id=config.cloud.client_id,
                    client_secret=SecretStr(config.cloud.client_secret),
                    redirect_uri=config.cloud.redirect_uri,
                ),
                http_client,
                request_client=request_client,
            )
        else:
            logger.info("Cloud OAuth client not configured; cloud accounts are disabled")

        return cls(
            tz=tz,
            credential_store=store,
            cache=AggregationCache(timedelta(seconds=config.cache.ttl_seconds)),
            native=native,
            oauth=oauth,
            request_client=request_client,
            file_root=config.files.allowed_root,
            file_paths=list(config.files.paths),
            max_file_bytes=config.files.max_bytes,
            window_days=config.sync.window_days,
            cloud_concurrency=config.cloud.concurrency,
            cloud_max_results=config.cloud.max_results,
            cloud_min_results_per_calendar=config.cloud.min_results_per_calendar,
            scheduler_options={
                "enabled": config.sync.enabled,
                "cron": config.sync.cron,
                "interval": config.sync.interval,
                "resume_delay_seconds": config.sync.resume_delay_seconds,
            },
            http_client=http_client,
            owns_http_client=owns_http_client,
        )

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    @property
    def credential_store(self) -> CredentialStore:
        return self._store

    @property
    def cloud_configured(self) -> bool:
        return self._oauth is not None and self._requests is not None

    def default_window(self) -> TimeRange:
        return TimeRange.for_days(self._tz, days=self._window_days)

    async def _providers(self) -> list[SourceProvider]:
        providers: list[SourceProvider] = []
        if self._native is not None:
            providers.append(self._native)
        providers.extend(self._files[path] for path in sorted(self._files))
        if self.cloud_configured:
            for account in sorted(await self._store.list(), key=lambda a: a.key):
                providers.append(self._cloud_provider(account.email))
        return providers

    def _cloud_provider(self, email: str) -> CloudAccountProvider:
        key = email.casefold()
        provider = self._cloud_providers.get(key)
        if provider is None:
            assert self._oauth is not None and self._requests is not None
            provider = CloudAccountProvider(
                email,
                credential_store=self._store,
                oauth=self._oauth,
                requests=self._requests,
                max_results=self._cloud_max_results,
                min_results_per_calendar=self._cloud_min_per_calendar,
            )
            self._cloud_providers[key] = provider
        return provider

    async def _on_accounts_changed(self) -> None:
        self._cache.invalidate()
        known = {a.key for a in await self._store.list()}
        for key in list(self._cloud_providers):
            if key not in known:
                del self._cloud_providers[key]

    def _register_file(self, path: Path) -> Path:
        resolved = resolve_calendar_file(path, self._file_root, max_bytes=self._max_file_bytes)
        if resolved not in self._files:
            self._files[resolved] = FileImportProvider(
                resolved, self._file_root, self._tz, max_bytes=self._max_file_bytes
            )
        return resolved

    def _register_configured_file(self, path: Path) -> None:
        """Register a file from config; only a traversal is fatal at startup.

        A missing or oversize file is still registered and reported as a
        source failure on every sync until it is fixed.
        """
        try:
            self._register_file(path)
        except PathTraversalRejected:
            raise
        except InvalidCalendarFile as exc:
            logger.warning("Configured calendar file is not readable yet: %s", exc.message)
            resolved = (path if path.is_absolute() else self._file_root / path).resolve()
            self._files.setdefault(
                resolved,
                FileImportProvider(
                    resolved, self._file_root, self._tz, max_bytes=self._max_file_bytes
                ),
            )

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def get_aggregated_events(self, window: TimeRange | None = None) -> AggregationResult:
        """Events for *window* (default: the configured local-day window)."""
        return await self._scheduler.aggregate(window or self.default_window())

    def get_sync_status(self) -> SyncStatus:
        return self._scheduler.status()

    async def trigger_manual_sync(self) -> SyncResult:
        return await self._scheduler.trigger_sync(trigger="manual")

    def invalidate_cache(self) -> None:
        self._cache.invalidate()

    def authorization_url(self) -> tuple[str, str]:
        """Consent URL plus the state value the callback must echo back."""
        oauth = self._require_oauth()
        state = oauth.new_state()
        self._pending_states.append(state)
        return oauth.authorization_url(state), state

    def _require_oauth(self) -> OAuthClient:
        if self._oauth is None:
            raise CloudNotConfigured("Cloud calendar OAuth client is not configured")
        return self._oauth

    async def add_account(
        self,
        refresh_token: str | SecretStr,
        *,
        user_info: AccountUserInfo | None = None,
        access_token: SecretStr | None = None,
        token_expiry: datetime | None = None,
        sync: bool = True,
    ) -> Account:
        """Connect an account from a refresh token.

        When *user_info* is not supplied it is fetched with *access_token*,
        minting one from the refresh token if necessary.  Both paths apply the
        same validation and the same locked insert.
        """
        oauth = self._require_oauth()
        secret = refresh_token if isinstance(refresh_token, SecretStr) else SecretStr(refresh_token)
        if user_info is None:
            if access_token is None:
                grant = await oauth.refresh(secret)
                access_token = grant.access_token
                token_expiry = token_expiry or grant.expires_at
                if grant.refresh_token is not None:
                    secret = grant.refresh_token
            user_info = await oauth.fetch_user_info(access_token)

        account = await self._store.add(user_info, secret, token_expiry=token_expiry)
        if sync:
            self._scheduler.request_sync("account-added")
        return account

    async def connect_account(self, code: str, *, state: str | None = None) -> Account:
        """Complete the OAuth callback: exchange *code* and store the account.

        When *state* is given it must be one issued by :meth:`authorization_url`;
        each state is accepted once.
        """
        oauth = self._require_oauth()
        if state is not None:
            if state not in self._pending_states:
                raise OAuthExchangeError("OAuth state mismatch", source="cloud")
            self._pending_states.remove(state)
        grant = await oauth.exchange_code(code)
        assert grant.refresh_token is not None
        user_info = await oauth.fetch_user_info(grant.access_token)
        return await self.add_account(
            grant.refresh_token,
            user_info=user_info,
            access_token=grant.access_token,
            token_expiry=grant.expires_at,
        )

    async def remove_account(self, email: str) -> bool:
        """Forget an account locally; the token is not revoked server-side."""
        return await self._store.remove(email)

    async def get_account_state(self) -> AccountState:
        accounts = await self._store.list_public()
        return AccountState(
            accounts=accounts,
            count=len(accounts),
            max_accounts=self._store.max_accounts,
            has_reached_limit=len(accounts) >= self._store.max_accounts,
        )

    def import_calendar_file(self, path: str | Path) -> Path:
        """Validate and register a calendar file for every future aggregation."""
        resolved = self._register_file(Path(path))
        self._cache.invalidate()
        logger.info("Registered calendar file %s", resolved.name)
        return resolved

    def remove_calendar_file(self, path: str | Path) -> bool:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._file_root / candidate
        removed = self._files.pop(candidate.resolve(), None) is not None
        if removed:
            self._cache.invalidate()
        return removed

    @property
    def calendar_files(self) -> list[Path]:
        return sorted(self._files)

    async def discover_native_calendars(self) -> list[CalendarMetadata]:
        if self._native is None or self._native.script is None:
            raise SourceUnavailable("Native calendar discovery is not available", source="native")
        return await self._native.script.discover_calendars()

    def select_native_calendars(self, names: list[str]) -> None:
        if self._native is None:
            raise SourceUnavailable("Native calendar selection is not available", source="native")
        self._native.select_calendars(names)
        self._cache.invalidate()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._scheduler.start()

    async def shutdown(self) -> None:
        await self._scheduler.stop()
        providers = [*self._files.values(), *self._cloud_providers.values()]
        if self._native is not None:
            providers.append(self._native)
        await asyncio.gather(*(p.aclose() for p in providers))
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
