"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR_NAME}`` references from the
environment, and returns a validated :class:`CalsyncConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

DEFAULT_CONFIG_PATH = Path("calsync.toml")
DEFAULT_SETTINGS_PATH = "~/.config/calsync/settings.json"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Background refresh schedule from the [sync] section.

    ``interval_minutes`` replaces the cron schedule when set.
    """

    enabled: bool = True
    cron: str = "0 6 * * *"
    interval_minutes: int | None = None
    window_days: int = 1
    resume_delay_seconds: float = 5.0

    @property
    def interval(self) -> timedelta | None:
        if self.interval_minutes is None:
            return None
        return timedelta(minutes=self.interval_minutes)


@dataclass
class CacheConfig:
    ttl_seconds: float = 120.0


@dataclass
class NativeSourceConfig:
    enabled: bool = True
    helper_path: str | None = None
    timeout_seconds: float = 5.0
    script_fallback: bool = True
    script_timeout_seconds: float = 30.0
    calendars: list[str] = field(default_factory=list)


@dataclass
class FileSourceConfig:
    allowed_root: str = "."
    max_bytes: int = 10 * 1024 * 1024
    paths: list[str] = field(default_factory=list)


@dataclass
class CloudSourceConfig:
    """OAuth client and API budget settings from [sources.cloud].

    Cloud accounts are unavailable (not an error) when the client id or
    secret is missing.
    """

    enabled: bool = True
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = "http://localhost:8080/oauth/callback"
    max_accounts: int = 5
    concurrency: int = 2
    max_results: int = 250
    min_results_per_calendar: int = 25
    max_retries: int = 3
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def __repr__(self) -> str:
        return (
            f"CloudSourceConfig(enabled={self.enabled!r}, client_id={self.client_id!r}, "
            f"client_secret={'***' if self.client_secret else None!r}, "
            f"max_accounts={self.max_accounts!r})"
        )

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.client_id) and bool(self.client_secret)


@dataclass
class CalsyncConfig:
    timezone: str = "local"
    settings_path: str = DEFAULT_SETTINGS_PATH
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    native: NativeSourceConfig = field(default_factory=NativeSourceConfig)
    files: FileSourceConfig = field(default_factory=FileSourceConfig)
    cloud: CloudSourceConfig = field(default_factory=CloudSourceConfig)

    def tzinfo(self) -> tzinfo:
        return resolve_timezone(self.timezone)


def resolve_timezone(name: str) -> tzinfo:
    """``"local"`` means the host's current zone; anything else is an IANA name."""
    if name == "local":
        local = datetime.now().astimezone().tzinfo
        assert local is not None
        return local
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {name!r}") from exc


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict, key: str, where: str) -> dict:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{where}] must be a table")
    return value


def _positive(section: dict, key: str, default: Any, where: str, *, cast: type = float) -> Any:
    value = section.get(key, default)
    if value is None:
        return None
    try:
        number = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}.{key} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"{where}.{key} must be positive, got {value!r}")
    return number


def _string_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{name} must be a list of strings")
    return [v.strip() for v in value if v.strip()]


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_sync(section: dict) -> SyncConfig:
    cron = str(section.get("cron", SyncConfig.cron)).strip()
    if not croniter.is_valid(cron):
        raise ConfigError(f"Invalid sync.cron expression: {cron!r}")
    resume_delay = section.get("resume_delay_seconds", 5.0)
    if not isinstance(resume_delay, int | float) or resume_delay < 0:
        raise ConfigError("sync.resume_delay_seconds must be a non-negative number")
    return SyncConfig(
        enabled=bool(section.get("enabled", True)),
        cron=cron,
        interval_minutes=_positive(section, "interval_minutes", None, "sync", cast=int),
        window_days=_positive(section, "window_days", 1, "sync", cast=int),
        resume_delay_seconds=float(resume_delay),
    )


def _parse_native(section: dict) -> NativeSourceConfig:
    where = "sources.native"
    return NativeSourceConfig(
        enabled=bool(section.get("enabled", True)),
        helper_path=_optional_str(section.get("helper_path")),
        timeout_seconds=_positive(section, "timeout_seconds", 5.0, where),
        script_fallback=bool(section.get("script_fallback", True)),
        script_timeout_seconds=_positive(section, "script_timeout_seconds", 30.0, where),
        calendars=_string_list(section.get("calendars", []), f"{where}.calendars"),
    )


def _parse_files(section: dict) -> FileSourceConfig:
    where = "sources.files"
    return FileSourceConfig(
        allowed_root=str(section.get("allowed_root", ".")),
        max_bytes=_positive(section, "max_bytes", 10 * 1024 * 1024, where, cast=int),
        paths=_string_list(section.get("paths", []), f"{where}.paths"),
    )


def _parse_cloud(section: dict) -> CloudSourceConfig:
    where = "sources.cloud"
    max_retries = section.get("max_retries", 3)
    if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
        raise ConfigError(f"{where}.max_retries must be a non-negative integer")
    return CloudSourceConfig(
        enabled=bool(section.get("enabled", True)),
        client_id=_optional_str(section.get("client_id")),
        client_secret=_optional_str(section.get("client_secret")),
        redirect_uri=str(section.get("redirect_uri", CloudSourceConfig.redirect_uri)),
        max_accounts=_positive(section, "max_accounts", 5, where, cast=int),
        concurrency=_positive(section, "concurrency", 2, where, cast=int),
        max_results=_positive(section, "max_results", 250, where, cast=int),
        min_results_per_calendar=_positive(
            section, "min_results_per_calendar", 25, where, cast=int
        ),
        max_retries=max_retries,
        base_backoff_seconds=_positive(section, "base_backoff_seconds", 1.0, where),
        max_backoff_seconds=_positive(section, "max_backoff_seconds", 30.0, where),
    )


def parse_config(data: dict) -> CalsyncConfig:
    """Build a :class:`CalsyncConfig` from an already-parsed TOML document."""
    data = resolve_env_vars(data)

    root = _section(data, "calsync", "calsync")
    logging_section = _section(root, "logging", "calsync.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"calsync.logging.format must be 'text' or 'json', got {log_format!r}")

    timezone = str(root.get("timezone", "local"))
    resolve_timezone(timezone)

    sources = _section(data, "sources", "sources")
    cache_section = _section(data, "cache", "cache")
    return CalsyncConfig(
        timezone=timezone,
        settings_path=str(root.get("settings_path", DEFAULT_SETTINGS_PATH)),
        logging=LoggingConfig(
            level=str(logging_section.get("level", "INFO")).upper(),
            format=log_format,
            log_root=_optional_str(logging_section.get("log_root")),
        ),
        sync=_parse_sync(_section(data, "sync", "sync")),
        cache=CacheConfig(ttl_seconds=_positive(cache_section, "ttl_seconds", 120.0, "cache")),
        native=_parse_native(_section(sources, "native", "sources.native")),
        files=_parse_files(_section(sources, "files", "sources.files")),
        cloud=_parse_cloud(_section(sources, "cloud", "sources.cloud")),
    )


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    When *path* is None and ``calsync.toml`` does not exist in the working
    directory, the defaults are returned.

    Raises
    ------
    ConfigError
        If the file is missing (explicit path), contains invalid TOML, or
        holds invalid values.
    """
    toml_path = path or DEFAULT_CONFIG_PATH
    if not toml_path.exists():
        if path is None:
            return parse_config({})
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    return parse_config(data)
