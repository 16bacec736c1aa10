"""Tests for calsync configuration loading and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from calsync.config import CalsyncConfig, ConfigError, load_config, parse_config, resolve_timezone

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[calsync]
timezone = "Europe/Berlin"
settings_path = "/var/lib/calsync/settings.json"

[calsync.logging]
level = "debug"
format = "json"

[sync]
cron = "30 5 * * 1-5"
window_days = 3
resume_delay_seconds = 2

[cache]
ttl_seconds = 60

[sources.native]
helper_path = "/usr/local/bin/calendar-helper"
calendars = ["Work", " Home ", ""]

[sources.files]
allowed_root = "/srv/calendars"
paths = ["team.ics"]

[sources.cloud]
client_id = "${CALSYNC_CLIENT_ID}"
client_secret = "${CALSYNC_CLIENT_SECRET}"
max_accounts = 3
concurrency = 4
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "calsync.toml"
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_config(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("CALSYNC_CLIENT_ID", "client-1")
        monkeypatch.setenv("CALSYNC_CLIENT_SECRET", "shh")
        config = load_config(_write(tmp_path, FULL_TOML))

        assert config.timezone == "Europe/Berlin"
        assert config.settings_path == "/var/lib/calsync/settings.json"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.sync.cron == "30 5 * * 1-5"
        assert config.sync.window_days == 3
        assert config.sync.resume_delay_seconds == 2.0
        assert config.cache.ttl_seconds == 60.0
        assert config.native.helper_path == "/usr/local/bin/calendar-helper"
        assert config.native.calendars == ["Work", "Home"]
        assert config.files.paths == ["team.ics"]
        assert config.cloud.client_id == "client-1"
        assert config.cloud.configured is True
        assert config.cloud.max_accounts == 3
        assert config.cloud.concurrency == 4

    def test_defaults_when_sections_missing(self, tmp_path) -> None:
        config = load_config(_write(tmp_path, ""))
        assert config == CalsyncConfig()
        assert config.sync.cron == "0 6 * * *"
        assert config.sync.interval is None
        assert config.cache.ttl_seconds == 120.0
        assert config.cloud.max_accounts == 5
        assert config.cloud.configured is False

    def test_implicit_path_falls_back_to_defaults(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_config() == CalsyncConfig()

    def test_explicit_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[sync\ncron = "))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_unset_env_var(self, monkeypatch) -> None:
        monkeypatch.delenv("CALSYNC_MISSING", raising=False)
        with pytest.raises(ConfigError, match="CALSYNC_MISSING"):
            parse_config({"sources": {"cloud": {"client_id": "${CALSYNC_MISSING}"}}})

    def test_invalid_cron(self) -> None:
        with pytest.raises(ConfigError, match="sync.cron"):
            parse_config({"sync": {"cron": "every morning"}})

    def test_interval_replaces_cron(self) -> None:
        config = parse_config({"sync": {"interval_minutes": 15}})
        assert config.sync.interval == timedelta(minutes=15)

    @pytest.mark.parametrize(
        ("section", "key"),
        [
            ("cache", "ttl_seconds"),
            ("sync", "window_days"),
            ("sync", "interval_minutes"),
        ],
    )
    def test_non_positive_rejected(self, section, key) -> None:
        with pytest.raises(ConfigError, match="positive"):
            parse_config({section: {key: 0}})

    def test_non_positive_max_accounts(self) -> None:
        with pytest.raises(ConfigError, match="max_accounts"):
            parse_config({"sources": {"cloud": {"max_accounts": -1}}})

    def test_negative_max_retries(self) -> None:
        with pytest.raises(ConfigError, match="max_retries"):
            parse_config({"sources": {"cloud": {"max_retries": -1}}})

    def test_unknown_log_format(self) -> None:
        with pytest.raises(ConfigError, match="format"):
            parse_config({"calsync": {"logging": {"format": "xml"}}})

    def test_unknown_timezone(self) -> None:
        with pytest.raises(ConfigError, match="timezone"):
            parse_config({"calsync": {"timezone": "Mars/Olympus"}})

    def test_section_must_be_table(self) -> None:
        with pytest.raises(ConfigError, match="must be a table"):
            parse_config({"sync": "daily"})

    def test_calendars_must_be_strings(self) -> None:
        with pytest.raises(ConfigError, match="calendars"):
            parse_config({"sources": {"native": {"calendars": [1, 2]}}})


class TestSecrets:
    def test_client_secret_not_in_repr(self) -> None:
        config = parse_config(
            {"sources": {"cloud": {"client_id": "client-1", "client_secret": "top-secret"}}}
        )
        assert "top-secret" not in repr(config.cloud)
        assert "top-secret" not in repr(config)


def test_local_timezone_resolves() -> None:
    assert resolve_timezone("local") is not None
