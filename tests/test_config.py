"""Tests for configuration classes.

Tests DeskAuthSettings and its sections, environment variable loading,
TOML layering and redaction in show().
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pydantic import ValidationError

from deskauth.config import (
    AuthSettings,
    DeskAuthSettings,
    LogSettings,
    OnboardingSettings,
    StorageSettings,
    get_settings,
    reload_settings,
)

from tests.constants import TEST_KEY_HEX


class TestStorageSettings:
    """Tests for StorageSettings."""

    def test_defaults(self) -> None:
        """The default directory lives under the home directory."""
        settings = StorageSettings()
        assert settings.directory == Path("~/.deskauth")
        assert settings.encryption_key == ""
        assert settings.key_max_age_days == 365

    def test_resolved_key_file_default(self, tmp_path: Path) -> None:
        """Without key_file the key sits in the storage directory."""
        settings = StorageSettings(directory=tmp_path)
        assert settings.resolved_key_file == tmp_path / "encryption-key.json"

    def test_resolved_key_file_explicit(self, tmp_path: Path) -> None:
        """An explicit key_file wins."""
        settings = StorageSettings(directory=tmp_path, key_file=tmp_path / "k.json")
        assert settings.resolved_key_file == tmp_path / "k.json"

    def test_resolved_directory_expands_home(self) -> None:
        """~ is expanded."""
        assert "~" not in str(StorageSettings().resolved_directory)

    def test_encryption_key_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """ENCRYPTION_KEY supplies the operator key."""
        monkeypatch.setenv("ENCRYPTION_KEY", TEST_KEY_HEX)
        assert StorageSettings().encryption_key == TEST_KEY_HEX

    def test_prefixed_encryption_key_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The prefixed variable is accepted too."""
        monkeypatch.setenv("DESKAUTH_STORAGE__ENCRYPTION_KEY", TEST_KEY_HEX)
        assert StorageSettings().encryption_key == TEST_KEY_HEX

    def test_directory_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """DESKAUTH_STORAGE__DIRECTORY sets the directory."""
        monkeypatch.setenv("DESKAUTH_STORAGE__DIRECTORY", str(tmp_path))
        assert StorageSettings().resolved_directory == tmp_path


class TestAuthSettings:
    """Tests for AuthSettings."""

    def test_defaults(self) -> None:
        """Defaults match the documented token lifecycle."""
        settings = AuthSettings()
        assert settings.refresh_buffer_seconds == 300
        assert settings.auth_timeout_seconds == 300.0
        assert settings.callback_port == 8082
        assert settings.migrate_on_startup
        assert settings.refresh_on_startup

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """DESKAUTH_AUTH__ variables override defaults."""
        monkeypatch.setenv("DESKAUTH_AUTH__CALLBACK_PORT", "9000")
        monkeypatch.setenv("DESKAUTH_AUTH__OPEN_BROWSER", "false")
        settings = AuthSettings()
        assert settings.callback_port == 9000
        assert not settings.open_browser

    def test_timeout_lower_bound(self) -> None:
        """Timeouts below one second are rejected."""
        with pytest.raises(ValidationError):
            AuthSettings(auth_timeout_seconds=0.5)


class TestOnboardingSettings:
    """Tests for OnboardingSettings."""

    def test_default_forks(self) -> None:
        """Two repositories are forked by default."""
        assert OnboardingSettings().fork_repositories == [
            "keyboard-dev/codespace-executor",
            "keyboard-dev/app-creator",
        ]

    def test_comma_separated_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Fork lists are parsed from comma-separated env vars."""
        monkeypatch.setenv("DESKAUTH_ONBOARDING__FORK_REPOSITORIES", "acme/one, acme/two,")
        assert OnboardingSettings().fork_repositories == ["acme/one", "acme/two"]

    def test_bootstrap_url(self) -> None:
        """Slashes between server and path are normalized."""
        settings = OnboardingSettings(server_url="https://login.test/", bootstrap_path="/x/y")
        assert settings.bootstrap_url == "https://login.test/x/y"


class TestLogSettings:
    """Tests for LogSettings."""

    def test_invalid_level(self) -> None:
        """Unknown levels are rejected."""
        with pytest.raises(ValidationError):
            LogSettings(level="LOUD")


class TestDeskAuthSettings:
    """Tests for the aggregate settings."""

    def test_sections_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Section env vars reach the aggregate."""
        monkeypatch.setenv("DESKAUTH_AUTH__CALLBACK_PORT", "9001")
        assert DeskAuthSettings().auth.callback_port == 9001

    def test_toml_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """DESKAUTH_CONFIG_FILE is layered over the defaults."""
        config = tmp_path / "deskauth.toml"
        config.write_text(
            '[auth]\ncallback_port = 9100\n\n[onboarding]\nserver_url = "https://login.test"\n',
            encoding="utf-8",
        )
        monkeypatch.setenv("DESKAUTH_CONFIG_FILE", str(config))
        settings = DeskAuthSettings()
        assert settings.auth.callback_port == 9100
        assert settings.onboarding.server_url == "https://login.test"
        assert settings.auth.refresh_buffer_seconds == 300

    def test_pyproject_section(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """[tool.deskauth] in pyproject.toml is read."""
        (tmp_path / "pyproject.toml").write_text(
            "[tool.deskauth.auth]\nrefresh_buffer_seconds = 60\n", encoding="utf-8"
        )
        monkeypatch.chdir(tmp_path)
        assert DeskAuthSettings().auth.refresh_buffer_seconds == 60

    def test_invalid_toml_skipped(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """An unparsable file is ignored."""
        config = tmp_path / "broken.toml"
        config.write_text("[auth\n", encoding="utf-8")
        monkeypatch.setenv("DESKAUTH_CONFIG_FILE", str(config))
        assert DeskAuthSettings().auth.callback_port == 8082

    def test_explicit_kwargs_win(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Keyword arguments override TOML values."""
        config = tmp_path / "deskauth.toml"
        config.write_text("[auth]\ncallback_port = 9100\n", encoding="utf-8")
        monkeypatch.setenv("DESKAUTH_CONFIG_FILE", str(config))
        assert DeskAuthSettings(auth={"callback_port": 9200}).auth.callback_port == 9200

    def test_show_redacts_secrets(self) -> None:
        """Secrets never appear in show() output."""
        settings = DeskAuthSettings(
            storage={"encryption_key": TEST_KEY_HEX},
            providers={"google_client_secret": "very-secret"},
        )
        output = settings.show()
        assert TEST_KEY_HEX not in output
        assert "very-secret" not in output
        assert "encryption_key" in output
        assert "********" in output
        assert "callback_port" in output

    def test_get_settings_cached(self) -> None:
        """get_settings() is cached until reloaded."""
        first = get_settings()
        assert get_settings() is first
        assert reload_settings() is not first
