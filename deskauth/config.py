"""Configuration system for deskauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.deskauth] section (project-level)
3. ./deskauth.toml (project-level, explicit)
4. ~/.config/deskauth/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use the DESKAUTH_ prefix with nested delimiter __.
Example: DESKAUTH_STORAGE__DIRECTORY, DESKAUTH_AUTH__CALLBACK_PORT
"""

from __future__ import annotations

import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    deskauth_toml = Path("deskauth.toml")
    if deskauth_toml.exists():
        files.append(deskauth_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "deskauth" / "config.toml"
    else:
        user_config = Path("~/.config/deskauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("DESKAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue  # unreadable config files are skipped

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("deskauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "encryption_key",
    "google_client_secret",
    "github_client_secret",
    "microsoft_client_secret",
}

_REDACTED = "********"


class StorageSettings(BaseSettings):
    """Credential storage settings.

    Environment prefix: DESKAUTH_STORAGE__
    Example: DESKAUTH_STORAGE__DIRECTORY=/var/lib/myapp/auth

    The operator encryption key is also accepted from ``ENCRYPTION_KEY``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_STORAGE__",
        extra="ignore",
        populate_by_name=True,
    )

    directory: Path = Field(
        default=Path("~/.deskauth"),
        description="Directory holding encrypted credential files (created with mode 0700)",
    )
    key_file: Path | None = Field(
        default=None,
        description="Generated key material file (default: <directory>/encryption-key.json)",
    )
    encryption_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "encryption_key", "DESKAUTH_STORAGE__ENCRYPTION_KEY", "ENCRYPTION_KEY"
        ),
        description="Operator-supplied hex key (64 hex chars); overrides the generated key",
    )
    key_max_age_days: int = Field(
        default=365,
        ge=1,
        description="Generated keys older than this are replaced at startup",
    )

    @property
    def resolved_directory(self) -> Path:
        """Storage directory with ``~`` expanded."""
        return self.directory.expanduser()

    @property
    def resolved_key_file(self) -> Path:
        """Key material path with ``~`` expanded."""
        if self.key_file is not None:
            return self.key_file.expanduser()
        return self.resolved_directory / "encryption-key.json"


class AuthSettings(BaseSettings):
    """OAuth flow and token lifecycle settings.

    Environment prefix: DESKAUTH_AUTH__
    Example: DESKAUTH_AUTH__CALLBACK_PORT=8082
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_AUTH__",
        extra="ignore",
    )

    refresh_buffer_seconds: int = Field(
        default=300,
        ge=0,
        description="A token is treated as expired this many seconds before its expiry",
    )
    auth_timeout_seconds: float = Field(
        default=300.0,
        ge=1.0,
        description="Maximum seconds a started flow waits for its callback",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for token endpoint and proxy requests",
    )
    callback_host: str = Field(
        default="127.0.0.1",
        description="Interface the redirect listener binds to",
    )
    callback_port: int = Field(
        default=8082,
        ge=0,
        le=65535,
        description="Port the redirect listener binds to (must match redirect URIs)",
    )
    start_callback_server: bool = Field(
        default=True,
        description="Start the local redirect listener when a flow begins",
    )
    open_browser: bool = Field(
        default=True,
        description="Open the system browser on the authorization URL",
    )
    migrate_on_startup: bool = Field(
        default=True,
        description="Copy legacy single-file tokens into per-provider files at startup",
    )
    refresh_on_startup: bool = Field(
        default=True,
        description="Refresh expired provider tokens at startup",
    )


class OnboardingSettings(BaseSettings):
    """Onboarding (first-run) flow settings.

    Environment prefix: DESKAUTH_ONBOARDING__
    Example: DESKAUTH_ONBOARDING__SERVER_URL=https://login.example.com
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_ONBOARDING__",
        extra="ignore",
    )

    server_url: str = Field(
        default="http://localhost:4000",
        description="Base URL of the onboarding proxy server",
    )
    bootstrap_path: str = Field(
        default="/auth/keyboard_github/onboarding",
        description="Path returning the onboarding authorization URL (no bearer token)",
    )
    provider_id: str = Field(
        default="onboarding",
        description="Provider id the onboarding tokens are stored under",
    )
    fork_repositories: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["keyboard-dev/codespace-executor", "keyboard-dev/app-creator"],
        description="owner/repo pairs forked after a successful onboarding",
    )

    @field_validator("fork_repositories", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: Any) -> list[str]:
        """Parse comma-separated strings from env vars."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v or []

    @property
    def bootstrap_url(self) -> str:
        """Full URL of the onboarding bootstrap endpoint."""
        return self.server_url.rstrip("/") + "/" + self.bootstrap_path.lstrip("/")


class ProviderCredentialSettings(BaseSettings):
    """Client credentials for the built-in providers.

    Environment prefix: DESKAUTH_PROVIDERS__
    Example: DESKAUTH_PROVIDERS__GOOGLE_CLIENT_ID=1234.apps.googleusercontent.com
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_PROVIDERS__",
        extra="ignore",
    )

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"
    redirect_uri: str = Field(
        default="http://localhost:8082/callback",
        description="Redirect URI registered with every built-in provider",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: DESKAUTH_LOG__
    Example: DESKAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class DeskAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: DESKAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.deskauth] section
    3. ./deskauth.toml (project-level)
    4. ~/.config/deskauth/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="DESKAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageSettings = Field(default_factory=StorageSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    onboarding: OnboardingSettings = Field(default_factory=OnboardingSettings)
    providers: ProviderCredentialSettings = Field(default_factory=ProviderCredentialSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        # Explicit keyword arguments take precedence over TOML files
        merged = _deep_merge(_load_toml_config(), data)
        super().__init__(**merged)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["deskauth Configuration", "=" * 60, ""]

        show_sections = [
            ("Storage", "storage"),
            ("Authentication", "auth"),
            ("Onboarding", "onboarding"),
            ("Providers", "providers"),
            ("Logging", "log"),
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in show_sections},
        )

        for display_name, attr_name in show_sections:
            section_data = all_data.get(attr_name, {})
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in section_data.items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:24} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:24} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> DeskAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return DeskAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> DeskAuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
