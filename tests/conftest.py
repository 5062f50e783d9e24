"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import sys

from pathlib import Path
from typing import TYPE_CHECKING

import pytest


# Add deskauth to path for imports
deskauth_path = Path(__file__).parent.parent / "deskauth"
if str(deskauth_path) not in sys.path:
    sys.path.insert(0, str(deskauth_path.parent))

from deskauth.auth.providers import MemoryProviderConfigStore, ProviderConfig  # noqa: E402
from deskauth.config import clear_settings  # noqa: E402
from deskauth.crypto import CipherService, StaticKeySource  # noqa: E402

from tests.constants import TEST_KEY_HEX  # noqa: E402
from tests.helpers import FakeClock  # noqa: E402


if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep environment and cached settings from leaking between tests."""
    for name in ("ENCRYPTION_KEY", "DESKAUTH_STORAGE__ENCRYPTION_KEY", "DESKAUTH_CONFIG_FILE"):
        monkeypatch.delenv(name, raising=False)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture()
def clock() -> FakeClock:
    """A clock frozen at a fixed instant."""
    return FakeClock()


@pytest.fixture()
def storage_dir(tmp_path: Path) -> Path:
    """A not-yet-created credential directory."""
    return tmp_path / "deskauth"


@pytest.fixture()
def key_source() -> StaticKeySource:
    """A fixed 32-byte key."""
    return StaticKeySource.from_hex(TEST_KEY_HEX)


@pytest.fixture()
def cipher(key_source: StaticKeySource) -> CipherService:
    """A cipher over the fixed key."""
    return CipherService(key_source)


@pytest.fixture()
def acme_config() -> ProviderConfig:
    """A custom PKCE provider."""
    return ProviderConfig(
        id="acme",
        name="Acme",
        client_id="acme-client",
        authorization_url="https://idp.acme.test/authorize",
        token_url="https://idp.acme.test/token",  # noqa: S106
        userinfo_url="https://idp.acme.test/userinfo",
        scopes=["openid", "email"],
        use_pkce=True,
        redirect_uri="http://localhost:8082/callback",
    )


@pytest.fixture()
def config_store(acme_config: ProviderConfig, clock: FakeClock) -> MemoryProviderConfigStore:
    """A memory config store holding the acme provider."""
    return MemoryProviderConfigStore({"acme": acme_config}, clock=clock)
