"""OAuth2 provider configuration.

Defines ``ProviderConfig``, the built-in Google, GitHub and Microsoft
definitions, the ``ProviderConfigStore`` ABC with in-memory and
encrypted-file implementations, and per-provider normalization of
user-info payloads into ``UserProfile`` variants.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from ..exceptions import DecryptionFailure
from ..files import ensure_private_dir, read_text_file, remove_file, write_private_file
from .types import (
    GenericProfile,
    GitHubProfile,
    GoogleProfile,
    MicrosoftProfile,
    UserProfile,
)


if TYPE_CHECKING:
    from ..config import ProviderCredentialSettings
    from ..crypto import CipherService

logger = logging.getLogger("deskauth.auth")

_PROVIDER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_provider_id(provider_id: str) -> str:
    """Ensure ``provider_id`` is safe to embed in a file name.

    Raises
    ------
    ValueError
        If the id is empty or contains path separators or other
        characters outside ``[A-Za-z0-9._-]``.
    """
    if not _PROVIDER_ID_RE.match(provider_id or ""):
        msg = f"Invalid provider id: {provider_id!r}"
        raise ValueError(msg)
    return provider_id


@dataclass
class ProviderConfig:
    """Static OAuth2 client configuration for one provider.

    Attributes
    ----------
    id : str
        Provider identifier (e.g., "google").
    name : str
        Display name.
    client_id : str
        OAuth2 client ID. A provider with an empty client id is not usable.
    authorization_url : str
        Authorization endpoint.
    token_url : str
        Token endpoint.
    userinfo_url : str or None
        User-info endpoint; when absent no profile is attached.
    scopes : list[str]
        Requested scopes, in order.
    use_pkce : bool
        Whether to send a PKCE challenge and verifier.
    redirect_uri : str
        Redirect URI registered with the provider.
    client_secret : str or None
        Client secret for confidential clients.
    additional_params : dict[str, str]
        Extra query parameters appended to the authorization URL.
    is_custom : bool
        False for built-in definitions.
    created_at, updated_at : float or None
        Maintained by the store.
    """

    id: str
    name: str
    client_id: str
    authorization_url: str
    token_url: str
    userinfo_url: str | None = None
    scopes: list[str] = field(default_factory=list)
    use_pkce: bool = True
    redirect_uri: str = "http://localhost:8082/callback"
    client_secret: str | None = None
    additional_params: dict[str, str] = field(default_factory=dict)
    is_custom: bool = True
    created_at: float | None = None
    updated_at: float | None = None

    @property
    def configured(self) -> bool:
        """Whether the provider has a client id and can start a flow."""
        return bool(self.client_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        """Deserialize from storage, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


def builtin_providers(credentials: ProviderCredentialSettings) -> dict[str, ProviderConfig]:
    """Return the built-in provider definitions.

    Client ids and secrets come from the ``providers`` settings section;
    a built-in without a client id is listed but not available.

    Parameters
    ----------
    credentials : ProviderCredentialSettings
        Client credentials and redirect URI.

    Returns
    -------
    dict[str, ProviderConfig]
        Definitions keyed by provider id.
    """
    redirect_uri = credentials.redirect_uri
    tenant = credentials.microsoft_tenant
    configs = [
        ProviderConfig(
            id="google",
            name="Google",
            client_id=credentials.google_client_id,
            client_secret=credentials.google_client_secret or None,
            authorization_url="https://accounts.google.com/o/oauth2/auth",
            token_url="https://oauth2.googleapis.com/token",  # noqa: S106
            userinfo_url="https://www.googleapis.com/oauth2/v1/userinfo",
            scopes=[
                "openid",
                "email",
                "profile",
                "https://www.googleapis.com/auth/gmail.readonly",
            ],
            use_pkce=True,
            redirect_uri=redirect_uri,
            additional_params={"access_type": "offline", "prompt": "consent"},
            is_custom=False,
        ),
        ProviderConfig(
            id="github",
            name="GitHub",
            client_id=credentials.github_client_id,
            client_secret=credentials.github_client_secret or None,
            authorization_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106
            userinfo_url="https://api.github.com/user",
            scopes=["user:email", "repo"],
            use_pkce=False,
            redirect_uri=redirect_uri,
            is_custom=False,
        ),
        ProviderConfig(
            id="microsoft",
            name="Microsoft",
            client_id=credentials.microsoft_client_id,
            client_secret=credentials.microsoft_client_secret or None,
            authorization_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
            token_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
            userinfo_url="https://graph.microsoft.com/v1.0/me",
            scopes=["openid", "profile", "email", "User.Read"],
            use_pkce=True,
            redirect_uri=redirect_uri,
            is_custom=False,
        ),
    ]
    return {c.id: c for c in configs}


# ── Stores ──────────────────────────────────────────────────────────


class ProviderConfigStore(ABC):
    """Abstract store of provider configurations.

    The flow controller only reads from it; ``save`` and ``remove``
    are for management surfaces.
    """

    @abstractmethod
    async def get(self, provider_id: str) -> ProviderConfig | None:
        """Return the configuration for ``provider_id``, or None."""

    @abstractmethod
    async def list_all(self) -> list[ProviderConfig]:
        """Return every configuration, sorted by display name."""

    @abstractmethod
    async def save(self, config: ProviderConfig) -> ProviderConfig:
        """Create or update a configuration."""

    @abstractmethod
    async def remove(self, provider_id: str) -> bool:
        """Remove a configuration. Built-ins revert to their defaults."""

    async def get_available(self) -> list[ProviderConfig]:
        """Return configurations that have a client id."""
        return [c for c in await self.list_all() if c.configured]


class MemoryProviderConfigStore(ProviderConfigStore):
    """In-memory provider configuration store.

    Parameters
    ----------
    configs : dict[str, ProviderConfig], optional
        Initial configurations; also the defaults ``remove`` reverts to.
    clock : callable
        Returns the current Unix time.
    """

    def __init__(
        self,
        configs: dict[str, ProviderConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._defaults = dict(configs or {})
        self._configs = dict(self._defaults)
        self._clock = clock

    async def get(self, provider_id: str) -> ProviderConfig | None:
        """Return the configuration for ``provider_id``, or None."""
        return self._configs.get(provider_id)

    async def list_all(self) -> list[ProviderConfig]:
        """Return every configuration, sorted by display name."""
        return sorted(self._configs.values(), key=lambda c: c.name.lower())

    async def save(self, config: ProviderConfig) -> ProviderConfig:
        """Create or update a configuration."""
        now = self._clock()
        existing = self._configs.get(config.id)
        created = existing.created_at if existing and existing.created_at else now
        saved = replace(config, created_at=created, updated_at=now)
        self._configs[config.id] = saved
        return saved

    async def remove(self, provider_id: str) -> bool:
        """Remove a configuration. Built-ins revert to their defaults."""
        if provider_id not in self._configs:
            return False
        if provider_id in self._defaults:
            self._configs[provider_id] = self._defaults[provider_id]
        else:
            del self._configs[provider_id]
        return True


class EncryptedProviderConfigStore(ProviderConfigStore):
    """Provider configurations persisted as ``provider.<id>.encrypted`` files.

    Built-in definitions are always available; a saved file for a
    built-in id overrides it until removed.

    Parameters
    ----------
    storage_dir : Path
        Directory holding the encrypted files.
    cipher : CipherService
        Cipher used for the files.
    builtins : dict[str, ProviderConfig], optional
        Built-in definitions.
    clock : callable
        Returns the current Unix time.
    """

    FILE_PREFIX = "provider."
    FILE_SUFFIX = ".encrypted"

    def __init__(
        self,
        storage_dir: Path,
        cipher: CipherService,
        builtins: dict[str, ProviderConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage_dir = storage_dir
        self._cipher = cipher
        self._builtins = dict(builtins or {})
        self._clock = clock

    def _path(self, provider_id: str) -> Path:
        validate_provider_id(provider_id)
        return self.storage_dir / f"{self.FILE_PREFIX}{provider_id}{self.FILE_SUFFIX}"

    def _read(self, provider_id: str) -> ProviderConfig | None:
        raw = read_text_file(self._path(provider_id))
        if raw is None:
            return None
        try:
            return ProviderConfig.from_dict(json.loads(self._cipher.decrypt(raw)))
        except (DecryptionFailure, ValueError, TypeError):
            logger.warning("Could not read stored config for provider %s", provider_id)
            return None

    def _stored_ids(self) -> list[str]:
        if not self.storage_dir.is_dir():
            return []
        return [
            p.name[len(self.FILE_PREFIX) : -len(self.FILE_SUFFIX)]
            for p in self.storage_dir.glob(f"{self.FILE_PREFIX}*{self.FILE_SUFFIX}")
        ]

    async def get(self, provider_id: str) -> ProviderConfig | None:
        """Return the stored configuration, falling back to the built-in."""
        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(None, self._read, provider_id)
        return stored or self._builtins.get(provider_id)

    async def list_all(self) -> list[ProviderConfig]:
        """Return built-ins merged with stored configurations, sorted by name."""
        loop = asyncio.get_running_loop()
        ids = await loop.run_in_executor(None, self._stored_ids)
        configs = dict(self._builtins)
        for provider_id in ids:
            stored = await loop.run_in_executor(None, self._read, provider_id)
            if stored is not None:
                configs[provider_id] = stored
        return sorted(configs.values(), key=lambda c: c.name.lower())

    async def save(self, config: ProviderConfig) -> ProviderConfig:
        """Encrypt and persist a configuration."""
        loop = asyncio.get_running_loop()
        existing = await loop.run_in_executor(None, self._read, config.id)
        now = self._clock()
        created = existing.created_at if existing and existing.created_at else now
        saved = replace(config, created_at=created, updated_at=now)
        payload = self._cipher.encrypt(json.dumps(saved.to_dict()))
        await loop.run_in_executor(None, write_private_file, self._path(config.id), payload)
        logger.info("Saved configuration for provider %s", config.id)
        return saved

    async def remove(self, provider_id: str) -> bool:
        """Delete the stored file; built-ins revert to their defaults."""
        loop = asyncio.get_running_loop()
        removed = await loop.run_in_executor(None, remove_file, self._path(provider_id))
        if removed:
            logger.info("Removed stored configuration for provider %s", provider_id)
        return removed

    async def initialize(self) -> None:
        """Create the storage directory."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, ensure_private_dir, self.storage_dir)


# ── User-info normalization ─────────────────────────────────────────


def _split_name(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name:
        return None, None
    parts = full_name.split()
    return parts[0], " ".join(parts[1:]) or None


def _normalize_google(data: dict[str, Any]) -> GoogleProfile:
    return GoogleProfile(
        id=str(data.get("id") or data.get("sub") or ""),
        email=data.get("email"),
        name=data.get("name"),
        picture=data.get("picture"),
        first_name=data.get("given_name"),
        last_name=data.get("family_name"),
        verified_email=data.get("verified_email", data.get("email_verified")),
        locale=data.get("locale"),
    )


def _normalize_github(data: dict[str, Any]) -> GitHubProfile:
    name = data.get("name") or data.get("login")
    first, last = _split_name(data.get("name"))
    return GitHubProfile(
        id=str(data.get("id") or ""),
        email=data.get("email"),
        name=name,
        picture=data.get("avatar_url"),
        first_name=first,
        last_name=last,
        login=data.get("login"),
        company=data.get("company"),
        location=data.get("location"),
    )


def _normalize_microsoft(data: dict[str, Any]) -> MicrosoftProfile:
    return MicrosoftProfile(
        id=str(data.get("id") or ""),
        email=data.get("mail") or data.get("userPrincipalName"),
        name=data.get("displayName"),
        picture=data.get("photo"),
        first_name=data.get("givenName"),
        last_name=data.get("surname"),
        job_title=data.get("jobTitle"),
        department=data.get("department"),
    )


_GENERIC_CONSUMED = frozenset({"id", "sub", "email", "name", "picture", "avatar_url"})


def _normalize_generic(data: dict[str, Any]) -> GenericProfile:
    return GenericProfile(
        id=str(data.get("id") or data.get("sub") or ""),
        email=data.get("email"),
        name=data.get("name"),
        picture=data.get("picture") or data.get("avatar_url"),
        extra={k: v for k, v in data.items() if k not in _GENERIC_CONSUMED},
    )


_NORMALIZERS: dict[str, Callable[[dict[str, Any]], UserProfile]] = {
    "google": _normalize_google,
    "github": _normalize_github,
    "microsoft": _normalize_microsoft,
}


def normalize_user_profile(provider_id: str, data: dict[str, Any]) -> UserProfile:
    """Normalize a raw user-info payload into a ``UserProfile`` variant.

    Parameters
    ----------
    provider_id : str
        Provider the payload came from.
    data : dict
        Raw user-info JSON.

    Returns
    -------
    UserProfile
        Provider-tagged profile; unknown providers yield ``GenericProfile``
        with unmodeled fields kept in ``extra``.
    """
    normalizer = _NORMALIZERS.get(provider_id, _normalize_generic)
    return normalizer(data)
