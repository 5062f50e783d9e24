"""Per-provider encrypted token storage.

Each provider's ``TokenRecord`` lives in its own encrypted file,
``oauth-tokens.<providerId>.encrypted``, so that one corrupt or
undecryptable file never affects another provider.

Records are loaded lazily, once per process, and cached. A provider whose
file cannot be decrypted is treated as having no tokens and is still marked
as loaded; call :meth:`PerProviderTokenStore.invalidate` to force a re-read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from ..exceptions import DecryptionFailure, DeskAuthError, EncryptionError
from ..files import (
    describe_file,
    ensure_private_dir,
    read_text_file,
    remove_file,
    write_private_file,
)
from .providers import validate_provider_id
from .types import DEFAULT_REFRESH_BUFFER_SECONDS, ProviderStatus, TokenRecord, UserProfile


if TYPE_CHECKING:
    from ..crypto import CipherService

logger = logging.getLogger("deskauth.auth")

RefreshFn = Callable[[str, str], Awaitable[TokenRecord]]


class PerProviderTokenStore:
    """Encrypted, file-per-provider token store with an in-memory cache.

    Parameters
    ----------
    storage_dir : Path
        Directory holding the encrypted token files (mode 0700).
    cipher : CipherService
        Cipher used to encrypt each file.
    refresh_buffer_seconds : float
        A token within this many seconds of expiry counts as expired.
    clock : callable
        Returns the current Unix time; injectable for tests.
    """

    FILE_PREFIX = "oauth-tokens."
    FILE_SUFFIX = ".encrypted"

    def __init__(
        self,
        storage_dir: Path,
        cipher: CipherService,
        refresh_buffer_seconds: float = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage_dir = storage_dir
        self._cipher = cipher
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self._clock = clock
        self._cache: dict[str, TokenRecord] = {}
        self._loaded: set[str] = set()

    # ── Files ───────────────────────────────────────────────────────

    def path_for(self, provider_id: str) -> Path:
        """Return the token file path for ``provider_id``."""
        validate_provider_id(provider_id)
        return self.storage_dir / f"{self.FILE_PREFIX}{provider_id}{self.FILE_SUFFIX}"

    def _read(self, provider_id: str) -> TokenRecord | None:
        raw = read_text_file(self.path_for(provider_id))
        if raw is None:
            return None
        try:
            data = json.loads(self._cipher.decrypt(raw))
            return TokenRecord.from_dict(data, provider_id)
        except DecryptionFailure:
            logger.warning("Stored tokens for %s could not be decrypted", provider_id)
            return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("Stored tokens for %s are malformed", provider_id)
            return None

    def _write(self, record: TokenRecord) -> None:
        payload = self._cipher.encrypt(json.dumps(record.to_dict()))
        write_private_file(self.path_for(record.provider_id), payload)

    def list_provider_ids(self) -> list[str]:
        """Scan the storage directory for per-provider token files."""
        if not self.storage_dir.is_dir():
            return []
        ids = []
        for path in self.storage_dir.glob(f"{self.FILE_PREFIX}*{self.FILE_SUFFIX}"):
            provider_id = path.name[len(self.FILE_PREFIX) : -len(self.FILE_SUFFIX)]
            if provider_id:
                ids.append(provider_id)
        return sorted(ids)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ── Cache ───────────────────────────────────────────────────────

    async def _ensure_loaded(self, provider_id: str) -> None:
        if provider_id in self._loaded:
            return
        record = await self._run(self._read, provider_id)
        if record is not None:
            self._cache[provider_id] = record
        self._loaded.add(provider_id)

    def invalidate(self, provider_id: str | None = None) -> None:
        """Drop cached state so the next access re-reads from disk.

        Parameters
        ----------
        provider_id : str, optional
            Provider to invalidate; all providers when omitted.
        """
        if provider_id is None:
            self._cache.clear()
            self._loaded.clear()
        else:
            self._cache.pop(provider_id, None)
            self._loaded.discard(provider_id)

    # ── Operations ──────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the storage directory with owner-only permissions."""
        await self._run(ensure_private_dir, self.storage_dir)

    async def store(self, record: TokenRecord) -> TokenRecord:
        """Persist ``record`` for its provider.

        ``stored_at`` is carried over from an existing record (or set to
        now for a new one); ``updated_at`` is always set to now.

        Returns
        -------
        TokenRecord
            The record as written.
        """
        provider_id = validate_provider_id(record.provider_id)
        await self._ensure_loaded(provider_id)
        existing = self._cache.get(provider_id)
        now = self._clock()
        stored_at = existing.stored_at if existing and existing.stored_at is not None else now
        saved = replace(record, stored_at=stored_at, updated_at=now)
        await self._run(self._write, saved)
        self._cache[provider_id] = saved
        self._loaded.add(provider_id)
        logger.info("Stored tokens for provider %s", provider_id)
        return saved

    async def get(self, provider_id: str) -> TokenRecord | None:
        """Return the record for ``provider_id``, or None."""
        await self._ensure_loaded(provider_id)
        return self._cache.get(provider_id)

    async def has_tokens(self, provider_id: str) -> bool:
        """Whether an authenticated record exists for ``provider_id``."""
        record = await self.get(provider_id)
        return record is not None and record.authenticated

    async def is_expired(self, provider_id: str) -> bool:
        """Whether the provider's token is missing or within the refresh buffer."""
        record = await self.get(provider_id)
        if record is None:
            return True
        return record.is_expired(self._clock(), self.refresh_buffer_seconds)

    async def valid_access_token(
        self, provider_id: str, refresh_fn: RefreshFn | None = None
    ) -> str | None:
        """Return a usable access token, refreshing it when expired.

        Parameters
        ----------
        provider_id : str
            Provider to fetch a token for.
        refresh_fn : callable, optional
            ``await refresh_fn(provider_id, refresh_token)`` returning a new
            ``TokenRecord``.

        Returns
        -------
        str or None
            The live access token, or None when no record exists or the
            refresh failed (in which case the record is removed).
        """
        record = await self.get(provider_id)
        if record is None or not record.authenticated:
            return None
        if not record.is_expired(self._clock(), self.refresh_buffer_seconds):
            return record.access_token

        if not record.refresh_token or refresh_fn is None:
            logger.warning(
                "Token for %s is expired and cannot be refreshed; returning stored token",
                provider_id,
            )
            return record.access_token

        try:
            refreshed = await refresh_fn(provider_id, record.refresh_token)
        except DeskAuthError as exc:
            logger.warning("Failed to refresh tokens for %s: %s", provider_id, exc)
            await self.remove(provider_id)
            return None
        except Exception:
            logger.exception("Unexpected error refreshing tokens for %s", provider_id)
            await self.remove(provider_id)
            return None

        if not refreshed.authenticated:
            logger.warning("Refresh for %s returned no access token", provider_id)
            await self.remove(provider_id)
            return None

        if refreshed.user is None:
            refreshed = replace(refreshed, user=record.user)
        try:
            saved = await self.store(refreshed)
        except (EncryptionError, OSError, ValueError):
            logger.exception("Refreshed tokens for %s could not be stored", provider_id)
            return refreshed.access_token
        return saved.access_token

    async def update_user(self, provider_id: str, user: UserProfile) -> TokenRecord | None:
        """Replace the user profile on an existing record."""
        record = await self.get(provider_id)
        if record is None:
            return None
        return await self.store(replace(record, user=user))

    async def remove(self, provider_id: str) -> bool:
        """Remove a provider's record from cache and disk."""
        self._cache.pop(provider_id, None)
        self._loaded.add(provider_id)
        removed = await self._run(remove_file, self.path_for(provider_id))
        if removed:
            logger.info("Removed tokens for provider %s", provider_id)
        return bool(removed)

    async def clear(self) -> list[str]:
        """Remove every stored record. Returns the removed provider ids."""
        provider_ids = await self._run(self.list_provider_ids)
        for provider_id in provider_ids:
            await self.remove(provider_id)
        self._cache.clear()
        return provider_ids

    async def status(self) -> dict[str, ProviderStatus]:
        """Report the status of every provider with a file on disk.

        Does not refresh anything.
        """
        now = self._clock()
        result: dict[str, ProviderStatus] = {}
        for provider_id in await self._run(self.list_provider_ids):
            record = await self.get(provider_id)
            if record is None:
                result[provider_id] = ProviderStatus(authenticated=False, expired=True)
                continue
            result[provider_id] = ProviderStatus(
                authenticated=record.authenticated,
                expired=record.is_expired(now, self.refresh_buffer_seconds),
                user=record.user,
                stored_at=record.stored_at,
                updated_at=record.updated_at,
            )
        return result

    async def migrate(self, legacy_records: Mapping[str, TokenRecord]) -> list[str]:
        """Copy legacy records into per-provider files.

        A provider is written only if it has no per-provider file yet,
        so running this repeatedly never overwrites newer data.

        Returns
        -------
        list[str]
            Provider ids that were migrated.
        """
        migrated: list[str] = []
        for provider_id, record in legacy_records.items():
            try:
                path = self.path_for(provider_id)
            except ValueError:
                logger.warning("Skipping legacy tokens for invalid provider id %r", provider_id)
                continue
            if await self._run(path.exists):
                continue
            legacy = replace(record, provider_id=provider_id)
            now = self._clock()
            saved = replace(
                legacy,
                stored_at=legacy.stored_at if legacy.stored_at is not None else now,
                updated_at=now,
            )
            await self._run(self._write, saved)
            self._cache[provider_id] = saved
            self._loaded.add(provider_id)
            migrated.append(provider_id)
        if migrated:
            logger.info("Migrated tokens for %d provider(s): %s", len(migrated), migrated)
        return migrated

    def storage_info(self) -> dict[str, Any]:
        """Describe the storage directory and each token file."""
        return {
            "directory": str(self.storage_dir),
            "files": {pid: describe_file(self.path_for(pid)) for pid in self.list_provider_ids()},
        }
