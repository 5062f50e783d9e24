"""Read-only access to the legacy single-file token store.

Older releases kept every provider's tokens in one encrypted map,
``oauth-tokens.encrypted``. It is now only a migration source.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pathlib import Path
from typing import TYPE_CHECKING

from ..exceptions import DecryptionFailure
from ..files import read_text_file, remove_file
from .types import TokenRecord


if TYPE_CHECKING:
    from ..crypto import CipherService

logger = logging.getLogger("deskauth.auth")

LEGACY_FILE_NAME = "oauth-tokens.encrypted"


class LegacyTokenStore:
    """The legacy ``{providerId: record}`` encrypted map.

    Parameters
    ----------
    storage_dir : Path
        Directory holding ``oauth-tokens.encrypted``.
    cipher : CipherService
        Cipher the file was written with.
    """

    def __init__(self, storage_dir: Path, cipher: CipherService) -> None:
        self.path = storage_dir / LEGACY_FILE_NAME
        self._cipher = cipher

    def _read_all(self) -> dict[str, TokenRecord]:
        raw = read_text_file(self.path)
        if raw is None:
            return {}
        try:
            data = json.loads(self._cipher.decrypt(raw))
        except DecryptionFailure:
            logger.warning("Legacy token file could not be decrypted; nothing to migrate")
            return {}
        except ValueError:
            logger.warning("Legacy token file is malformed; nothing to migrate")
            return {}
        if not isinstance(data, dict):
            return {}
        records: dict[str, TokenRecord] = {}
        for provider_id, record in data.items():
            if not isinstance(record, dict):
                logger.warning("Skipping legacy entry %r: not an object", provider_id)
                continue
            try:
                records[provider_id] = TokenRecord.from_dict(record, provider_id)
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping malformed legacy entry %r: %s", provider_id, exc)
        return records

    async def load_all(self) -> dict[str, TokenRecord]:
        """Return every legacy record keyed by provider id.

        An absent or undecryptable file yields an empty map; malformed
        entries are skipped one at a time.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_all)

    async def exists(self) -> bool:
        """Whether the legacy file is present."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.path.exists)

    async def clear(self) -> bool:
        """Delete the legacy file. Returns True if it existed."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, remove_file, self.path)
