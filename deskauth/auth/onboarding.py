"""Dedicated slot for the onboarding GitHub token.

The onboarding flow's credentials are consumed by the repository
bootstrap (forking template repositories) before any per-provider
configuration exists, so they are also kept in a file of their own.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pathlib import Path
from typing import TYPE_CHECKING

from ..exceptions import DecryptionFailure
from ..files import read_text_file, remove_file, write_private_file
from .types import TokenRecord


if TYPE_CHECKING:
    from ..crypto import CipherService

logger = logging.getLogger("deskauth.auth")

ONBOARDING_FILE_NAME = "onboarding-token.encrypted"


class OnboardingTokenStore:
    """Encrypted single-record slot for onboarding credentials.

    Parameters
    ----------
    path : Path
        Location of the encrypted slot.
    cipher : CipherService
        Cipher used for the slot.
    """

    def __init__(self, path: Path, cipher: CipherService) -> None:
        self.path = path
        self._cipher = cipher

    def _read(self) -> TokenRecord | None:
        raw = read_text_file(self.path)
        if raw is None:
            return None
        try:
            return TokenRecord.from_dict(json.loads(self._cipher.decrypt(raw)))
        except (DecryptionFailure, ValueError, TypeError):
            logger.warning("Onboarding token could not be read")
            return None

    async def save(self, record: TokenRecord) -> None:
        """Encrypt and write the onboarding record."""
        payload = self._cipher.encrypt(json.dumps(record.to_dict()))
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, write_private_file, self.path, payload)
        logger.info("Saved onboarding token")

    async def load(self) -> TokenRecord | None:
        """Return the onboarding record, or None."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read)

    async def exists(self) -> bool:
        """Whether a record with an access token is stored."""
        record = await self.load()
        return record is not None and record.authenticated

    async def clear(self) -> bool:
        """Delete the slot. Returns True if it existed."""
        loop = asyncio.get_running_loop()
        removed = await loop.run_in_executor(None, remove_file, self.path)
        if removed:
            logger.info("Cleared onboarding token")
        return removed
