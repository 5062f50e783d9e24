"""Encryption key resolution and rotation.

Resolution order, evaluated once per resolver:

1. Operator-supplied hex key (exactly 32 bytes). Wins unconditionally.
2. Previously generated key material on disk, while younger than the
   maximum age.
3. A freshly generated random key, persisted with owner-only permissions.
"""

from __future__ import annotations

import json
import logging
import secrets
import time

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal

from ..exceptions import KeyRotationRefused
from ..files import read_text_file, write_private_file
from .cipher import KEY_LENGTH


logger = logging.getLogger("deskauth.crypto")

KEY_FORMAT_VERSION = "1.0"
SECONDS_PER_DAY = 86400

KeyOrigin = Literal["environment", "generated"]


@dataclass(frozen=True)
class EncryptionKeyMaterial:
    """A resolved key and where it came from.

    Attributes
    ----------
    key : bytes
        The 32-byte AES key.
    created_at : float
        Unix timestamp the key was created (or resolved, for operator keys).
    source : str
        ``"environment"`` for operator keys, ``"generated"`` otherwise.
    """

    key: bytes
    created_at: float
    source: KeyOrigin

    def age_days(self, now: float) -> float:
        """Age of the key in days at ``now``."""
        return (now - self.created_at) / SECONDS_PER_DAY

    def to_file_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk key file layout."""
        return {
            "key": self.key.hex(),
            "createdAt": int(self.created_at * 1000),
            "version": KEY_FORMAT_VERSION,
            "source": self.source,
        }

    @classmethod
    def from_file_dict(cls, data: dict[str, Any]) -> EncryptionKeyMaterial:
        """Parse the on-disk key file layout.

        Raises
        ------
        ValueError
            If the key is not valid hex of the right length.
        KeyError
            If a required field is missing.
        """
        key = bytes.fromhex(data["key"])
        if len(key) != KEY_LENGTH:
            raise ValueError(f"stored key is {len(key)} bytes")
        return cls(key=key, created_at=float(data["createdAt"]) / 1000, source="generated")


class KeyResolver:
    """Resolves, caches and rotates the credential encryption key.

    Implements the ``KeySource`` protocol consumed by ``CipherService``.

    Parameters
    ----------
    key_file : Path
        Where generated key material is persisted.
    operator_key : str, optional
        Hex-encoded operator key. When valid it overrides everything.
    max_age_days : int
        Generated keys older than this are replaced at resolution time.
    clock : callable
        Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        key_file: Path,
        operator_key: str | None = None,
        max_age_days: int = 365,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_file = key_file
        self._operator_key = operator_key or None
        self._max_age_days = max_age_days
        self._clock = clock
        self._material: EncryptionKeyMaterial | None = None

    def _operator_material(self) -> EncryptionKeyMaterial | None:
        if not self._operator_key:
            return None
        try:
            key = bytes.fromhex(self._operator_key.strip())
        except ValueError:
            logger.warning("Operator encryption key is not valid hex; ignoring it")
            return None
        if len(key) != KEY_LENGTH:
            logger.warning(
                "Operator encryption key must be %d bytes (got %d); ignoring it",
                KEY_LENGTH,
                len(key),
            )
            return None
        return EncryptionKeyMaterial(key=key, created_at=self._clock(), source="environment")

    def _stored_material(self) -> EncryptionKeyMaterial | None:
        raw = read_text_file(self.key_file)
        if raw is None:
            return None
        try:
            material = EncryptionKeyMaterial.from_file_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Key file %s is unreadable; a new key will be generated", self.key_file)
            return None

        age = material.age_days(self._clock())
        if age >= self._max_age_days:
            logger.info("Stored encryption key is %.0f days old; rotating", age)
            return None
        return material

    def _generate(self) -> EncryptionKeyMaterial:
        material = EncryptionKeyMaterial(
            key=secrets.token_bytes(KEY_LENGTH),
            created_at=self._clock(),
            source="generated",
        )
        write_private_file(self.key_file, json.dumps(material.to_file_dict(), indent=2))
        logger.info("Generated new encryption key at %s", self.key_file)
        return material

    def resolve(self) -> EncryptionKeyMaterial:
        """Resolve the active key material (cached after the first call)."""
        if self._material is None:
            self._material = (
                self._operator_material() or self._stored_material() or self._generate()
            )
            logger.debug("Using %s encryption key", self._material.source)
        return self._material

    def active_key(self) -> bytes:
        """Return the active 32-byte key."""
        return self.resolve().key

    @property
    def uses_operator_key(self) -> bool:
        """Whether the operator-supplied key is the active one."""
        return self.resolve().source == "environment"

    def regenerate(self) -> EncryptionKeyMaterial:
        """Generate and persist a new key, replacing the active one.

        Files encrypted under the previous key become unreadable.

        Raises
        ------
        KeyRotationRefused
            If the operator key is active.
        """
        if self.uses_operator_key:
            raise KeyRotationRefused(
                "Cannot regenerate encryption key while an operator key is configured"
            )
        self._material = self._generate()
        return self._material

    def info(self) -> dict[str, Any]:
        """Describe the active key without exposing key material."""
        material = self.resolve()
        return {
            "source": material.source,
            "createdAt": int(material.created_at * 1000),
            "ageDays": round(material.age_days(self._clock()), 2),
            "keyFile": str(self.key_file) if material.source == "generated" else None,
        }
