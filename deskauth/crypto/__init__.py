"""Encryption of credential material at rest."""

from __future__ import annotations

from .cipher import CipherService, KeySource, StaticKeySource
from .keys import EncryptionKeyMaterial, KeyResolver


__all__ = [
    "CipherService",
    "EncryptionKeyMaterial",
    "KeyResolver",
    "KeySource",
    "StaticKeySource",
]
