"""AES-256-CBC cipher for credential material at rest.

Payloads are encoded as ``ivHex:cipherHex`` with a fresh 16-byte IV per
call and PKCS7 padding. Failures are logged with a generic message and
re-raised as generic errors; neither key material nor the underlying
exception leaves this module.
"""

from __future__ import annotations

import logging
import os

from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..exceptions import DecryptionFailure, EncryptionError, KeyTooShort


logger = logging.getLogger("deskauth.crypto")

KEY_LENGTH = 32
IV_LENGTH = 16


@runtime_checkable
class KeySource(Protocol):
    """Anything able to hand out the active 32-byte key."""

    def active_key(self) -> bytes:
        """Return the key used for the next encrypt/decrypt call."""
        ...


class StaticKeySource:
    """Key source wrapping a fixed key.

    Parameters
    ----------
    key : bytes
        The raw key bytes.
    """

    def __init__(self, key: bytes) -> None:
        self._key = key

    @classmethod
    def from_hex(cls, hex_key: str) -> StaticKeySource:
        """Build a key source from a hex-encoded key."""
        return cls(bytes.fromhex(hex_key))

    def active_key(self) -> bytes:
        """Return the wrapped key."""
        return self._key


class CipherService:
    """Encrypts and decrypts credential payloads.

    Parameters
    ----------
    key_source : KeySource
        Supplies the active key on every call, so a regenerated key
        takes effect without rebuilding the service.
    """

    def __init__(self, key_source: KeySource) -> None:
        self._key_source = key_source

    def _key(self) -> bytes:
        key = self._key_source.active_key()
        if not key or len(key) != KEY_LENGTH:
            length = len(key) if key else 0
            logger.error("Encryption key has invalid length: %d bytes", length)
            raise KeyTooShort("Encryption key must be 32 bytes", length=length)
        return key

    def encrypt(self, plaintext: str | bytes) -> str:
        """Encrypt ``plaintext`` and return ``ivHex:cipherHex``.

        Parameters
        ----------
        plaintext : str or bytes
            Data to encrypt; strings are encoded as UTF-8.

        Returns
        -------
        str
            The encoded payload.

        Raises
        ------
        KeyTooShort
            If the active key is missing or not 32 bytes.
        EncryptionError
            If encryption fails for any other reason.
        """
        key = self._key()
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        try:
            iv = os.urandom(IV_LENGTH)
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(data) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except (ValueError, TypeError):
            logger.error("Encryption failed")
            raise EncryptionError("Failed to encrypt data") from None
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt_bytes(self, payload: str) -> bytes:
        """Decrypt an ``ivHex:cipherHex`` payload to raw bytes.

        Raises
        ------
        KeyTooShort
            If the active key is missing or not 32 bytes.
        DecryptionFailure
            If the payload is malformed or does not decrypt under the key.
        """
        key = self._key()
        parts = payload.strip().split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.error("Decryption failed: invalid payload format")
            raise DecryptionFailure("Invalid encrypted data format")
        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            if len(iv) != IV_LENGTH:
                raise ValueError("bad IV length")
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except (ValueError, TypeError):
            logger.error("Decryption failed")
            raise DecryptionFailure("Failed to decrypt data") from None

    def decrypt(self, payload: str) -> str:
        """Decrypt an ``ivHex:cipherHex`` payload to text.

        Raises
        ------
        KeyTooShort
            If the active key is missing or not 32 bytes.
        DecryptionFailure
            If the payload is malformed, does not decrypt, or is not UTF-8.
        """
        raw = self.decrypt_bytes(payload)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("Decryption failed: payload is not valid UTF-8")
            raise DecryptionFailure("Failed to decrypt data") from None
