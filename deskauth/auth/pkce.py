"""PKCE (Proof Key for Code Exchange) and state generation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


def compute_challenge(verifier: str) -> str:
    """Return the S256 challenge for ``verifier``.

    base64url(SHA-256(verifier)) with padding stripped.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state(nbytes: int = 16) -> str:
    """Generate an opaque CSRF state value (hex, ``2 * nbytes`` chars)."""
    return secrets.token_hex(nbytes)


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 32) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of random bytes behind the verifier (default 32,
            giving a 43-character verifier).

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        return cls.from_verifier(secrets.token_urlsafe(length))

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Build the pair for a known verifier."""
        return cls(verifier=verifier, challenge=compute_challenge(verifier))

    def verify(self, verifier: str) -> bool:
        """Check a presented verifier against this challenge."""
        return secrets.compare_digest(compute_challenge(verifier), self.challenge)
