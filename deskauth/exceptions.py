"""deskauth exception hierarchy.

All deskauth-specific exceptions inherit from DeskAuthError, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class DeskAuthError(Exception):
    """Base exception for all deskauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize deskauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, flow_id, path, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        ctx_items = {k: v for k, v in self.context.items() if v is not None}
        if ctx_items:
            ctx = ", ".join(f"{k}={v!r}" for k, v in ctx_items.items())
            return f"{self.message} ({ctx})"
        return self.message


# ── Encryption ──────────────────────────────────────────────────────


class EncryptionError(DeskAuthError):
    """Encryption or decryption of credential material failed.

    The message is always generic; the underlying cause is logged
    and never attached to the exception.
    """


class KeyTooShort(EncryptionError):
    """The active encryption key is missing or not 32 bytes long."""

    def __init__(self, message: str, length: int | None = None, **context: Any) -> None:
        """Initialize key length error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        length : int, optional
            The length of the offending key in bytes.
        **context : Any
            Additional context.
        """
        super().__init__(message, length=length, **context)
        self.length = length


class DecryptionFailure(EncryptionError):
    """An encrypted payload could not be decrypted.

    Raised for malformed payloads, wrong keys, and corrupt padding.
    Token stores treat this as "no tokens" rather than propagating it.
    """


class KeyRotationRefused(EncryptionError):
    """Key regeneration was requested while an operator key is active."""


# ── Authentication ──────────────────────────────────────────────────


class AuthenticationError(DeskAuthError):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    OAuth2 flows, token exchange, or refresh.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The OAuth2 provider id (e.g., "google", "github").
        flow_id : str, optional
            The unique identifier of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class ProviderNotConfigured(AuthenticationError):
    """No usable configuration exists for the requested provider.

    Raised for unknown provider ids and for providers whose
    client id is empty.
    """


class ServerProviderNotFound(AuthenticationError):
    """The requested proxy server descriptor is not registered."""


class ServerProxyError(AuthenticationError):
    """A proxy server returned an error or an unsuccessful response."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize proxy error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status code returned by the proxy.
        provider : str, optional
            The provider the proxy was asked about.
        flow_id : str, optional
            The auth flow involved.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, provider=provider, flow_id=flow_id, status_code=status_code, **context
        )
        self.status_code = status_code


class NoActiveSession(AuthenticationError):
    """A callback arrived for a flow that is unknown or already consumed.

    Deliberately carries a generic message; details are logged only.
    """


class StateMismatch(AuthenticationError):
    """The callback state does not match the one issued at flow start.

    Treated as a stale callback or a CSRF attempt. Deliberately
    carries a generic message; details are logged only.
    """


class AuthFlowCancelled(AuthenticationError):
    """Authentication flow was cancelled before a callback arrived."""


class AuthFlowTimeout(AuthenticationError):
    """Authentication flow timed out.

    Raised when a pending flow receives no callback within the
    configured timeout.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The OAuth2 provider id.
        flow_id : str, optional
            The unique identifier of the auth flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class TokenError(AuthenticationError):
    """Base exception for token-related failures."""


class TokenExchangeFailed(TokenError):
    """The token endpoint rejected an authorization code."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize token exchange error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status code returned by the token endpoint.
        body : str, optional
            Response body, kept for diagnostics and not rendered in ``str()``.
        provider : str, optional
            The OAuth2 provider id.
        flow_id : str, optional
            The auth flow involved.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, provider=provider, flow_id=flow_id, status_code=status_code, **context
        )
        self.status_code = status_code
        self.body = body


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when exchanging a refresh token for a new access token
    fails, or when no refresh token is available.
    """
