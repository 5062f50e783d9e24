"""deskauth - OAuth provider flows and encrypted token lifecycle for desktop apps.

Authenticates a desktop user against third-party identity providers, either
directly (Authorization Code + PKCE) or through a remote proxy server, and
keeps the resulting credentials encrypted at rest and refreshed on demand.
"""

from __future__ import annotations

from .auth import (
    AuthFlowManager,
    AuthFlowResult,
    FlowStart,
    FlowState,
    OAuthService,
    PerProviderTokenStore,
    ProviderConfig,
    ServerProviderDescriptor,
    TokenRecord,
    UserProfile,
)
from .config import DeskAuthSettings, get_settings
from .crypto import CipherService, KeyResolver, StaticKeySource
from .exceptions import (
    AuthenticationError,
    DecryptionFailure,
    DeskAuthError,
    EncryptionError,
    KeyRotationRefused,
    KeyTooShort,
    NoActiveSession,
    ProviderNotConfigured,
    StateMismatch,
    TokenExchangeFailed,
    TokenRefreshError,
)


__version__ = "1.0.0"

__all__ = [
    "AuthFlowManager",
    "AuthFlowResult",
    "AuthenticationError",
    "CipherService",
    "DecryptionFailure",
    "DeskAuthError",
    "DeskAuthSettings",
    "EncryptionError",
    "FlowStart",
    "FlowState",
    "KeyResolver",
    "KeyRotationRefused",
    "KeyTooShort",
    "NoActiveSession",
    "OAuthService",
    "PerProviderTokenStore",
    "ProviderConfig",
    "ProviderNotConfigured",
    "ServerProviderDescriptor",
    "StateMismatch",
    "StaticKeySource",
    "TokenExchangeFailed",
    "TokenRecord",
    "TokenRefreshError",
    "UserProfile",
    "__version__",
    "get_settings",
]
