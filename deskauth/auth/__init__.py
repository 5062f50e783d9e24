"""OAuth2 provider flows and token lifecycle for deskauth.

Provides provider configuration, PKCE, direct and proxy-brokered
authorization code flows, and encrypted per-provider token storage.
"""

from __future__ import annotations

from .callback_server import OAuthCallbackServer
from .client import OAuthClient
from .flow import AuthFlowManager, RepositoryForker
from .legacy_store import LegacyTokenStore
from .onboarding import OnboardingTokenStore
from .pkce import PKCEChallenge, compute_challenge, generate_state
from .providers import (
    EncryptedProviderConfigStore,
    MemoryProviderConfigStore,
    ProviderConfig,
    ProviderConfigStore,
    builtin_providers,
    normalize_user_profile,
)
from .server_proxy import ServerProviderRegistry, ServerProxyClient
from .service import OAuthService
from .token_store import PerProviderTokenStore
from .types import (
    AuthFlowResult,
    FlowStart,
    FlowState,
    GenericProfile,
    GitHubProfile,
    GoogleProfile,
    MicrosoftProfile,
    ProviderStatus,
    ServerProviderDescriptor,
    TokenRecord,
    UserProfile,
)


__all__ = [
    "AuthFlowManager",
    "AuthFlowResult",
    "EncryptedProviderConfigStore",
    "FlowStart",
    "FlowState",
    "GenericProfile",
    "GitHubProfile",
    "GoogleProfile",
    "LegacyTokenStore",
    "MemoryProviderConfigStore",
    "MicrosoftProfile",
    "OAuthCallbackServer",
    "OAuthClient",
    "OAuthService",
    "OnboardingTokenStore",
    "PKCEChallenge",
    "PerProviderTokenStore",
    "ProviderConfig",
    "ProviderConfigStore",
    "ProviderStatus",
    "RepositoryForker",
    "ServerProviderDescriptor",
    "ServerProviderRegistry",
    "ServerProxyClient",
    "TokenRecord",
    "UserProfile",
    "builtin_providers",
    "compute_challenge",
    "generate_state",
    "normalize_user_profile",
]
