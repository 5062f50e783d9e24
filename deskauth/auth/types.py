"""Data model for OAuth flows and stored credentials.

Instants are held as Unix timestamps (float seconds) in memory and
serialized as integer epoch milliseconds, the layout used by existing
credential files.
"""

from __future__ import annotations

import asyncio

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar


DEFAULT_EXPIRES_IN = 3600
DEFAULT_REFRESH_BUFFER_SECONDS = 300


def _to_ms(ts: float | None) -> int | None:
    return None if ts is None else int(round(ts * 1000))


def _from_ms(value: Any) -> float | None:
    if value is None:
        return None
    return float(value) / 1000


# ── User profiles ───────────────────────────────────────────────────


@dataclass
class UserProfile:
    """Normalized user identity attached to a token record.

    Concrete variants are tagged by provider. Fields the variant does
    not model are kept in ``extra`` and written back unchanged.

    Attributes
    ----------
    id : str
        Provider-side user id, always a string.
    email : str or None
        Primary email address.
    name : str or None
        Display name.
    picture : str or None
        Avatar URL.
    first_name, last_name : str or None
        Given and family name, when the provider reports them.
    extra : dict[str, Any]
        Pass-through map for unmodeled fields.
    """

    kind: ClassVar[str] = "generic"
    extension_keys: ClassVar[dict[str, str]] = {}

    id: str = ""
    email: str | None = None
    name: str | None = None
    picture: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _CORE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"provider", "id", "email", "name", "picture", "firstName", "lastName"}
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON layout."""
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "provider": self.kind,
                "id": self.id,
                "email": self.email,
                "name": self.name,
                "picture": self.picture,
            }
        )
        if self.first_name is not None:
            data["firstName"] = self.first_name
        if self.last_name is not None:
            data["lastName"] = self.last_name
        for attr, key in self.extension_keys.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def _from_mapping(cls, data: dict[str, Any]) -> UserProfile:
        consumed = cls._CORE_KEYS | set(cls.extension_keys.values())
        extensions = {attr: data.get(key) for attr, key in cls.extension_keys.items()}
        raw_id = data.get("id")
        return cls(
            id="" if raw_id is None else str(raw_id),
            email=data.get("email"),
            name=data.get("name"),
            picture=data.get("picture"),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            extra={k: v for k, v in data.items() if k not in consumed},
            **extensions,
        )

    @staticmethod
    def from_dict(data: dict[str, Any], provider_id: str | None = None) -> UserProfile:
        """Deserialize a stored profile, choosing the variant by its tag.

        Parameters
        ----------
        data : dict
            Stored profile JSON.
        provider_id : str, optional
            Used to pick the variant when the stored data carries no tag.

        Returns
        -------
        UserProfile
            The matching variant, or ``GenericProfile``.
        """
        kind = data.get("provider") or provider_id or GenericProfile.kind
        profile_cls = PROFILE_TYPES.get(kind, GenericProfile)
        return profile_cls._from_mapping(data)


@dataclass
class GoogleProfile(UserProfile):
    """Google account profile."""

    kind: ClassVar[str] = "google"
    extension_keys: ClassVar[dict[str, str]] = {
        "verified_email": "verified_email",
        "locale": "locale",
    }

    verified_email: bool | None = None
    locale: str | None = None


@dataclass
class GitHubProfile(UserProfile):
    """GitHub account profile."""

    kind: ClassVar[str] = "github"
    extension_keys: ClassVar[dict[str, str]] = {
        "login": "login",
        "company": "company",
        "location": "location",
    }

    login: str | None = None
    company: str | None = None
    location: str | None = None


@dataclass
class MicrosoftProfile(UserProfile):
    """Microsoft (Entra ID / Graph) account profile."""

    kind: ClassVar[str] = "microsoft"
    extension_keys: ClassVar[dict[str, str]] = {
        "job_title": "jobTitle",
        "department": "department",
    }

    job_title: str | None = None
    department: str | None = None


@dataclass
class GenericProfile(UserProfile):
    """Profile from any provider without a dedicated variant."""

    kind: ClassVar[str] = "generic"


PROFILE_TYPES: dict[str, type[UserProfile]] = {
    "google": GoogleProfile,
    "github": GitHubProfile,
    "microsoft": MicrosoftProfile,
    "generic": GenericProfile,
}


# ── Token records ───────────────────────────────────────────────────


@dataclass
class TokenRecord:
    """Credentials for one provider.

    Attributes
    ----------
    provider_id : str
        The provider the tokens belong to.
    access_token : str
        Bearer token for API requests. An empty value is never
        considered authenticated.
    expires_at : float
        Absolute Unix timestamp at which the access token expires.
    refresh_token : str or None
        Refresh token, when the provider issued one.
    token_type : str
        Token type, typically "Bearer".
    scope : str
        Space-separated granted scopes.
    user : UserProfile or None
        Normalized user identity.
    stored_at : float or None
        When the record was first persisted. Never changes afterwards.
    updated_at : float or None
        When the record was last persisted.
    """

    provider_id: str
    access_token: str
    expires_at: float
    refresh_token: str | None = None
    token_type: str = "Bearer"  # noqa: S105
    scope: str = ""
    user: UserProfile | None = None
    stored_at: float | None = None
    updated_at: float | None = None

    @classmethod
    def from_token_response(
        cls,
        provider_id: str,
        raw: dict[str, Any],
        issued_at: float,
        *,
        user: UserProfile | None = None,
        previous_refresh_token: str | None = None,
    ) -> TokenRecord:
        """Build a record from a token endpoint response.

        Parameters
        ----------
        provider_id : str
            The provider the response came from.
        raw : dict
            Token endpoint JSON.
        issued_at : float
            Unix time the response was received; ``expires_in`` is
            converted to an absolute expiry relative to it.
        user : UserProfile, optional
            Normalized profile to attach.
        previous_refresh_token : str, optional
            Kept when the response carries no new refresh token.

        Returns
        -------
        TokenRecord
            The new record (not yet persisted).
        """
        try:
            expires_in = int(raw.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        scope = raw.get("scope") or ""
        if isinstance(scope, (list, tuple)):
            scope = " ".join(scope)
        return cls(
            provider_id=provider_id,
            access_token=raw.get("access_token") or "",
            refresh_token=raw.get("refresh_token") or previous_refresh_token,
            token_type=raw.get("token_type") or "Bearer",
            expires_at=issued_at + expires_in,
            scope=scope,
            user=user,
        )

    @property
    def authenticated(self) -> bool:
        """Whether the record carries an access token."""
        return bool(self.access_token)

    def is_expired(self, now: float, buffer_seconds: float = DEFAULT_REFRESH_BUFFER_SECONDS) -> bool:
        """Whether the token is expired or within ``buffer_seconds`` of expiring."""
        return now >= self.expires_at - buffer_seconds

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON layout."""
        return {
            "providerId": self.provider_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": _to_ms(self.expires_at),
            "scope": self.scope,
            "user": self.user.to_dict() if self.user is not None else None,
            "storedAt": _to_ms(self.stored_at),
            "updatedAt": _to_ms(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], provider_id: str | None = None) -> TokenRecord:
        """Deserialize the stored JSON layout.

        Parameters
        ----------
        data : dict
            Stored record JSON.
        provider_id : str, optional
            Used when the stored data carries no ``providerId``.
        """
        pid = data.get("providerId") or provider_id or ""
        user_data = data.get("user")
        return cls(
            provider_id=pid,
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
            expires_at=_from_ms(data.get("expires_at")) or 0.0,
            scope=data.get("scope") or "",
            user=UserProfile.from_dict(user_data, pid) if isinstance(user_data, dict) else None,
            stored_at=_from_ms(data.get("storedAt")),
            updated_at=_from_ms(data.get("updatedAt")),
        )


@dataclass
class ProviderStatus:
    """Authentication status of one provider, as reported by the token store."""

    authenticated: bool
    expired: bool
    user: UserProfile | None = None
    stored_at: float | None = None
    updated_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for display or JSON output."""
        return {
            "authenticated": self.authenticated,
            "expired": self.expired,
            "user": self.user.to_dict() if self.user is not None else None,
            "storedAt": _to_ms(self.stored_at),
            "updatedAt": _to_ms(self.updated_at),
        }


# ── Flows ───────────────────────────────────────────────────────────


class FlowState(str, Enum):
    """State of an OAuth2 authentication flow."""

    IDLE = "idle"
    PKCE_GENERATED = "pkce_generated"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        """Whether the flow has finished."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {FlowState.AUTHENTICATED, FlowState.FAILED, FlowState.CANCELLED, FlowState.TIMED_OUT}
)


class FlowKind(str, Enum):
    """How a flow exchanges its authorization code."""

    DIRECT = "direct"
    SERVER = "server"
    ONBOARDING = "onboarding"


@dataclass(frozen=True)
class ServerProviderDescriptor:
    """A remote proxy server that brokers OAuth to the real provider.

    Attributes
    ----------
    id : str
        Local identifier of the proxy.
    name : str
        Display name.
    url : str
        Base URL of the proxy's API.
    """

    id: str
    name: str
    url: str

    @property
    def base_url(self) -> str:
        """The URL without a trailing slash."""
        return self.url.rstrip("/")


@dataclass
class FlowSession:
    """Ephemeral state of one in-progress authorization.

    Created when a flow starts and consumed exactly once: by a callback,
    a timeout, or a cancellation. Never persisted.
    """

    flow_id: str
    kind: FlowKind
    provider_id: str
    state: str
    created_at: float
    code_verifier: str | None = None
    code_challenge: str | None = None
    session_id: str | None = None
    server_id: str | None = None
    host_token: str | None = field(default=None, repr=False)
    status: FlowState = FlowState.PKCE_GENERATED
    result: asyncio.Future[AuthFlowResult] | None = field(default=None, repr=False)
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass(frozen=True)
class FlowStart:
    """Returned when a flow starts: its id and where to send the user."""

    flow_id: str
    provider_id: str
    authorization_url: str


@dataclass
class AuthFlowResult:
    """Result of an OAuth2 authentication flow.

    Attributes
    ----------
    success : bool
        Whether authentication completed successfully.
    flow_id : str
        The flow the result belongs to.
    provider_id : str
        The provider that was authenticated against.
    record : TokenRecord or None
        The persisted record if authentication succeeded.
    error : str or None
        Error message if authentication failed.
    state : FlowState
        Terminal state of the flow.
    exception : Exception or None
        The error that ended the flow, re-raised by ``raise_for_error``.
    """

    success: bool
    flow_id: str
    provider_id: str
    record: TokenRecord | None = None
    error: str | None = None
    state: FlowState = FlowState.FAILED
    exception: Exception | None = field(default=None, repr=False)

    def raise_for_error(self) -> None:
        """Re-raise the error that ended an unsuccessful flow."""
        if self.exception is not None:
            raise self.exception
