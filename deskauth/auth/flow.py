"""OAuth2 authentication flow orchestrator.

Provides AuthFlowManager, which drives three kinds of authorization code
flows:

- **Direct**: the desktop holds the client configuration, generates
  PKCE + state, and exchanges the code with the provider itself.
- **Server-proxied**: a remote proxy holds the client credentials; the
  desktop asks it for an authorization URL and has it exchange the code.
- **Onboarding**: a server-proxied flow bootstrapped from a fixed endpoint
  without any credentials, followed by repository setup.

Every started flow gets its own session, keyed by a generated flow id, so
concurrent flows never overwrite each other. Each session is consumed
exactly once: by its callback, a cancellation, or its timeout.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol

from ..config import OnboardingSettings
from ..exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    EncryptionError,
    NoActiveSession,
    ProviderNotConfigured,
    StateMismatch,
)
from .client import OAuthClient
from .pkce import PKCEChallenge, generate_state
from .providers import normalize_user_profile, validate_provider_id
from .server_proxy import (
    ServerAuthorization,
    ServerProviderInfo,
    ServerProviderRegistry,
    ServerProxyClient,
)
from .types import (
    AuthFlowResult,
    FlowKind,
    FlowSession,
    FlowStart,
    FlowState,
    ServerProviderDescriptor,
    TokenRecord,
    UserProfile,
)


if TYPE_CHECKING:
    from .onboarding import OnboardingTokenStore
    from .providers import ProviderConfig, ProviderConfigStore
    from .token_store import PerProviderTokenStore


logger = logging.getLogger("deskauth.auth")

HostTokenGetter = Callable[[], "str | None | Awaitable[str | None]"]
BrowserLauncher = Callable[[str], Any]


class RepositoryForker(Protocol):
    """Repository collaborator invoked after a successful onboarding.

    Methods may be plain functions or coroutines.
    """

    def initialize_token(self, access_token: str) -> Any:
        """Make the onboarding token available to the repository client."""

    def create_fork(self, owner: str, repo: str) -> Any:
        """Fork ``owner/repo`` into the authenticated account."""


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AuthFlowManager:
    """Orchestrates OAuth2 authorization code flows.

    Parameters
    ----------
    config_store : ProviderConfigStore
        Source of provider configurations (read-only here).
    token_store : PerProviderTokenStore
        Where successful flows persist their tokens.
    oauth_client : OAuthClient, optional
        HTTP client for direct exchanges.
    proxy_client : ServerProxyClient, optional
        HTTP client for proxy servers.
    servers : ServerProviderRegistry, optional
        Known proxy servers.
    onboarding : OnboardingSettings, optional
        Onboarding endpoint, provider id and repositories to fork.
    onboarding_store : OnboardingTokenStore, optional
        Dedicated slot for the onboarding token.
    repository_forker : RepositoryForker, optional
        Called after a successful onboarding.
    host_token : callable, optional
        Returns the host application's own access token, sent as the
        bearer token to proxy servers.
    browser : callable, optional
        Opens the authorization URL; called once per started flow.
    auth_timeout : float
        Seconds a started flow waits for its callback (default ``300``).
    pkce_length : int
        Random bytes behind each PKCE verifier.
    max_finished : int
        Finished flow results kept for ``wait_for_result`` and
        ``flow_state``; the oldest are dropped first.
    clock : callable
        Returns the current Unix time.
    """

    def __init__(
        self,
        config_store: ProviderConfigStore,
        token_store: PerProviderTokenStore,
        *,
        oauth_client: OAuthClient | None = None,
        proxy_client: ServerProxyClient | None = None,
        servers: ServerProviderRegistry | None = None,
        onboarding: OnboardingSettings | None = None,
        onboarding_store: OnboardingTokenStore | None = None,
        repository_forker: RepositoryForker | None = None,
        host_token: HostTokenGetter | None = None,
        browser: BrowserLauncher | None = None,
        auth_timeout: float = 300.0,
        pkce_length: int = 32,
        max_finished: int = 64,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config_store = config_store
        self.token_store = token_store
        self.oauth_client = oauth_client or OAuthClient()
        self.proxy_client = proxy_client or ServerProxyClient()
        self.servers = servers or ServerProviderRegistry()
        self.onboarding = onboarding or OnboardingSettings()
        self.onboarding_store = onboarding_store
        self.repository_forker = repository_forker
        self.auth_timeout = auth_timeout
        self._host_token = host_token
        self._browser = browser
        self._pkce_length = pkce_length
        self._max_finished = max_finished
        self._clock = clock

        self._sessions: dict[str, FlowSession] = {}
        self._finished: dict[str, AuthFlowResult] = {}

    # ── Session table ───────────────────────────────────────────────

    def flow_state(self, flow_id: str) -> FlowState | None:
        """Current state of a flow, or None if the id was never issued."""
        session = self._sessions.get(flow_id)
        if session is not None:
            return session.status
        finished = self._finished.get(flow_id)
        return finished.state if finished is not None else None

    def flow_id_for_state(self, state: str | None) -> str | None:
        """Find the pending flow that issued ``state``."""
        if not state:
            return None
        for session in self._sessions.values():
            if secrets.compare_digest(session.state.encode(), state.encode()):
                return session.flow_id
        return None

    def pending_flows(self) -> list[str]:
        """Ids of flows still waiting for a callback."""
        return list(self._sessions)

    def _register(self, session: FlowSession) -> None:
        loop = asyncio.get_running_loop()
        session.result = loop.create_future()
        session.timeout_handle = loop.call_later(self.auth_timeout, self._expire, session.flow_id)
        session.status = FlowState.AWAITING_CALLBACK
        self._sessions[session.flow_id] = session

    def _finish(
        self,
        session: FlowSession,
        state: FlowState,
        *,
        record: TokenRecord | None = None,
        exc: Exception | None = None,
    ) -> AuthFlowResult:
        self._sessions.pop(session.flow_id, None)
        session.status = state
        if session.timeout_handle is not None:
            session.timeout_handle.cancel()
            session.timeout_handle = None

        result = AuthFlowResult(
            success=state is FlowState.AUTHENTICATED,
            flow_id=session.flow_id,
            provider_id=session.provider_id,
            record=record,
            error=str(exc) if exc is not None else None,
            state=state,
            exception=exc,
        )
        self._finished[session.flow_id] = result
        while len(self._finished) > self._max_finished:
            del self._finished[next(iter(self._finished))]
        if session.result is not None and not session.result.done():
            session.result.set_result(result)
        return result

    def _expire(self, flow_id: str) -> None:
        session = self._sessions.get(flow_id)
        if session is None or session.status is not FlowState.AWAITING_CALLBACK:
            return
        msg = f"Authentication timed out after {self.auth_timeout}s"
        logger.warning("Auth flow %s for %s timed out", flow_id, session.provider_id)
        self._finish(
            session,
            FlowState.TIMED_OUT,
            exc=AuthFlowTimeout(
                msg, timeout=self.auth_timeout, provider=session.provider_id, flow_id=flow_id
            ),
        )

    def cancel(self, flow_id: str) -> bool:
        """Cancel a pending flow. Returns True if it was pending."""
        session = self._sessions.get(flow_id)
        if session is None:
            return False
        logger.info("Auth flow %s for %s cancelled", flow_id, session.provider_id)
        self._finish(
            session,
            FlowState.CANCELLED,
            exc=AuthFlowCancelled(
                "Authentication flow was cancelled", provider=session.provider_id, flow_id=flow_id
            ),
        )
        return True

    def cancel_all(self) -> None:
        """Cancel every pending flow."""
        for flow_id in list(self._sessions):
            self.cancel(flow_id)

    async def wait_for_result(self, flow_id: str) -> AuthFlowResult:
        """Wait until a flow finishes.

        The flow's own timeout bounds the wait.

        Raises
        ------
        NoActiveSession
            If ``flow_id`` was never issued.
        """
        finished = self._finished.get(flow_id)
        if finished is not None:
            return finished
        session = self._sessions.get(flow_id)
        if session is None or session.result is None:
            raise NoActiveSession("Authentication failed", flow_id=flow_id)
        return await asyncio.shield(session.result)

    async def _open_browser(self, session: FlowSession, url: str) -> None:
        if self._browser is None:
            logger.info("Open this URL to authenticate: %s", url)
            return
        try:
            await _maybe_await(self._browser(url))
        except Exception:
            self.cancel(session.flow_id)
            raise

    # ── Starting flows ──────────────────────────────────────────────

    async def _require_config(self, provider_id: str) -> ProviderConfig:
        config = await self.config_store.get(provider_id)
        if config is None or not config.configured:
            msg = f"Provider {provider_id} is not configured"
            raise ProviderNotConfigured(msg, provider=provider_id)
        return config

    async def _get_host_token(self) -> str | None:
        if self._host_token is None:
            return None
        return await _maybe_await(self._host_token())  # type: ignore[no-any-return]

    async def start_flow(self, provider_id: str) -> FlowStart:
        """Start a direct authorization code flow.

        Parameters
        ----------
        provider_id : str
            A provider with a configured client id.

        Returns
        -------
        FlowStart
            The flow id (required by ``handle_callback``) and the
            authorization URL.

        Raises
        ------
        ProviderNotConfigured
            If the provider is unknown or has no client id.
        """
        config = await self._require_config(provider_id)
        pkce = PKCEChallenge.generate(self._pkce_length)
        session = FlowSession(
            flow_id=secrets.token_urlsafe(16),
            kind=FlowKind.DIRECT,
            provider_id=provider_id,
            state=generate_state(),
            created_at=self._clock(),
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
        )
        url = self.oauth_client.build_authorize_url(config, session.state, pkce.challenge)
        self._register(session)
        logger.info("Auth flow %s started for %s", session.flow_id, provider_id)
        await self._open_browser(session, url)
        return FlowStart(flow_id=session.flow_id, provider_id=provider_id, authorization_url=url)

    async def _start_proxied(
        self,
        kind: FlowKind,
        provider_id: str,
        authorization: ServerAuthorization,
        local_state: str,
        server_id: str | None,
        host_token: str | None,
    ) -> FlowStart:
        session = FlowSession(
            flow_id=secrets.token_urlsafe(16),
            kind=kind,
            provider_id=provider_id,
            state=authorization.state or local_state,
            created_at=self._clock(),
            session_id=authorization.session_id,
            server_id=server_id,
            host_token=host_token,
        )
        self._register(session)
        logger.info(
            "Auth flow %s started for %s via %s", session.flow_id, provider_id, kind.value
        )
        await self._open_browser(session, authorization.authorization_url)
        return FlowStart(
            flow_id=session.flow_id,
            provider_id=provider_id,
            authorization_url=authorization.authorization_url,
        )

    async def start_server_proxied_flow(self, server_id: str, provider: str) -> FlowStart:
        """Start a flow brokered by a registered proxy server.

        Parameters
        ----------
        server_id : str
            Id of a registered ``ServerProviderDescriptor``.
        provider : str
            Provider name as known to the proxy (e.g. "google"); also the
            id the resulting tokens are stored under.

        Raises
        ------
        ServerProviderNotFound
            If ``server_id`` is not registered.
        ServerProxyError
            If the proxy does not return an authorization URL.
        ValueError
            If ``provider`` is not usable as a storage id.
        """
        validate_provider_id(provider)
        server = self.servers.get(server_id)
        host_token = await self._get_host_token()
        state = generate_state()
        authorization = await self.proxy_client.authorize(server, provider, state, host_token)
        return await self._start_proxied(
            FlowKind.SERVER, provider, authorization, state, server_id, host_token
        )

    async def start_onboarding_flow(self) -> FlowStart:
        """Start the onboarding flow from the bootstrap endpoint.

        No bearer token is sent when fetching the authorization URL.
        """
        authorization = await self.proxy_client.bootstrap(self.onboarding.bootstrap_url)
        return await self._start_proxied(
            FlowKind.ONBOARDING,
            self.onboarding.provider_id,
            authorization,
            generate_state(),
            None,
            await self._get_host_token(),
        )

    async def fetch_server_providers(self, server_id: str) -> list[ServerProviderInfo]:
        """List the providers a registered proxy server can broker."""
        server = self.servers.get(server_id)
        return await self.proxy_client.list_providers(server, await self._get_host_token())

    # ── Callbacks ───────────────────────────────────────────────────

    def _fail(self, session: FlowSession, exc: AuthenticationError) -> AuthenticationError:
        self._finish(session, FlowState.FAILED, exc=exc)
        return exc

    async def handle_callback(
        self, flow_id: str | None, payload: Mapping[str, str | None]
    ) -> TokenRecord:
        """Complete a flow from its redirect callback.

        Checks run in order: provider-reported error, known flow, state
        match, presence of a code. The state check happens before any
        network call.

        Parameters
        ----------
        flow_id : str or None
            The id returned when the flow started.
        payload : mapping
            ``code``, ``state``, ``error``, ``error_description`` and
            optionally ``session_id`` from the redirect.

        Returns
        -------
        TokenRecord
            The persisted record.

        Raises
        ------
        AuthenticationError
            Provider-reported error, missing code, or a failed exchange.
        NoActiveSession
            If the flow is unknown or already finished.
        StateMismatch
            If the callback state differs from the one issued.
        """
        session = self._sessions.get(flow_id) if flow_id else None

        if payload.get("error"):
            reason = payload.get("error_description") or payload.get("error")
            provider_id = session.provider_id if session else None
            logger.warning("Provider returned error for flow %s: %s", flow_id, reason)
            exc: AuthenticationError = AuthenticationError(
                f"OAuth error: {reason}", provider=provider_id, flow_id=flow_id
            )
            if session is not None:
                self._fail(session, exc)
            raise exc

        if session is None:
            logger.warning("Callback for unknown or finished flow %s ignored", flow_id)
            raise NoActiveSession("Authentication failed", flow_id=flow_id)

        state = payload.get("state") or ""
        if not secrets.compare_digest(state.encode(), session.state.encode()):
            logger.warning(
                "State mismatch for flow %s (%s); possible CSRF attempt",
                session.flow_id,
                session.provider_id,
            )
            raise self._fail(
                session,
                StateMismatch(
                    "Authentication failed", provider=session.provider_id, flow_id=session.flow_id
                ),
            )

        code = payload.get("code")
        if not code:
            raise self._fail(
                session,
                AuthenticationError(
                    "No authorization code in callback",
                    provider=session.provider_id,
                    flow_id=session.flow_id,
                ),
            )

        # One-shot: later callbacks for this flow see NoActiveSession
        self._sessions.pop(session.flow_id, None)
        session.status = FlowState.EXCHANGING_CODE

        try:
            if session.kind is FlowKind.DIRECT:
                record = await self._exchange_direct(session, code)
            else:
                record = await self._exchange_proxied(session, code, payload.get("session_id"))
            saved = await self.token_store.store(record)
            if session.kind is FlowKind.ONBOARDING:
                await self._complete_onboarding(saved)
        except AuthenticationError as exc_:
            if exc_.flow_id is None:
                exc_.flow_id = exc_.context["flow_id"] = session.flow_id
            self._fail(session, exc_)
            raise
        except (EncryptionError, OSError) as exc_:
            logger.exception("Failed to persist tokens for %s", session.provider_id)
            msg = "Failed to store tokens"
            raise self._fail(
                session,
                AuthenticationError(msg, provider=session.provider_id, flow_id=session.flow_id),
            ) from exc_
        except Exception as exc_:
            logger.exception(
                "Auth flow %s for %s failed unexpectedly", session.flow_id, session.provider_id
            )
            raise self._fail(
                session,
                AuthenticationError(
                    "Authentication failed", provider=session.provider_id, flow_id=session.flow_id
                ),
            ) from exc_

        self._finish(session, FlowState.AUTHENTICATED, record=saved)
        logger.info("Auth flow %s completed for %s", session.flow_id, session.provider_id)
        return saved

    async def _exchange_direct(self, session: FlowSession, code: str) -> TokenRecord:
        config = await self._require_config(session.provider_id)
        raw = await self.oauth_client.exchange_code(config, code, session.code_verifier)
        issued_at = self._clock()

        user: UserProfile | None = None
        info = await self.oauth_client.get_userinfo(config, raw["access_token"])
        if info:
            user = normalize_user_profile(config.id, info)
        return TokenRecord.from_token_response(config.id, raw, issued_at, user=user)

    def _server_for(self, session: FlowSession) -> ServerProviderDescriptor:
        if session.kind is FlowKind.ONBOARDING:
            return ServerProviderDescriptor(
                id=self.onboarding.provider_id,
                name="Onboarding",
                url=self.onboarding.server_url,
            )
        return self.servers.get(session.server_id or "")

    async def _exchange_proxied(
        self, session: FlowSession, code: str, callback_session_id: str | None
    ) -> TokenRecord:
        server = self._server_for(session)
        raw = await self.proxy_client.exchange_code(
            server,
            session.provider_id,
            code=code,
            state=session.state,
            session_id=callback_session_id or session.session_id,
            access_token=session.host_token,
        )
        issued_at = self._clock()
        user_data = raw.get("user")
        user = (
            UserProfile.from_dict(user_data, session.provider_id)
            if isinstance(user_data, dict)
            else None
        )
        return TokenRecord.from_token_response(session.provider_id, raw, issued_at, user=user)

    async def _complete_onboarding(self, record: TokenRecord) -> None:
        if self.onboarding_store is not None:
            await self.onboarding_store.save(record)
        if self.repository_forker is None:
            return
        try:
            await _maybe_await(self.repository_forker.initialize_token(record.access_token))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Repository client rejected onboarding token: %s", exc)
            return
        for full_name in self.onboarding.fork_repositories:
            owner, _, repo = full_name.partition("/")
            try:
                await _maybe_await(self.repository_forker.create_fork(owner, repo))
                logger.info("Forked %s", full_name)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to fork %s: %s", full_name, exc)

    # ── Refresh ─────────────────────────────────────────────────────

    async def refresh(self, provider_id: str, refresh_token: str) -> TokenRecord:
        """Exchange a refresh token for a new record.

        The prior refresh token is kept when the provider omits a new one.
        The returned record is not persisted here.

        Raises
        ------
        ProviderNotConfigured
            If there is no usable configuration for ``provider_id``.
        TokenRefreshError
            If the token endpoint rejects the refresh.
        """
        config = await self._require_config(provider_id)
        raw = await self.oauth_client.refresh(config, refresh_token)
        record = TokenRecord.from_token_response(
            provider_id, raw, self._clock(), previous_refresh_token=refresh_token
        )
        logger.info("Refreshed tokens for %s", provider_id)
        return record

    async def close(self) -> None:
        """Cancel pending flows and close HTTP clients."""
        self.cancel_all()
        await self.oauth_client.close()
        await self.proxy_client.close()
