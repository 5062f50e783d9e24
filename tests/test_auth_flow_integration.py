"""Tests for the OAuth2 flow controller."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from deskauth.auth.client import OAuthClient
from deskauth.auth.flow import AuthFlowManager
from deskauth.auth.onboarding import OnboardingTokenStore
from deskauth.auth.pkce import PKCEChallenge
from deskauth.auth.server_proxy import ServerProxyClient
from deskauth.auth.token_store import PerProviderTokenStore
from deskauth.auth.types import (
    FlowState,
    GenericProfile,
    GoogleProfile,
    ServerProviderDescriptor,
)
from deskauth.config import OnboardingSettings
from deskauth.exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    NoActiveSession,
    ProviderNotConfigured,
    ServerProviderNotFound,
    StateMismatch,
    TokenExchangeFailed,
)

from tests.helpers import FakeIdentityProvider, FakeProxyServer, query_params


if TYPE_CHECKING:
    from pathlib import Path

    from deskauth.auth.providers import MemoryProviderConfigStore
    from deskauth.crypto import CipherService

    from tests.helpers import FakeClock


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def idp() -> FakeIdentityProvider:
    """The acme identity provider."""
    return FakeIdentityProvider()


@pytest.fixture()
def proxy() -> FakeProxyServer:
    """A remote OAuth proxy."""
    return FakeProxyServer()


@pytest.fixture()
def token_store(storage_dir: Path, cipher: CipherService, clock: FakeClock) -> PerProviderTokenStore:
    """Encrypted token store."""
    return PerProviderTokenStore(storage_dir, cipher, clock=clock)


@pytest.fixture()
def onboarding_store(storage_dir: Path, cipher: CipherService) -> OnboardingTokenStore:
    """Onboarding slot."""
    return OnboardingTokenStore(storage_dir / "onboarding-token.encrypted", cipher)


@pytest.fixture()
def make_manager(
    config_store: MemoryProviderConfigStore,
    token_store: PerProviderTokenStore,
    onboarding_store: OnboardingTokenStore,
    idp: FakeIdentityProvider,
    proxy: FakeProxyServer,
    clock: FakeClock,
) -> Any:
    """Factory for an AuthFlowManager wired to the fakes."""

    def _make(**kwargs: Any) -> AuthFlowManager:
        idp_http = httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))
        proxy_http = httpx.AsyncClient(transport=httpx.MockTransport(proxy.handler))
        kwargs.setdefault("onboarding", OnboardingSettings(server_url="https://proxy.test"))
        manager = AuthFlowManager(
            config_store,
            token_store,
            oauth_client=OAuthClient(idp_http),
            proxy_client=ServerProxyClient(proxy_http),
            onboarding_store=onboarding_store,
            clock=clock,
            **kwargs,
        )
        manager.servers.add(
            ServerProviderDescriptor(id="corp", name="Corp", url="https://proxy.test")
        )
        return manager

    return _make


# ── Direct flow ─────────────────────────────────────────────────────


class TestDirectFlow:
    """End-to-end direct authorization code flow."""

    @pytest.mark.asyncio
    async def test_successful_flow(
        self,
        make_manager: Any,
        idp: FakeIdentityProvider,
        token_store: PerProviderTokenStore,
        clock: FakeClock,
    ) -> None:
        """Callback with code abc123 persists tokens and a normalized profile."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        assert start.provider_id == "acme"
        assert manager.flow_state(start.flow_id) is FlowState.AWAITING_CALLBACK

        params = query_params(start.authorization_url)
        assert params["code_challenge_method"] == "S256"

        record = await manager.handle_callback(
            start.flow_id, idp.authorize(start.authorization_url, code="abc123")
        )
        assert record.access_token == "at-1"
        assert record.refresh_token == "rt-1"
        assert record.expires_at == clock() + 3600
        assert record.stored_at == record.updated_at == clock()
        assert isinstance(record.user, GenericProfile)
        assert record.user.id == "u-1"
        assert record.user.extra == {"tenant": "acme-corp"}

        assert idp.token_requests[0]["code"] == "abc123"
        assert await token_store.get("acme") == record
        assert manager.flow_state(start.flow_id) is FlowState.AUTHENTICATED

        result = await manager.wait_for_result(start.flow_id)
        assert result.success
        assert result.record == record

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_hour(
        self, make_manager: Any, idp: FakeIdentityProvider, clock: FakeClock
    ) -> None:
        """A token response without expires_in gets one hour."""
        idp.expires_in = None
        manager = make_manager()
        start = await manager.start_flow("acme")
        record = await manager.handle_callback(
            start.flow_id, idp.authorize(start.authorization_url)
        )
        assert record.expires_at == clock() + 3600

    @pytest.mark.asyncio
    async def test_userinfo_failure_still_succeeds(
        self, make_manager: Any, idp: FakeIdentityProvider
    ) -> None:
        """A failing user-info endpoint leaves the profile empty."""
        idp.userinfo = None
        manager = make_manager()
        start = await manager.start_flow("acme")
        record = await manager.handle_callback(
            start.flow_id, idp.authorize(start.authorization_url)
        )
        assert record.user is None
        assert record.access_token == "at-1"

    @pytest.mark.asyncio
    async def test_code_bound_to_other_verifier_rejected(
        self,
        make_manager: Any,
        idp: FakeIdentityProvider,
        token_store: PerProviderTokenStore,
    ) -> None:
        """A code issued for a different challenge fails the exchange."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        payload = idp.authorize(start.authorization_url)
        idp.codes[payload["code"]] = PKCEChallenge.generate().challenge

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await manager.handle_callback(start.flow_id, payload)
        assert exc_info.value.flow_id == start.flow_id
        assert manager.flow_state(start.flow_id) is FlowState.FAILED
        assert await token_store.get("acme") is None

    @pytest.mark.asyncio
    async def test_concurrent_flows_are_independent(
        self, make_manager: Any, idp: FakeIdentityProvider
    ) -> None:
        """Two pending flows complete in either order."""
        manager = make_manager()
        first = await manager.start_flow("acme")
        second = await manager.start_flow("acme")
        assert first.flow_id != second.flow_id
        assert set(manager.pending_flows()) == {first.flow_id, second.flow_id}

        payload_2 = idp.authorize(second.authorization_url, code="code-2")
        payload_1 = idp.authorize(first.authorization_url, code="code-1")
        await manager.handle_callback(second.flow_id, payload_2)
        await manager.handle_callback(first.flow_id, payload_1)
        assert manager.pending_flows() == []

    @pytest.mark.asyncio
    async def test_flow_id_for_state(self, make_manager: Any) -> None:
        """A redirect's state finds its flow."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        state = query_params(start.authorization_url)["state"]
        assert manager.flow_id_for_state(state) == start.flow_id
        assert manager.flow_id_for_state("other") is None
        assert manager.flow_id_for_state(None) is None

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, make_manager: Any) -> None:
        """Unknown providers cannot start a flow."""
        with pytest.raises(ProviderNotConfigured, match="not configured"):
            await make_manager().start_flow("nope")

    @pytest.mark.asyncio
    async def test_browser_opened(self, make_manager: Any) -> None:
        """The browser is called once with the authorization URL."""
        browser = MagicMock()
        manager = make_manager(browser=browser)
        start = await manager.start_flow("acme")
        browser.assert_called_once_with(start.authorization_url)

    @pytest.mark.asyncio
    async def test_browser_failure_cancels_flow(self, make_manager: Any) -> None:
        """A browser that fails to open leaves no pending flow."""
        manager = make_manager(browser=MagicMock(side_effect=OSError("no display")))
        with pytest.raises(OSError, match="no display"):
            await manager.start_flow("acme")
        assert manager.pending_flows() == []


# ── Callback validation ─────────────────────────────────────────────


class TestCallbackValidation:
    """Rejected callbacks."""

    @pytest.mark.asyncio
    async def test_state_mismatch(
        self, make_manager: Any, idp: FakeIdentityProvider, token_store: PerProviderTokenStore
    ) -> None:
        """A wrong state fails before any network call and consumes the flow."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        payload = idp.authorize(start.authorization_url)

        with pytest.raises(StateMismatch) as exc_info:
            await manager.handle_callback(start.flow_id, {**payload, "state": "forged"})
        assert str(exc_info.value).startswith("Authentication failed")
        assert idp.token_requests == []
        assert await token_store.get("acme") is None
        assert manager.flow_state(start.flow_id) is FlowState.FAILED

        with pytest.raises(NoActiveSession):
            await manager.handle_callback(start.flow_id, payload)

    @pytest.mark.asyncio
    async def test_unknown_flow(self, make_manager: Any) -> None:
        """A callback for an id never issued is rejected."""
        with pytest.raises(NoActiveSession, match="Authentication failed"):
            await make_manager().handle_callback("nope", {"code": "c", "state": "s"})

    @pytest.mark.asyncio
    async def test_no_flow_id(self, make_manager: Any) -> None:
        """A callback that matched no flow is rejected."""
        with pytest.raises(NoActiveSession):
            await make_manager().handle_callback(None, {"code": "c", "state": "s"})

    @pytest.mark.asyncio
    async def test_replay_rejected(self, make_manager: Any, idp: FakeIdentityProvider) -> None:
        """The same callback delivered twice only succeeds once."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        payload = idp.authorize(start.authorization_url)
        await manager.handle_callback(start.flow_id, payload)
        with pytest.raises(NoActiveSession):
            await manager.handle_callback(start.flow_id, payload)
        assert len(idp.token_requests) == 1

    @pytest.mark.asyncio
    async def test_provider_error(self, make_manager: Any, idp: FakeIdentityProvider) -> None:
        """A provider-reported error fails the flow with its description."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        with pytest.raises(AuthenticationError, match="OAuth error: User denied"):
            await manager.handle_callback(
                start.flow_id,
                {"error": "access_denied", "error_description": "User denied", "state": "x"},
            )
        assert idp.token_requests == []
        result = await manager.wait_for_result(start.flow_id)
        assert result.state is FlowState.FAILED
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_missing_code(self, make_manager: Any, idp: FakeIdentityProvider) -> None:
        """A matching state without a code fails."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        state = idp.authorize(start.authorization_url)["state"]
        with pytest.raises(AuthenticationError, match="No authorization code"):
            await manager.handle_callback(start.flow_id, {"state": state, "code": None})
        assert manager.flow_state(start.flow_id) is FlowState.FAILED


# ── Timeout and cancellation ────────────────────────────────────────


class TestFlowLifecycle:
    """Timeouts, cancellation and waiting."""

    @pytest.mark.asyncio
    async def test_timeout(self, make_manager: Any, idp: FakeIdentityProvider) -> None:
        """A flow without a callback times out and is consumed."""
        manager = make_manager(auth_timeout=0.05)
        start = await manager.start_flow("acme")
        result = await asyncio.wait_for(manager.wait_for_result(start.flow_id), 5)
        assert result.state is FlowState.TIMED_OUT
        assert isinstance(result.exception, AuthFlowTimeout)
        with pytest.raises(AuthFlowTimeout):
            result.raise_for_error()

        with pytest.raises(NoActiveSession):
            await manager.handle_callback(start.flow_id, idp.authorize(start.authorization_url))

    @pytest.mark.asyncio
    async def test_cancel(self, make_manager: Any) -> None:
        """Cancelling resolves waiters with AuthFlowCancelled."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        waiter = asyncio.ensure_future(manager.wait_for_result(start.flow_id))
        await asyncio.sleep(0)
        assert manager.cancel(start.flow_id)
        result = await asyncio.wait_for(waiter, 5)
        assert result.state is FlowState.CANCELLED
        assert isinstance(result.exception, AuthFlowCancelled)
        assert not manager.cancel(start.flow_id)

    @pytest.mark.asyncio
    async def test_wait_for_unknown(self, make_manager: Any) -> None:
        """Waiting on an id never issued raises NoActiveSession."""
        with pytest.raises(NoActiveSession):
            await make_manager().wait_for_result("nope")

    @pytest.mark.asyncio
    async def test_unexpected_error_resolves_waiter(
        self,
        make_manager: Any,
        idp: FakeIdentityProvider,
        token_store: PerProviderTokenStore,
    ) -> None:
        """An unexpected error during completion still fails the flow for waiters."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        waiter = asyncio.ensure_future(manager.wait_for_result(start.flow_id))
        await asyncio.sleep(0)

        with (
            patch.object(token_store, "store", AsyncMock(side_effect=RuntimeError("boom"))),
            pytest.raises(AuthenticationError) as exc_info,
        ):
            await manager.handle_callback(start.flow_id, idp.authorize(start.authorization_url))
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.flow_id == start.flow_id

        result = await asyncio.wait_for(waiter, 5)
        assert not result.success
        assert result.state is FlowState.FAILED
        assert manager.flow_state(start.flow_id) is FlowState.FAILED

    @pytest.mark.asyncio
    async def test_finished_results_are_capped(self, make_manager: Any) -> None:
        """Only the most recent finished results are kept."""
        manager = make_manager(max_finished=2)
        flow_ids = [(await manager.start_flow("acme")).flow_id for _ in range(3)]
        for flow_id in flow_ids:
            manager.cancel(flow_id)
        assert manager.flow_state(flow_ids[0]) is None
        assert manager.flow_state(flow_ids[1]) is FlowState.CANCELLED
        assert manager.flow_state(flow_ids[2]) is FlowState.CANCELLED

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, make_manager: Any) -> None:
        """close() cancels every pending flow."""
        manager = make_manager()
        start = await manager.start_flow("acme")
        await manager.close()
        assert manager.flow_state(start.flow_id) is FlowState.CANCELLED


# ── Refresh ─────────────────────────────────────────────────────────


class TestRefresh:
    """Tests for AuthFlowManager.refresh()."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(
        self, make_manager: Any, idp: FakeIdentityProvider, clock: FakeClock
    ) -> None:
        """A response without a refresh token keeps the old one."""
        record = await make_manager().refresh("acme", "rt-1")
        assert record.access_token == "at-refreshed-1"
        assert record.refresh_token == "rt-1"
        assert record.expires_at == clock() + 3600
        assert idp.refresh_count == 1

    @pytest.mark.asyncio
    async def test_refresh_rotated_token(
        self, make_manager: Any, idp: FakeIdentityProvider
    ) -> None:
        """A new refresh token replaces the old one."""
        idp.rotate_refresh_token = True
        record = await make_manager().refresh("acme", "rt-old")
        assert record.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_refresh_unconfigured(self, make_manager: Any) -> None:
        """Refreshing a provider without configuration fails."""
        with pytest.raises(ProviderNotConfigured):
            await make_manager().refresh("google", "rt")


# ── Server-proxied flow ─────────────────────────────────────────────


class TestServerProxiedFlow:
    """Flows brokered by a proxy server."""

    @pytest.mark.asyncio
    async def test_successful_flow(
        self, make_manager: Any, proxy: FakeProxyServer, token_store: PerProviderTokenStore
    ) -> None:
        """The proxy exchanges the code and returns normalized user data."""
        manager = make_manager(host_token=lambda: "host-token")
        start = await manager.start_server_proxied_flow("corp", "google")
        assert start.authorization_url.startswith("https://google.test/authorize")

        state = proxy.issued_states[0]
        record = await manager.handle_callback(
            start.flow_id, {"code": "c", "state": state, "session_id": None}
        )
        assert record.provider_id == "google"
        assert record.access_token == "proxy-at"
        assert isinstance(record.user, GoogleProfile)
        assert record.user.email == "sam@example.com"
        assert record.user.extra == {"login": "sam"}

        assert proxy.exchanges == [
            {"code": "c", "state": state, "session_id": "sess-1", "grant_type": "authorization_code"}
        ]
        assert proxy.requests[-1].headers["authorization"] == "Bearer host-token"
        assert await token_store.get("google") == record

    @pytest.mark.asyncio
    async def test_async_host_token(self, make_manager: Any, proxy: FakeProxyServer) -> None:
        """The host token getter may be a coroutine function."""
        manager = make_manager(host_token=AsyncMock(return_value="async-token"))
        await manager.start_server_proxied_flow("corp", "google")
        assert proxy.requests[0].headers["authorization"] == "Bearer async-token"

    @pytest.mark.asyncio
    async def test_callback_session_id_wins(
        self, make_manager: Any, proxy: FakeProxyServer
    ) -> None:
        """A session id on the redirect overrides the stored one."""
        manager = make_manager()
        start = await manager.start_server_proxied_flow("corp", "google")
        await manager.handle_callback(
            start.flow_id,
            {"code": "c", "state": proxy.issued_states[0], "session_id": "from-redirect"},
        )
        assert proxy.exchanges[0]["session_id"] == "from-redirect"

    @pytest.mark.asyncio
    async def test_unknown_server(self, make_manager: Any) -> None:
        """Unregistered servers cannot start a flow."""
        with pytest.raises(ServerProviderNotFound):
            await make_manager().start_server_proxied_flow("missing", "google")

    @pytest.mark.asyncio
    async def test_invalid_provider_name(self, make_manager: Any, proxy: FakeProxyServer) -> None:
        """A provider name unusable as a storage id is rejected before the proxy is called."""
        manager = make_manager()
        with pytest.raises(ValueError, match="Invalid provider id"):
            await manager.start_server_proxied_flow("corp", "google drive")
        assert proxy.requests == []
        assert manager.pending_flows() == []

    @pytest.mark.asyncio
    async def test_exchange_failure(
        self, make_manager: Any, proxy: FakeProxyServer, token_store: PerProviderTokenStore
    ) -> None:
        """An unsuccessful proxy exchange fails the flow."""
        proxy.fail_exchange = True
        manager = make_manager()
        start = await manager.start_server_proxied_flow("corp", "google")
        with pytest.raises(TokenExchangeFailed):
            await manager.handle_callback(
                start.flow_id, {"code": "c", "state": proxy.issued_states[0]}
            )
        assert await token_store.get("google") is None
        assert manager.flow_state(start.flow_id) is FlowState.FAILED

    @pytest.mark.asyncio
    async def test_fetch_server_providers(self, make_manager: Any) -> None:
        """Providers advertised by a proxy are listed."""
        providers = await make_manager().fetch_server_providers("corp")
        assert [p.name for p in providers] == ["google", "slack"]


# ── Onboarding flow ─────────────────────────────────────────────────


class TestOnboardingFlow:
    """The onboarding flow and repository setup."""

    @staticmethod
    def _forker() -> MagicMock:
        forker = MagicMock()
        forker.initialize_token = AsyncMock()
        forker.create_fork = AsyncMock()
        return forker

    @pytest.mark.asyncio
    async def test_successful_onboarding(
        self,
        make_manager: Any,
        proxy: FakeProxyServer,
        onboarding_store: OnboardingTokenStore,
        token_store: PerProviderTokenStore,
    ) -> None:
        """Tokens are saved and both repositories are forked."""
        forker = self._forker()
        manager = make_manager(repository_forker=forker)
        start = await manager.start_onboarding_flow()
        assert start.provider_id == "onboarding"
        assert "authorization" not in proxy.requests[0].headers

        record = await manager.handle_callback(
            start.flow_id, {"code": "c", "state": "onboard-state"}
        )
        assert record.access_token == "proxy-at"
        assert proxy.requests[-1].url.path == "/api/oauth/token/onboarding"
        assert proxy.exchanges[0]["session_id"] == "sess-onboard"

        slot = await onboarding_store.load()
        assert slot is not None
        assert slot.access_token == "proxy-at"
        assert await token_store.get("onboarding") is not None

        forker.initialize_token.assert_awaited_once_with("proxy-at")
        assert [c.args for c in forker.create_fork.await_args_list] == [
            ("keyboard-dev", "codespace-executor"),
            ("keyboard-dev", "app-creator"),
        ]

    @pytest.mark.asyncio
    async def test_fork_failure_does_not_fail_flow(
        self, make_manager: Any, caplog: pytest.LogCaptureFixture
    ) -> None:
        """One failed fork is logged and the next is still attempted."""
        forker = self._forker()
        forker.create_fork.side_effect = [RuntimeError("already exists"), None]
        manager = make_manager(repository_forker=forker)
        start = await manager.start_onboarding_flow()
        await manager.handle_callback(start.flow_id, {"code": "c", "state": "onboard-state"})
        assert forker.create_fork.await_count == 2
        assert "Failed to fork keyboard-dev/codespace-executor" in caplog.text
        assert manager.flow_state(start.flow_id) is FlowState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_token_rejected_skips_forks(self, make_manager: Any) -> None:
        """If the repository client rejects the token no forks are attempted."""
        forker = self._forker()
        forker.initialize_token.side_effect = RuntimeError("bad credentials")
        manager = make_manager(repository_forker=forker)
        start = await manager.start_onboarding_flow()
        await manager.handle_callback(start.flow_id, {"code": "c", "state": "onboard-state"})
        forker.create_fork.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_repositories(self, make_manager: Any) -> None:
        """The repositories to fork come from settings."""
        forker = self._forker()
        onboarding = OnboardingSettings(
            server_url="https://proxy.test", fork_repositories=["me/one"]
        )
        manager = make_manager(repository_forker=forker, onboarding=onboarding)
        start = await manager.start_onboarding_flow()
        await manager.handle_callback(start.flow_id, {"code": "c", "state": "onboard-state"})
        forker.create_fork.assert_awaited_once_with("me", "one")
