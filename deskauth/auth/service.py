"""Service facade wiring key resolution, storage and flows together.

``OAuthService`` is the interface consumed by the rest of a desktop
application: start a flow, deliver its callback, ask for a live access
token, log out, and report status.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes,too-many-public-methods

from __future__ import annotations

import asyncio
import logging
import time
import webbrowser

from typing import TYPE_CHECKING, Any, Callable, Mapping

from ..config import DeskAuthSettings, get_settings
from ..crypto import CipherService, KeyResolver
from ..exceptions import AuthenticationError, KeyRotationRefused
from .callback_server import CallbackPayload, OAuthCallbackServer
from .client import OAuthClient
from .flow import AuthFlowManager, BrowserLauncher, HostTokenGetter, RepositoryForker
from .legacy_store import LegacyTokenStore
from .onboarding import ONBOARDING_FILE_NAME, OnboardingTokenStore
from .providers import EncryptedProviderConfigStore, ProviderConfig, builtin_providers
from .server_proxy import ServerProviderInfo, ServerProxyClient
from .token_store import PerProviderTokenStore
from .types import (
    AuthFlowResult,
    FlowStart,
    ProviderStatus,
    ServerProviderDescriptor,
    TokenRecord,
)


if TYPE_CHECKING:
    import httpx

    from ..crypto import KeySource
    from .providers import ProviderConfigStore


logger = logging.getLogger("deskauth.auth")


class OAuthService:
    """Entry point for OAuth flows and token lifecycle.

    Parameters
    ----------
    settings : DeskAuthSettings, optional
        Configuration; defaults to the cached global settings.
    key_source : KeySource, optional
        Supplies the encryption key. When omitted a ``KeyResolver`` is
        built from the storage settings.
    config_store : ProviderConfigStore, optional
        Provider configurations. Defaults to encrypted files in the
        storage directory seeded with the built-in providers.
    http_client : httpx.AsyncClient, optional
        Shared HTTP client for token endpoints and proxies.
    repository_forker : RepositoryForker, optional
        Invoked after a successful onboarding.
    host_token : callable, optional
        Returns the host application's own access token for proxies.
    browser : callable, optional
        Opens authorization URLs. Defaults to ``webbrowser.open`` when
        ``auth.open_browser`` is enabled.
    clock : callable
        Returns the current Unix time.
    """

    def __init__(
        self,
        settings: DeskAuthSettings | None = None,
        *,
        key_source: KeySource | None = None,
        config_store: ProviderConfigStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        repository_forker: RepositoryForker | None = None,
        host_token: HostTokenGetter | None = None,
        browser: BrowserLauncher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        storage = self.settings.storage
        auth = self.settings.auth
        self.storage_dir = storage.resolved_directory

        self.key_resolver: KeyResolver | None = None
        if key_source is None:
            self.key_resolver = KeyResolver(
                storage.resolved_key_file,
                operator_key=storage.encryption_key or None,
                max_age_days=storage.key_max_age_days,
                clock=clock,
            )
            key_source = self.key_resolver
        self.cipher = CipherService(key_source)

        self.config_store = config_store or EncryptedProviderConfigStore(
            self.storage_dir,
            self.cipher,
            builtins=builtin_providers(self.settings.providers),
            clock=clock,
        )
        self.tokens = PerProviderTokenStore(
            self.storage_dir,
            self.cipher,
            refresh_buffer_seconds=auth.refresh_buffer_seconds,
            clock=clock,
        )
        self.legacy_tokens = LegacyTokenStore(self.storage_dir, self.cipher)
        self.onboarding_tokens = OnboardingTokenStore(
            self.storage_dir / ONBOARDING_FILE_NAME, self.cipher
        )

        if browser is None and auth.open_browser:
            browser = webbrowser.open
        self.flows = AuthFlowManager(
            self.config_store,
            self.tokens,
            oauth_client=OAuthClient(http_client, timeout=auth.http_timeout_seconds),
            proxy_client=ServerProxyClient(http_client, timeout=auth.http_timeout_seconds),
            onboarding=self.settings.onboarding,
            onboarding_store=self.onboarding_tokens,
            repository_forker=repository_forker,
            host_token=host_token,
            browser=browser,
            auth_timeout=auth.auth_timeout_seconds,
            clock=clock,
        )

        self._callback_server: OAuthCallbackServer | None = None
        self._redirect_tasks: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> OAuthService:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare storage, migrate legacy tokens and refresh expired ones."""
        loop = asyncio.get_running_loop()
        if self.key_resolver is not None:
            await loop.run_in_executor(None, self.key_resolver.resolve)
        await self.tokens.initialize()
        if isinstance(self.config_store, EncryptedProviderConfigStore):
            await self.config_store.initialize()

        if self.settings.auth.migrate_on_startup:
            await self.migrate()
        if self.settings.auth.refresh_on_startup:
            await self.refresh_expired_providers()

    async def close(self) -> None:
        """Cancel pending flows, stop the redirect listener and close HTTP clients."""
        await self.flows.close()
        if self._callback_server is not None:
            self._callback_server.stop()
            self._callback_server = None
        for task in list(self._redirect_tasks):
            task.cancel()

    # ── Redirect delivery ───────────────────────────────────────────

    def _ensure_listener(self) -> None:
        if not self.settings.auth.start_callback_server or self._callback_server is not None:
            return
        self._callback_server = OAuthCallbackServer(
            self._on_redirect,
            host=self.settings.auth.callback_host,
            port=self.settings.auth.callback_port,
            loop=asyncio.get_running_loop(),
        )
        self._callback_server.start()

    def _on_redirect(self, payload: CallbackPayload) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_redirect(payload))
        self._redirect_tasks.add(task)
        task.add_done_callback(self._redirect_tasks.discard)

    async def handle_redirect(self, payload: Mapping[str, str | None]) -> TokenRecord | None:
        """Route a raw redirect to the pending flow that issued its state.

        Rejections are logged; the flow's own result carries the failure.
        """
        flow_id = self.flows.flow_id_for_state(payload.get("state"))
        try:
            return await self.flows.handle_callback(flow_id, payload)
        except AuthenticationError as exc:
            logger.warning("OAuth redirect rejected: %s", exc)
            return None

    # ── Flows ───────────────────────────────────────────────────────

    async def start_flow(self, provider_id: str) -> FlowStart:
        """Start a direct flow for a configured provider."""
        self._ensure_listener()
        return await self.flows.start_flow(provider_id)

    async def start_server_proxied_flow(self, server_id: str, provider: str) -> FlowStart:
        """Start a flow brokered by a registered proxy server."""
        self._ensure_listener()
        return await self.flows.start_server_proxied_flow(server_id, provider)

    async def start_onboarding_flow(self) -> FlowStart:
        """Start the onboarding flow."""
        self._ensure_listener()
        return await self.flows.start_onboarding_flow()

    async def handle_callback(
        self, flow_id: str, payload: Mapping[str, str | None]
    ) -> TokenRecord:
        """Complete a flow from its callback payload."""
        return await self.flows.handle_callback(flow_id, payload)

    async def authenticate(self, provider_id: str) -> AuthFlowResult:
        """Run a direct flow to completion.

        Raises
        ------
        AuthenticationError
            The error that ended the flow, including ``AuthFlowTimeout``
            and ``AuthFlowCancelled``.
        """
        start = await self.start_flow(provider_id)
        result = await self.flows.wait_for_result(start.flow_id)
        result.raise_for_error()
        return result

    def cancel_flow(self, flow_id: str) -> bool:
        """Cancel a pending flow."""
        return self.flows.cancel(flow_id)

    # ── Tokens ──────────────────────────────────────────────────────

    async def valid_access_token(self, provider_id: str) -> str | None:
        """Return a live access token, refreshing it when needed."""
        return await self.tokens.valid_access_token(provider_id, self.flows.refresh)

    async def refresh(self, provider_id: str, refresh_token: str) -> TokenRecord:
        """Refresh and persist a provider's tokens."""
        record = await self.flows.refresh(provider_id, refresh_token)
        return await self.tokens.store(record)

    async def logout(self, provider_id: str) -> bool:
        """Forget a provider's tokens."""
        return await self.tokens.remove(provider_id)

    async def status(self) -> dict[str, ProviderStatus]:
        """Status of every provider with stored tokens."""
        return await self.tokens.status()

    async def migrate(self, legacy_records: Mapping[str, TokenRecord] | None = None) -> list[str]:
        """Copy legacy single-file tokens into per-provider files.

        Parameters
        ----------
        legacy_records : mapping, optional
            Records to migrate; read from the legacy file when omitted.
        """
        if legacy_records is None:
            legacy_records = await self.legacy_tokens.load_all()
        if not legacy_records:
            return []
        return await self.tokens.migrate(legacy_records)

    async def refresh_expired_providers(self) -> dict[str, bool]:
        """Refresh every stored provider whose token is expired.

        Providers are refreshed one at a time. A provider without a
        refresh token is skipped; a failed refresh removes its record.

        Returns
        -------
        dict[str, bool]
            Provider id to whether it still has a live token.
        """
        results: dict[str, bool] = {}
        for provider_id, status in (await self.tokens.status()).items():
            if not status.authenticated or not status.expired:
                continue
            record = await self.tokens.get(provider_id)
            if record is None or not record.refresh_token:
                logger.debug("Skipping refresh for %s: no refresh token", provider_id)
                continue
            token = await self.tokens.valid_access_token(provider_id, self.flows.refresh)
            results[provider_id] = token is not None
        if results:
            logger.info("Startup refresh: %s", results)
        return results

    async def clear_all_tokens(self) -> list[str]:
        """Remove every provider's tokens."""
        return await self.tokens.clear()

    def storage_info(self) -> dict[str, Any]:
        """Describe stored credential files."""
        info = self.tokens.storage_info()
        info["legacy"] = str(self.legacy_tokens.path) if self.legacy_tokens.path.exists() else None
        info["onboarding"] = (
            str(self.onboarding_tokens.path) if self.onboarding_tokens.path.exists() else None
        )
        return info

    # ── Providers ───────────────────────────────────────────────────

    async def list_providers(self) -> list[ProviderConfig]:
        """All provider configurations, sorted by name."""
        return await self.config_store.list_all()

    async def available_providers(self) -> list[ProviderConfig]:
        """Provider configurations that can start a flow."""
        return await self.config_store.get_available()

    def add_server_provider(self, descriptor: ServerProviderDescriptor) -> None:
        """Register a proxy server."""
        self.flows.servers.add(descriptor)

    def remove_server_provider(self, server_id: str) -> bool:
        """Unregister a proxy server."""
        return self.flows.servers.remove(server_id)

    def get_server_provider(self, server_id: str) -> ServerProviderDescriptor:
        """Look up a registered proxy server.

        Raises
        ------
        ServerProviderNotFound
            If no server is registered under ``server_id``.
        """
        return self.flows.servers.get(server_id)

    def list_server_providers(self) -> list[ServerProviderDescriptor]:
        """Registered proxy servers."""
        return self.flows.servers.list_all()

    async def fetch_server_providers(self, server_id: str) -> list[ServerProviderInfo]:
        """Providers a registered proxy server can broker."""
        return await self.flows.fetch_server_providers(server_id)

    # ── Onboarding ──────────────────────────────────────────────────

    async def has_onboarding_token(self) -> bool:
        """Whether an onboarding token is stored."""
        return await self.onboarding_tokens.exists()

    async def clear_onboarding_token(self) -> bool:
        """Delete the stored onboarding token."""
        return await self.onboarding_tokens.clear()

    # ── Keys ────────────────────────────────────────────────────────

    def key_info(self) -> dict[str, Any]:
        """Describe the active encryption key without exposing it."""
        if self.key_resolver is None:
            return {"source": "injected", "createdAt": None, "ageDays": None, "keyFile": None}
        return self.key_resolver.info()

    def regenerate_key(self) -> dict[str, Any]:
        """Replace the generated key.

        Existing credential files become unreadable and are treated as
        absent from then on.

        Raises
        ------
        KeyRotationRefused
            If an operator key is active or the key was injected.
        """
        if self.key_resolver is None:
            raise KeyRotationRefused("Cannot regenerate an injected encryption key")
        self.key_resolver.regenerate()
        self.tokens.invalidate()
        logger.warning("Encryption key regenerated; previously stored credentials are unreadable")
        return self.key_resolver.info()
