"""Client for remote OAuth proxy servers.

A proxy server holds the real client credentials and brokers the
authorization code exchange on the desktop's behalf. The desktop only
sees the authorization URL, a proxy session id, and the final tokens
plus already-normalized user data.

Proxy API (all JSON, all carrying ``success``):

* ``GET  {url}/api/oauth/providers``
* ``GET  {url}/api/oauth/authorize/{provider}?state=...``
* ``POST {url}/api/oauth/token/{provider}``
"""

from __future__ import annotations

import logging

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from ..exceptions import ServerProviderNotFound, ServerProxyError, TokenExchangeFailed
from ..log import redact_sensitive_data
from .types import ServerProviderDescriptor


logger = logging.getLogger("deskauth.auth")


@dataclass(frozen=True)
class ServerAuthorization:
    """What a proxy returns when asked to start an authorization."""

    authorization_url: str
    session_id: str | None
    state: str | None


@dataclass(frozen=True)
class ServerProviderInfo:
    """A provider advertised by a proxy server."""

    name: str
    scopes: list[str] = field(default_factory=list)
    configured: bool = False


class ServerProviderRegistry:
    """In-memory registry of known proxy servers."""

    def __init__(self) -> None:
        self._servers: dict[str, ServerProviderDescriptor] = {}

    def add(self, descriptor: ServerProviderDescriptor) -> None:
        """Register (or replace) a proxy server."""
        self._servers[descriptor.id] = descriptor

    def remove(self, server_id: str) -> bool:
        """Unregister a proxy server. Returns True if it was known."""
        return self._servers.pop(server_id, None) is not None

    def get(self, server_id: str) -> ServerProviderDescriptor:
        """Return a registered proxy server.

        Raises
        ------
        ServerProviderNotFound
            If ``server_id`` is not registered.
        """
        try:
            return self._servers[server_id]
        except KeyError:
            msg = f"Server provider {server_id} not found"
            raise ServerProviderNotFound(msg, server_id=server_id) from None

    def list_all(self) -> list[ServerProviderDescriptor]:
        """Return all registered proxy servers."""
        return list(self._servers.values())


def _bearer(access_token: str | None) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


class ServerProxyClient:
    """HTTP client for proxy servers.

    Parameters
    ----------
    http_client : httpx.AsyncClient, optional
        Client to use. When omitted one is created lazily and owned
        by this object.
    timeout : float
        Request timeout in seconds for an owned client.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        provider: str | None,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send a request and return the body of a successful response.

        Raises
        ------
        ServerProxyError
            On transport errors, non-2xx responses, invalid JSON, or
            ``success: false``.
        """
        try:
            client = await self._get_client()
            resp = await client.request(method, url, headers=_bearer(access_token), **kwargs)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"Proxy request failed: {exc.response.status_code}"
            raise ServerProxyError(
                msg, status_code=exc.response.status_code, provider=provider
            ) from exc
        except httpx.HTTPError as exc:
            msg = f"Proxy request failed: {exc}"
            raise ServerProxyError(msg, provider=provider) from exc
        except ValueError as exc:
            msg = "Proxy returned invalid JSON"
            raise ServerProxyError(msg, status_code=resp.status_code, provider=provider) from exc

        if not isinstance(body, dict) or not body.get("success"):
            logger.debug("Unsuccessful proxy response from %s: %s", url, redact_sensitive_data(body))
            error = body.get("error") if isinstance(body, dict) else None
            msg = f"Proxy reported failure: {error or 'unknown error'}"
            raise ServerProxyError(msg, status_code=resp.status_code, provider=provider)
        return body

    async def list_providers(
        self, server: ServerProviderDescriptor, access_token: str | None = None
    ) -> list[ServerProviderInfo]:
        """List the providers a proxy server can broker."""
        body = await self._request_json(
            "GET",
            f"{server.base_url}/api/oauth/providers",
            provider=None,
            access_token=access_token,
        )
        return [
            ServerProviderInfo(
                name=p.get("name", ""),
                scopes=list(p.get("scopes") or []),
                configured=bool(p.get("configured")),
            )
            for p in body.get("providers") or []
            if isinstance(p, dict)
        ]

    @staticmethod
    def _authorization(body: dict[str, Any], provider: str | None) -> ServerAuthorization:
        url = body.get("authorization_url")
        if not url:
            msg = "Proxy response has no authorization URL"
            raise ServerProxyError(msg, provider=provider)
        return ServerAuthorization(
            authorization_url=url,
            session_id=body.get("session_id"),
            state=body.get("state"),
        )

    async def authorize(
        self,
        server: ServerProviderDescriptor,
        provider: str,
        state: str,
        access_token: str | None = None,
    ) -> ServerAuthorization:
        """Ask a proxy to start an authorization for ``provider``."""
        body = await self._request_json(
            "GET",
            f"{server.base_url}/api/oauth/authorize/{quote(provider, safe='')}",
            provider=provider,
            access_token=access_token,
            params={"state": state},
        )
        return self._authorization(body, provider)

    async def bootstrap(self, url: str) -> ServerAuthorization:
        """Fetch an onboarding authorization from a fixed endpoint.

        No bearer token is sent; onboarding runs before any credentials exist.
        """
        body = await self._request_json("GET", url, provider="onboarding")
        return self._authorization(body, "onboarding")

    async def exchange_code(
        self,
        server: ServerProviderDescriptor,
        provider: str,
        code: str,
        state: str,
        session_id: str | None,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        """Have the proxy exchange an authorization code.

        Returns
        -------
        dict[str, Any]
            Token fields plus normalized ``user`` data.

        Raises
        ------
        TokenExchangeFailed
            If the proxy rejects the exchange or returns no access token.
        """
        payload = {
            "code": code,
            "state": state,
            "session_id": session_id,
            "grant_type": "authorization_code",
        }
        try:
            body = await self._request_json(
                "POST",
                f"{server.base_url}/api/oauth/token/{quote(provider, safe='')}",
                provider=provider,
                access_token=access_token,
                json=payload,
            )
        except ServerProxyError as exc:
            msg = f"Token exchange failed: {exc.message}"
            raise TokenExchangeFailed(msg, status_code=exc.status_code, provider=provider) from exc
        if not body.get("access_token"):
            msg = "Token exchange failed: proxy returned no access token"
            raise TokenExchangeFailed(msg, provider=provider)
        return body
