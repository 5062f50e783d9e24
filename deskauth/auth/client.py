"""HTTP client for direct OAuth2 authorization code exchanges.

Builds authorization URLs and talks to a provider's token and user-info
endpoints for providers whose client credentials are held locally.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from ..exceptions import TokenExchangeFailed, TokenRefreshError
from ..log import redact_sensitive_data


if TYPE_CHECKING:
    from .providers import ProviderConfig

logger = logging.getLogger("deskauth.auth")


class OAuthClient:
    """Direct OAuth2 client shared across providers.

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

    @staticmethod
    def build_authorize_url(
        config: ProviderConfig,
        state: str,
        code_challenge: str | None = None,
    ) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        config : ProviderConfig
            The provider being authorized against.
        state : str
            CSRF protection nonce.
        code_challenge : str, optional
            S256 PKCE challenge; only sent when the provider uses PKCE.

        Returns
        -------
        str
            The full authorization URL.
        """
        params: dict[str, str] = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "response_type": "code",
            "state": state,
        }
        if config.use_pkce and code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(config.additional_params)
        separator = "&" if "?" in config.authorization_url else "?"
        return f"{config.authorization_url}{separator}{urlencode(params)}"

    async def _post_token_request(
        self, config: ProviderConfig, data: dict[str, str]
    ) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            config.token_url,
            data=data,
            headers={"Accept": "application/json"},
        )

    async def exchange_code(
        self,
        config: ProviderConfig,
        code: str,
        code_verifier: str | None = None,
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        config : ProviderConfig
            The provider the code was issued by.
        code : str
            The authorization code from the callback.
        code_verifier : str, optional
            PKCE verifier; only sent when the provider uses PKCE.

        Returns
        -------
        dict[str, Any]
            The token endpoint's JSON response.

        Raises
        ------
        TokenExchangeFailed
            On a non-2xx response, a transport error, an ``error`` field
            in the response, or a response without an access token.
        """
        data: dict[str, str] = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "code": code,
            "grant_type": "authorization_code",
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret
        if config.use_pkce and code_verifier:
            data["code_verifier"] = code_verifier

        try:
            resp = await self._post_token_request(config, data)
            resp.raise_for_status()
            raw = resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"Token exchange failed: {exc.response.status_code}"
            raise TokenExchangeFailed(
                msg,
                status_code=exc.response.status_code,
                body=exc.response.text,
                provider=config.id,
            ) from exc
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise TokenExchangeFailed(msg, provider=config.id) from exc
        except ValueError as exc:
            msg = "Token endpoint returned invalid JSON"
            raise TokenExchangeFailed(msg, status_code=resp.status_code, provider=config.id) from exc

        if "error" in raw:
            logger.debug("Token endpoint error for %s: %s", config.id, redact_sensitive_data(raw))
            msg = f"Token exchange failed: {raw.get('error_description') or raw['error']}"
            raise TokenExchangeFailed(msg, status_code=resp.status_code, provider=config.id)
        if not raw.get("access_token"):
            msg = "Token exchange failed: response has no access token"
            raise TokenExchangeFailed(msg, status_code=resp.status_code, provider=config.id)
        return raw  # type: ignore[no-any-return]

    async def refresh(self, config: ProviderConfig, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        Parameters
        ----------
        config : ProviderConfig
            The provider that issued the refresh token.
        refresh_token : str
            The refresh token.

        Returns
        -------
        dict[str, Any]
            The token endpoint's JSON response.

        Raises
        ------
        TokenRefreshError
            If the refresh fails for any reason.
        """
        data: dict[str, str] = {
            "client_id": config.client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret

        try:
            resp = await self._post_token_request(config, data)
            resp.raise_for_status()
            raw = resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"Token refresh failed: {exc.response.status_code}"
            raise TokenRefreshError(msg, provider=config.id) from exc
        except httpx.HTTPError as exc:
            msg = f"Token refresh request failed: {exc}"
            raise TokenRefreshError(msg, provider=config.id) from exc
        except ValueError as exc:
            msg = "Token endpoint returned invalid JSON"
            raise TokenRefreshError(msg, provider=config.id) from exc

        if "error" in raw:
            msg = f"Token refresh failed: {raw.get('error_description') or raw['error']}"
            raise TokenRefreshError(msg, provider=config.id)
        if not raw.get("access_token"):
            msg = "Token refresh failed: response has no access token"
            raise TokenRefreshError(msg, provider=config.id)
        return raw  # type: ignore[no-any-return]

    async def get_userinfo(self, config: ProviderConfig, access_token: str) -> dict[str, Any] | None:
        """Fetch the user profile, or None if unavailable.

        A missing endpoint or a failed request never fails the caller.
        """
        if not config.userinfo_url:
            return None
        try:
            client = await self._get_client()
            resp = await client.get(
                config.userinfo_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=10.0,
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch user info for %s: %s", config.id, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("User info for %s is not a JSON object; ignoring it", config.id)
            return None
        return data
