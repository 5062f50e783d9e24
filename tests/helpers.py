"""Test doubles shared across the suite."""

from __future__ import annotations

import json

from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from deskauth.auth.pkce import compute_challenge

from tests.constants import START_TIME


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        self.now += seconds


def query_params(url: str) -> dict[str, str]:
    """Flatten the query string of ``url``."""
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def form_params(request: httpx.Request) -> dict[str, str]:
    """Flatten a form-encoded request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class FakeIdentityProvider:
    """Token and user-info endpoints of an OAuth2 provider.

    Authorization codes are bound to the PKCE challenge seen on the
    authorization URL, and exchanges with the wrong verifier are rejected
    with ``invalid_grant`` the way a real provider would.
    """

    def __init__(self, expires_in: int | None = 3600) -> None:
        self.expires_in = expires_in
        self.codes: dict[str, str | None] = {}
        self.token_requests: list[dict[str, str]] = []
        self.refresh_count = 0
        self.fail_refresh = False
        self.rotate_refresh_token = False
        self.userinfo: dict[str, Any] | None = {
            "sub": "u-1",
            "email": "jane@acme.test",
            "name": "Jane Doe",
            "tenant": "acme-corp",
        }

    def authorize(self, authorization_url: str, code: str = "abc123") -> dict[str, str]:
        """Simulate the user approving the request; returns the redirect payload."""
        params = query_params(authorization_url)
        self.codes[code] = params.get("code_challenge")
        return {"code": code, "state": params["state"]}

    def _token_body(self, access_token: str, refresh_token: str | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "scope": "openid email",
        }
        if refresh_token is not None:
            body["refresh_token"] = refresh_token
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        return body

    def handler(self, request: httpx.Request) -> httpx.Response:
        """``httpx.MockTransport`` handler."""
        if request.url.path == "/userinfo":
            if self.userinfo is None:
                return httpx.Response(500, json={"error": "server_error"})
            return httpx.Response(200, json=self.userinfo)
        if request.url.path != "/token":
            return httpx.Response(404)

        form = form_params(request)
        self.token_requests.append(form)
        if form.get("grant_type") == "refresh_token":
            self.refresh_count += 1
            if self.fail_refresh:
                return httpx.Response(400, json={"error": "invalid_grant"})
            new_refresh = f"rt-{self.refresh_count}" if self.rotate_refresh_token else None
            return httpx.Response(
                200, json=self._token_body(f"at-refreshed-{self.refresh_count}", new_refresh)
            )

        code = form.get("code", "")
        if code not in self.codes:
            return httpx.Response(400, json={"error": "invalid_grant"})
        challenge = self.codes.pop(code)
        if challenge is not None:
            verifier = form.get("code_verifier")
            if not verifier or compute_challenge(verifier) != challenge:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "PKCE verification failed"},
                )
        return httpx.Response(200, json=self._token_body("at-1", "rt-1"))


class FakeProxyServer:
    """A remote OAuth proxy exposing the ``/api/oauth`` endpoints."""

    def __init__(self, bootstrap_path: str = "/auth/keyboard_github/onboarding") -> None:
        self.bootstrap_path = bootstrap_path
        self.requests: list[httpx.Request] = []
        self.exchanges: list[dict[str, Any]] = []
        self.issued_states: list[str] = []
        self.fail_exchange = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        """``httpx.MockTransport`` handler."""
        self.requests.append(request)
        path = request.url.path

        if path == "/api/oauth/providers":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "providers": [
                        {"name": "google", "scopes": ["email"], "configured": True},
                        {"name": "slack", "scopes": [], "configured": False},
                    ],
                },
            )

        if path.startswith("/api/oauth/authorize/"):
            provider = path.rsplit("/", 1)[-1]
            state = request.url.params.get("state", "")
            self.issued_states.append(state)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "authorization_url": f"https://{provider}.test/authorize?state={state}",
                    "session_id": "sess-1",
                    "state": state,
                },
            )

        if path == self.bootstrap_path:
            state = "onboard-state"
            self.issued_states.append(state)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "authorization_url": f"https://github.com/login/oauth/authorize?state={state}",
                    "session_id": "sess-onboard",
                    "state": state,
                },
            )

        if path.startswith("/api/oauth/token/"):
            body = json.loads(request.content)
            self.exchanges.append(body)
            if self.fail_exchange:
                return httpx.Response(
                    200, json={"success": False, "error": "Session expired"}
                )
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "access_token": "proxy-at",
                    "refresh_token": "proxy-rt",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                    "scope": "email profile",
                    "user": {
                        "id": "123",
                        "email": "sam@example.com",
                        "name": "Sam",
                        "login": "sam",
                    },
                },
            )

        return httpx.Response(404, json={"success": False, "error": "Not found"})
