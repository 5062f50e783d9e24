"""Localhost HTTP listener for OAuth2 redirects.

Binds to the port registered as the providers' redirect URI, extracts
``code``, ``state``, ``error``, ``error_description`` and ``session_id``
from ``/callback`` requests and hands them to a callback, optionally on
an asyncio event loop. The listener itself never interprets a payload;
matching it to a flow (and ignoring repeats) is the flow controller's job.
"""

# pylint: disable=C0103

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse


logger = logging.getLogger("deskauth.auth")

CallbackPayload = dict[str, str | None]

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>
  body {{ font-family: system-ui, sans-serif; display: flex; align-items: center;
         justify-content: center; height: 100vh; margin: 0; background: #f5f5f7; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: #fff; border-radius: 10px; }}
  h1 {{ font-size: 1.4rem; color: {color}; }}
</style></head>
<body><div class="card"><h1>{title}</h1><p>{message}</p></div></body></html>"""

_CALLBACK_FIELDS = ("code", "state", "error", "error_description", "session_id")


def _page(title: str, message: str, color: str = "#1a1a2e") -> str:
    return _PAGE.format(
        title=html.escape(title),
        message=html.escape(message, quote=True),
        color=color,
    )


def parse_callback_query(query: str) -> CallbackPayload:
    """Extract the OAuth2 callback fields from a query string.

    ``sessionId`` is accepted as an alias of ``session_id``.
    """
    params = parse_qs(query)
    payload: CallbackPayload = {name: params.get(name, [None])[0] for name in _CALLBACK_FIELDS}
    if payload["session_id"] is None:
        payload["session_id"] = params.get("sessionId", [None])[0]
    return payload


class OAuthCallbackServer:
    """Localhost HTTP server delivering OAuth2 redirects to a callback.

    Parameters
    ----------
    on_callback : callable
        Called with the parsed payload for every ``/callback`` request.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    loop : asyncio.AbstractEventLoop, optional
        When given, ``on_callback`` runs on this loop via
        ``call_soon_threadsafe``; otherwise on the server thread.
    """

    def __init__(
        self,
        on_callback: Callable[[CallbackPayload], Any],
        host: str = "127.0.0.1",
        port: int = 0,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._on_callback = on_callback
        self._host = host
        self._port = port
        self._loop = loop
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._actual_port: int = 0

    @property
    def running(self) -> bool:
        """Whether the listener is serving."""
        return self._server is not None

    @property
    def redirect_uri(self) -> str:
        """The redirect URI served by this listener."""
        return f"http://{self._host}:{self._actual_port}/callback"

    def _dispatch(self, payload: CallbackPayload) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._on_callback, payload)
        else:
            self._on_callback(payload)

    def start(self) -> str:
        """Start the listener on a daemon thread.

        Returns
        -------
        str
            The redirect URI being served.
        """
        if self._server is not None:
            return self.redirect_uri

        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 redirects."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                if parsed.path != "/callback":
                    self.send_error(404)
                    return

                payload = parse_callback_query(parsed.query)
                if payload.get("error"):
                    reason = payload.get("error_description") or payload["error"] or ""
                    self._send_html(_page("Authentication Failed", reason, "#c00"))
                else:
                    self._send_html(
                        _page("Authentication Received", "You can close this window.")
                    )
                server_ref._dispatch(payload)

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Route HTTP server logging to the deskauth logger."""
                if args:
                    logger.debug("OAuth callback listener: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._actual_port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        logger.debug("OAuth callback listener started on %s", self.redirect_uri)
        return self.redirect_uri

    def stop(self) -> None:
        """Shut the listener down and release the port."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
