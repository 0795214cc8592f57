"""Local HTTP listener for OAuth redirects.

One listener serves every in-flight flow of an ``OAuthFlow`` engine.
It is started on the first flow, kept alive across flows and stopped on
cleanup. Routes:

- ``GET <callback path>``: hands the parsed query to the flow engine and
  renders the HTML page it returns
- ``GET /health``: ``{"status": "ok", "timestamp": <epoch ms>}``
- anything else: 404 JSON
"""

import asyncio
import errno
import html
import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from ..errors import PortInUse, ServerStartFailed
from .tokens import now_ms

logger = logging.getLogger(__name__)

# Default listener binding
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
DEFAULT_CALLBACK_PATH = "/oauth/callback"
HEALTH_PATH = "/health"


@dataclass
class CallbackResult:
    """Result from OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and self.error is None


# Flow engine hook: receives the parsed callback, returns (status, html page)
CallbackHandler = Callable[[CallbackResult], Awaitable[tuple[int, str]]]


SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authentication Successful</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; text-align: center; padding: 50px; }
        .success { color: #28a745; font-size: 24px; margin-bottom: 20px; }
        .message { color: #6c757d; font-size: 16px; }
    </style>
</head>
<body>
    <div class="success">&#x2705; Authentication Successful</div>
    <div class="message">You can now close this window and return to your application.</div>
    <script>
        setTimeout(function () { window.close(); }, 3000);
    </script>
</body>
</html>"""

ERROR_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authentication Error</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; text-align: center; padding: 50px; }}
        .error {{ color: #dc3545; font-size: 24px; margin-bottom: 20px; }}
        .message {{ color: #6c757d; font-size: 16px; }}
    </style>
</head>
<body>
    <div class="error">&#x274C; Authentication Failed</div>
    <div class="message">{message}</div>
    <div class="message" style="margin-top: 20px;">You can close this window and try again.</div>
</body>
</html>"""


def render_success_page() -> str:
    """HTML shown after a successful exchange; closes itself after 3s."""
    return SUCCESS_HTML


def render_error_page(message: str) -> str:
    """HTML shown when the flow failed. The message is HTML-escaped."""
    return ERROR_HTML.format(message=html.escape(message))


def build_callback_url(host: str, port: int, path: str) -> str:
    """Build the redirect URI served by the listener."""
    return f"http://{host}:{port}{path}"


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL (or request target) with query parameters

    Returns:
        CallbackResult with parsed parameters
    """
    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    # Get first value of each parameter (or None if not present)
    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class CallbackServer:
    """Shared HTTP listener for OAuth callbacks.

    Usage:
        server = CallbackServer(handler, host="localhost", port=8080)
        await server.start()
        redirect_uri = server.redirect_uri
        ...
        await server.stop()
    """

    def __init__(
        self,
        handler: CallbackHandler,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        path: str = DEFAULT_CALLBACK_PATH,
    ):
        """Initialize callback server.

        Args:
            handler: Coroutine that processes a callback and returns (status, html)
            host: Interface to bind
            port: Port to bind (0 lets the OS choose)
            path: URL path the provider redirects to
        """
        self.host = host
        self.port = port
        self.path = path if path.startswith("/") else f"/{path}"

        self._handler = handler
        self._server: asyncio.Server | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def redirect_uri(self) -> str:
        return build_callback_url(self.host, self.port, self.path)

    async def start(self) -> None:
        """Bind the listener. No-op when already running.

        Raises:
            PortInUse: The port is taken by another process
            ServerStartFailed: Any other bind failure
        """
        if self._server is not None:
            return

        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise PortInUse(
                    f"Port {self.port} is already in use",
                    {"port": self.port, "host": self.host},
                ) from e
            raise ServerStartFailed(
                "Failed to start callback server",
                {"port": self.port, "host": self.host, "original_error": str(e)},
            ) from e

        sockets = self._server.sockets
        if not sockets:
            self._server.close()
            self._server = None
            raise ServerStartFailed(
                "Failed to start callback server: no sockets created",
                {"port": self.port, "host": self.host},
            )

        # Resolve the real port when the OS picked one
        self.port = sockets[0].getsockname()[1]
        logger.debug(f"Callback server listening on {self.redirect_uri}")

    async def stop(self) -> None:
        """Stop the callback server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        try:
            # Parse request line (e.g., "GET /oauth/callback?code=xxx HTTP/1.1")
            request_line = await reader.readline()
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Read headers (consume them but we don't need them)
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            route = urlparse(target).path

            # Browsers often request this alongside the redirect
            if route == "/favicon.ico":
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "")
                return

            if method != "GET":
                await self._send_response(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if route == self.path:
                status, page = await self._handler(parse_callback_url(target))
                await self._send_html_response(writer, HTTPStatus(status), page)
            elif route == HEALTH_PATH:
                await self._send_json_response(
                    writer, HTTPStatus.OK, {"status": "ok", "timestamp": now_ms()}
                )
            else:
                await self._send_json_response(
                    writer,
                    HTTPStatus.NOT_FOUND,
                    {"error": "Not Found", "message": "OAuth callback endpoint not found"},
                )

        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            try:
                await self._send_response(writer, HTTPStatus.INTERNAL_SERVER_ERROR, "Internal error")
            except Exception:
                pass

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def _send_json_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        data: dict[str, Any],
    ) -> None:
        """Send a JSON HTTP response."""
        body = json.dumps(data).encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'; script-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()
