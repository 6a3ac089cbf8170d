"""Localhost authorization code broker for OAuth redirects.

This module provides a single-use HTTP listener that receives the OAuth
authorization redirect on the port registered with the authorization
server. It:
- Binds the configured redirect port before the browser is opened
- Consumes exactly one inbound request and then stops listening
- Answers with a small HTML page (200 on success, 400 without a code)
- Hands the result to the waiting caller through a single-slot future
"""

import asyncio
import html
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from ..config import DEFAULT_AUTH_TIMEOUT, DEFAULT_CALLBACK_HOST, DEFAULT_CALLBACK_PATH, DEFAULT_CALLBACK_PORT
from ..platform import launch_browser

logger = logging.getLogger(__name__)


class CallbackError(Exception):
    """Error during OAuth callback handling."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for OAuth callback."""

    pass


class AuthorizationDeniedError(CallbackError):
    """The redirect arrived without an authorization code."""

    pass


@dataclass
class AuthorizationRequest:
    """One interactive authorization in progress."""

    authorization_url: str
    redirect_uri: str
    listen_port: int


@dataclass
class AuthorizationResult:
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
        """Check if callback carried a usable code."""
        return bool(self.code) and self.error is None


SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>Authorization Successful</title></head>
<body>
    <h1>Authorization Successful</h1>
    <p>You can close this window and return to the terminal.</p>
    <script>window.close();</script>
</body>
</html>"""

ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>Authorization Failed</title></head>
<body>
    <h1>Authorization Failed</h1>
    <p>No authorization code was provided.</p>
    <pre>{error}: {description}</pre>
</body>
</html>"""


def parse_callback_url(url: str) -> AuthorizationResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL or request target with query parameters

    Returns:
        AuthorizationResult with parsed parameters
    """
    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    # Get first value of each parameter (or None if not present)
    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return AuthorizationResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


def denial_message(result: AuthorizationResult) -> str:
    """Build the rejection message for a redirect without a code."""
    message = "No authorization code provided"
    if result.error:
        detail = result.error
        if result.error_description:
            detail = f"{detail}: {result.error_description}"
        message = f"{message} ({detail})"
    return message


class AuthorizationCodeBroker:
    """Single-use HTTP listener that captures an OAuth authorization code.

    Usage:
        broker = AuthorizationCodeBroker(port=8090)
        code = await broker.acquire_authorization_code(authorization_url)

    Or, split in two steps as the OAuth client provider does:
        await broker.begin(authorization_url)
        result = await broker.wait_for_result()
        await broker.stop()
    """

    def __init__(
        self,
        port: int = DEFAULT_CALLBACK_PORT,
        host: str = DEFAULT_CALLBACK_HOST,
        path: str = DEFAULT_CALLBACK_PATH,
        timeout: float | None = DEFAULT_AUTH_TIMEOUT,
        open_browser: Callable[[str], Awaitable[bool]] = launch_browser,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the broker.

        Args:
            port: Port from the registered redirect URI (0 lets the OS choose)
            host: Host to bind, must match the registered redirect URI
            path: Path component of the redirect URI
            timeout: Seconds to wait for the redirect, None waits forever
            open_browser: Coroutine that opens a URL in the user's browser
            on_status: Optional callback for status messages
        """
        self.host = host
        self.port = port
        self.path = path
        self.timeout = timeout
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)

        self._server: asyncio.Server | None = None
        self._result: asyncio.Future[AuthorizationResult] | None = None
        self._consumed = False
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    async def start(self) -> str:
        """Bind the listener.

        Returns:
            The redirect URI the listener answers on

        Raises:
            CallbackError: If the broker was already used or the port is taken
        """
        if self._result is not None:
            raise CallbackError("Authorization broker is single-use and was already started")

        self._result = asyncio.get_running_loop().create_future()

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port,
            )
        except OSError as e:
            raise CallbackError(
                f"Could not start callback listener on {self.host}:{self.port}: {e}"
            ) from e

        sockets = self._server.sockets
        if not sockets:
            raise CallbackError("Failed to start callback listener: no sockets created")

        self.port = sockets[0].getsockname()[1]
        logger.debug(f"Callback listener started on {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self) -> None:
        """Stop the listener and release the port."""
        if self._server:
            self._server.close()
            # Idle connections would otherwise keep wait_closed() pending
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback listener stopped")

        # A rejection nobody waited for is dropped with the broker
        if self._result is not None and self._result.done() and not self._result.cancelled():
            self._result.exception()

    async def begin(self, authorization_url: str) -> AuthorizationRequest:
        """Start listening, then send the user to the authorization URL.

        A browser that cannot be launched is not an error: the user can
        still open the URL by hand while we wait.
        """
        await self.start()
        request = AuthorizationRequest(
            authorization_url=authorization_url,
            redirect_uri=self.redirect_uri,
            listen_port=self.port,
        )

        self._emit_status(f"Opening browser to: {authorization_url}")
        self._emit_status(f"Waiting for callback on {self.redirect_uri}")
        try:
            opened = await self.open_browser(authorization_url)
        except Exception as e:
            logger.warning(f"Browser launch failed: {e}")
            opened = False

        if not opened:
            self._emit_status(
                f"Could not open browser. Please open this URL manually:\n{authorization_url}"
            )

        return request

    async def wait_for_result(self) -> AuthorizationResult:
        """Wait for the redirect.

        Returns:
            AuthorizationResult carrying the code and state

        Raises:
            CallbackError: If the broker was not started
            CallbackTimeoutError: If no redirect arrived within the timeout
            AuthorizationDeniedError: If the redirect had no code
        """
        if self._result is None:
            raise CallbackError("Callback listener not started")

        try:
            async with asyncio.timeout(self.timeout):
                return await self._result
        except TimeoutError:
            await self.stop()
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback after {self.timeout} seconds"
            ) from None

    async def acquire_authorization_code(self, authorization_url: str) -> str:
        """Run one interactive authorization and return the code.

        The listener is stopped on every exit path, including cancellation
        by an outer deadline.
        """
        try:
            await self.begin(authorization_url)
            result = await self.wait_for_result()
        finally:
            await self.stop()

        assert result.code is not None
        return result.code

    def _resolve(self, result: AuthorizationResult) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_result(result)

    def _reject(self, error: Exception) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_exception(error)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        self._writers.add(writer)
        try:
            request_line = await reader.readline()

            # Browsers open speculative connections that never send a request
            if not request_line or self._consumed:
                return
            self._consumed = True

            # Parse request line (e.g., "GET /callback?code=xxx HTTP/1.1")
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            target = parts[1] if len(parts) >= 2 else ""

            # Read headers (consume them but we don't need them)
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            result = parse_callback_url(target)

            if result.is_success():
                await self._send_html_response(writer, HTTPStatus.OK, SUCCESS_HTML)
                logger.debug("Authorization code received")
                self._resolve(result)
            else:
                # HTML-escape error messages to prevent XSS attacks
                error_html = ERROR_HTML.format(
                    error=html.escape(result.error or "missing_code"),
                    description=html.escape(
                        result.error_description or "No authorization code provided"
                    ),
                )
                await self._send_html_response(writer, HTTPStatus.BAD_REQUEST, error_html)
                logger.warning(f"Authorization redirect without code: {target}")
                self._reject(AuthorizationDeniedError(denial_message(result)))

        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            self._reject(CallbackError(f"Error handling callback request: {e}"))

        finally:
            self._writers.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            # Single-use: stop accepting once the redirect has been answered
            if self._consumed and self._server is not None:
                self._server.close()

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
            f"Content-Security-Policy: default-src 'none'; script-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "AuthorizationCodeBroker":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
