"""MCP server connection negotiation across HTTP transport generations.

Servers speak either the Streamable HTTP transport (protocol 2025-03-26
onwards) or the deprecated HTTP+SSE transport (2024-11-05). The client
cannot tell which in advance, so it tries Streamable HTTP first and
falls back to HTTP+SSE when that fails. Old servers typically reject the
initialize POST with a 4xx status, which surfaces here as a failed
connect.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from .config import NegotiatorConfig
from .oauth.provider import BrokeredOAuthProvider

logger = logging.getLogger(__name__)

TransportContext = AbstractAsyncContextManager[tuple[Any, ...]]


class TransportKind(str, Enum):
    """The two MCP HTTP transport generations."""

    MODERN = "streamable-http"
    LEGACY = "sse"

    @property
    def label(self) -> str:
        return "Streamable HTTP" if self is TransportKind.MODERN else "HTTP+SSE"


@dataclass
class ConnectionAttempt:
    """Outcome of connecting with one transport."""

    transport_kind: TransportKind
    target_url: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transport": self.transport_kind.value,
            "url": self.target_url,
            "success": self.succeeded,
            "error": self.error,
        }


@dataclass
class NegotiationResult:
    """A connected session and the transport it runs over.

    The result owns the transport. Close it with ``await result.aclose()``
    or use it as an async context manager.
    """

    session: ClientSession
    transport_kind: TransportKind
    server_url: str
    attempts: list[ConnectionAttempt] = field(default_factory=list)
    _exit_stack: AsyncExitStack | None = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self._exit_stack is not None

    async def aclose(self) -> None:
        """Close the session and its transport."""
        stack, self._exit_stack = self._exit_stack, None
        if stack is not None:
            logger.debug(f"Closing {self.transport_kind.label} connection to {self.server_url}")
            await stack.aclose()

    async def __aenter__(self) -> NegotiationResult:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


class NegotiationError(Exception):
    """Neither transport could connect to the server."""

    def __init__(self, server_url: str, attempts: list[ConnectionAttempt]):
        self.server_url = server_url
        self.attempts = list(attempts)

        lines = [f"Could not connect to {server_url} with any available transport:"]
        for i, attempt in enumerate(self.attempts, start=1):
            kind = attempt.transport_kind
            lines.append(f"  {i}. {kind.label} ({kind.value}) error: {attempt.error}")
        super().__init__("\n".join(lines))

    @property
    def errors(self) -> dict[TransportKind, str]:
        """Failure reason per transport kind."""
        return {a.transport_kind: a.error or "" for a in self.attempts}


def _leaf_exceptions(exc: BaseException) -> list[BaseException]:
    """Flatten exception groups raised out of transport task groups."""
    if isinstance(exc, BaseExceptionGroup):
        leaves: list[BaseException] = []
        for inner in exc.exceptions:
            leaves.extend(_leaf_exceptions(inner))
        return leaves
    return [exc]


def describe_error(exc: BaseException) -> str:
    """Render a connect failure as a one-line reason."""
    parts = []
    for leaf in _leaf_exceptions(exc):
        if isinstance(leaf, httpx.HTTPStatusError):
            response = leaf.response
            parts.append(f"HTTP {response.status_code} {response.reason_phrase}".rstrip())
        else:
            message = str(leaf)
            parts.append(f"{type(leaf).__name__}: {message}" if message else type(leaf).__name__)
    return "; ".join(parts)


def _streamable_http(url: str, auth: httpx.Auth | None) -> TransportContext:
    return streamablehttp_client(url, auth=auth)


def _sse(url: str) -> TransportContext:
    return sse_client(url)


class TransportNegotiator:
    """Connects to an MCP server over whichever HTTP transport it supports.

    Attempts are strictly sequential: the HTTP+SSE transport is only built
    after the Streamable HTTP attempt has failed and its authorization
    listener has been stopped. Each attempt gets its own session and
    transport objects.

    Usage:
        negotiator = TransportNegotiator(config)
        async with negotiator.connect("http://localhost:3000/mcp") as result:
            tools = await result.session.list_tools()
    """

    def __init__(
        self,
        config: NegotiatorConfig | None = None,
        modern_transport: Callable[[str, httpx.Auth | None], TransportContext] = _streamable_http,
        legacy_transport: Callable[[str], TransportContext] = _sse,
        session_factory: Callable[..., ClientSession] = ClientSession,
        provider_factory: Callable[[str], BrokeredOAuthProvider] | None = None,
        logging_callback: Callable[..., Any] | None = None,
        message_handler: Callable[..., Any] | None = None,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the negotiator.

        Args:
            config: Negotiator configuration (defaults to built-in values)
            modern_transport: Builds the Streamable HTTP transport context
            legacy_transport: Builds the HTTP+SSE transport context
            session_factory: Builds the client session over transport streams
            provider_factory: Builds the OAuth provider for a server URL
            logging_callback: Receives server logging notifications
            message_handler: Receives all other inbound server messages
            on_status: Optional callback for status messages
        """
        self.config = config or NegotiatorConfig()
        self.on_status = on_status or (lambda msg: None)
        self._modern_transport = modern_transport
        self._legacy_transport = legacy_transport
        self._session_factory = session_factory
        self._provider_factory = provider_factory or self._default_provider
        self._logging_callback = logging_callback
        self._message_handler = message_handler

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    def _default_provider(self, server_url: str) -> BrokeredOAuthProvider:
        return BrokeredOAuthProvider(server_url, self.config, on_status=self.on_status)

    def _session_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "client_info": Implementation(
                name=self.config.client_name,
                version=self.config.client_version,
            ),
        }
        if self._logging_callback is not None:
            kwargs["logging_callback"] = self._logging_callback
        if self._message_handler is not None:
            kwargs["message_handler"] = self._message_handler
        return kwargs

    async def negotiate(self, server_url: str | None = None) -> NegotiationResult:
        """Connect with Streamable HTTP, falling back to HTTP+SSE.

        Args:
            server_url: MCP endpoint URL (defaults to config.server_url)

        Returns:
            NegotiationResult for the transport that connected

        Raises:
            NegotiationError: If both transports fail
        """
        url = server_url or self.config.server_url
        attempts: list[ConnectionAttempt] = []
        self._emit_status(f"Connecting to server at: {url}")

        self._emit_status(f"1. Trying {TransportKind.MODERN.label} transport first...")
        result = await self._attempt(TransportKind.MODERN, url, attempts)
        if result is not None:
            return result

        self._emit_status(f"2. Falling back to deprecated {TransportKind.LEGACY.label} transport...")
        result = await self._attempt(TransportKind.LEGACY, url, attempts)
        if result is not None:
            return result

        error = NegotiationError(url, attempts)
        logger.error(str(error))
        raise error

    @asynccontextmanager
    async def connect(self, server_url: str | None = None) -> AsyncGenerator[NegotiationResult, None]:
        """Negotiate a connection and close it when the block exits."""
        result = await self.negotiate(server_url)
        try:
            yield result
        finally:
            await result.aclose()

    async def _attempt(
        self,
        kind: TransportKind,
        url: str,
        attempts: list[ConnectionAttempt],
    ) -> NegotiationResult | None:
        """Try one transport; record the attempt and return None on failure."""
        provider: BrokeredOAuthProvider | None = None
        try:
            if kind is TransportKind.MODERN:
                provider = self._provider_factory(url)
                transport = self._modern_transport(url, provider.auth)
            else:
                transport = self._legacy_transport(url)

            session, stack = await self._open_session(transport, provider)

        except Exception as e:
            reason = describe_error(e)
            attempts.append(ConnectionAttempt(kind, url, reason))
            logger.warning(f"{kind.label} transport connection failed: {reason}")
            self._emit_status(f"{kind.label} transport connection failed: {reason}")
            return None

        finally:
            # An authorization still waiting for its redirect must not hold the port
            if provider is not None:
                await provider.aclose()

        attempts.append(ConnectionAttempt(kind, url))
        self._emit_status(f"Successfully connected using {kind.label} transport.")
        return NegotiationResult(
            session=session,
            transport_kind=kind,
            server_url=url,
            attempts=list(attempts),
            _exit_stack=stack,
        )

    async def _open_session(
        self,
        transport: TransportContext,
        provider: BrokeredOAuthProvider | None = None,
    ) -> tuple[ClientSession, AsyncExitStack]:
        """Enter the transport and a session over it, then run the handshake."""
        timeout = self.config.connection_timeout
        stack = AsyncExitStack()
        try:
            async with asyncio.timeout(timeout) as deadline:
                if provider is not None:
                    provider.deadline = deadline
                try:
                    streams = await stack.enter_async_context(transport)
                    read_stream, write_stream = streams[0], streams[1]
                    session = await stack.enter_async_context(
                        self._session_factory(read_stream, write_stream, **self._session_kwargs())
                    )
                    await session.initialize()
                except BaseException:
                    # A transport task group that cancelled us replaces the
                    # cancellation with its own error when unwound with it
                    if not await stack.__aexit__(*sys.exc_info()):
                        raise
                    raise ConnectionError("Transport closed before the session was initialized")
                finally:
                    if provider is not None:
                        provider.deadline = None
        except TimeoutError:
            raise TimeoutError(f"Connection timed out after {timeout} seconds") from None
        return session, stack
