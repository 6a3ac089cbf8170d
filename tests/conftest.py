"""Shared fixtures and utilities for MCP Negotiator tests."""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mcp_negotiator.config import CallbackConfig, NegotiatorConfig

SERVER_URL = "http://localhost:3000/mcp"

MCPN_ENV_VARS = [
    "MCPN_SERVER_URL",
    "MCPN_CLIENT_NAME",
    "MCPN_OAUTH_SCOPE",
    "MCPN_CONNECTION_TIMEOUT",
    "MCPN_CALLBACK_HOST",
    "MCPN_CALLBACK_PORT",
    "MCPN_CALLBACK_PATH",
    "MCPN_AUTH_TIMEOUT",
]


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment and .env files out of every test."""
    for name in MCPN_ENV_VARS:
        # setenv first so teardown removes values that load_dotenv writes
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setattr("mcp_negotiator.config.ENV_SEARCH_PATHS", [])


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def sample_config() -> NegotiatorConfig:
    """Config whose redirect listener binds an OS-assigned loopback port."""
    return NegotiatorConfig(
        server_url=SERVER_URL,
        connection_timeout=2.0,
        callback=CallbackConfig(host="127.0.0.1", port=0, timeout=5.0),
    )


# ============================================================================
# HTTP Helpers
# ============================================================================


async def send_request(port: int, target: str, method: str = "GET") -> bytes:
    """Play the browser: send one request to the listener and read the reply."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"{method} {target} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def http_status_error(status: int, url: str = SERVER_URL, method: str = "POST") -> httpx.HTTPStatusError:
    """Build the error httpx raises for a non-2xx response."""
    request = httpx.Request(method, url)
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(
        f"Client error '{status} {response.reason_phrase}' for url '{url}'",
        request=request,
        response=response,
    )


# ============================================================================
# Fake MCP Collaborators
# ============================================================================


class FakeSession:
    """Stands in for mcp.ClientSession over fake streams."""

    def __init__(self, read_stream: Any, write_stream: Any, **kwargs: Any):
        self.read_stream = read_stream
        self.write_stream = write_stream
        self.kwargs = kwargs
        self.initialized = False
        self.closed = False
        self.initialize_error: BaseException | None = None

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    async def initialize(self) -> None:
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized = True


class FakeTransports:
    """Records every transport built and entered, in order.

    ``events`` holds entries like ("build", "modern"), ("enter", "modern"),
    ("exit", "modern") so tests can check sequencing across attempts.
    """

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.urls: dict[str, list[str]] = {"modern": [], "legacy": []}
        self.auth: list[Any] = []
        self.errors: dict[str, BaseException | None] = {"modern": None, "legacy": None}
        self.hang: dict[str, bool] = {"modern": False, "legacy": False}
        self.init_errors: dict[str, BaseException | None] = {"modern": None, "legacy": None}
        self.sessions: list[FakeSession] = []

    def built(self, kind: str) -> int:
        return self.events.count(("build", kind))

    def modern(self, url: str, auth: Any) -> Any:
        self.events.append(("build", "modern"))
        self.urls["modern"].append(url)
        self.auth.append(auth)
        return self._transport("modern")

    def legacy(self, url: str) -> Any:
        self.events.append(("build", "legacy"))
        self.urls["legacy"].append(url)
        return self._transport("legacy")

    @asynccontextmanager
    async def _transport(self, kind: str) -> AsyncIterator[tuple[Any, ...]]:
        self.events.append(("enter", kind))
        try:
            if self.hang[kind]:
                await asyncio.Event().wait()
            error = self.errors[kind]
            if error is not None:
                raise error
            if kind == "modern":
                yield (f"{kind}-read", f"{kind}-write", lambda: "session-id")
            else:
                yield (f"{kind}-read", f"{kind}-write")
        finally:
            self.events.append(("exit", kind))

    def session_factory(self, read_stream: Any, write_stream: Any, **kwargs: Any) -> FakeSession:
        session = FakeSession(read_stream, write_stream, **kwargs)
        kind = str(read_stream).split("-")[0]
        session.initialize_error = self.init_errors.get(kind)
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_transports() -> FakeTransports:
    """Fake Streamable HTTP and HTTP+SSE transports."""
    return FakeTransports()


@pytest.fixture
def fake_provider(fake_transports: FakeTransports) -> MagicMock:
    """OAuth provider stand-in that records when it is closed."""
    provider = MagicMock()
    provider.auth = MagicMock(name="auth")

    async def aclose() -> None:
        fake_transports.events.append(("close", "provider"))

    provider.aclose = AsyncMock(side_effect=aclose)
    return provider
