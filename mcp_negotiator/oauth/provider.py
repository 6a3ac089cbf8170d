"""OAuth client provider for the Streamable HTTP transport.

Adapts the MCP SDK's ``OAuthClientProvider`` to our authorization code
broker. The SDK drives discovery, client registration, PKCE and the
token exchange; it calls back into this module only when the user has
to authorize in a browser.
"""

import asyncio
import logging
from collections.abc import Callable

from mcp.client.auth import OAuthClientProvider, TokenStorage
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken
from pydantic import AnyUrl

from ..config import NegotiatorConfig
from .callback import AuthorizationCodeBroker

logger = logging.getLogger(__name__)


class InMemoryTokenStorage(TokenStorage):
    """Token storage that lives as long as one negotiation."""

    def __init__(self) -> None:
        self.tokens: OAuthToken | None = None
        self.client_info: OAuthClientInformationFull | None = None

    async def get_tokens(self) -> OAuthToken | None:
        return self.tokens

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self.tokens = tokens

    async def get_client_info(self) -> OAuthClientInformationFull | None:
        return self.client_info

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        self.client_info = client_info


def build_client_metadata(config: NegotiatorConfig) -> OAuthClientMetadata:
    """Registration metadata for Dynamic Client Registration."""
    return OAuthClientMetadata(
        client_name=config.client_name,
        redirect_uris=[AnyUrl(config.callback.redirect_uri)],
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        token_endpoint_auth_method="none",  # Public client
        scope=config.scope,
    )


class BrokeredOAuthProvider:
    """Holds client registration data and runs interactive authorization.

    Usage:
        provider = BrokeredOAuthProvider(server_url, config)
        async with streamablehttp_client(server_url, auth=provider.auth) as streams:
            ...
        await provider.aclose()

    A new broker is created for every authorization the SDK asks for, so
    a listener never outlives the attempt that started it.
    """

    def __init__(
        self,
        server_url: str,
        config: NegotiatorConfig,
        storage: TokenStorage | None = None,
        broker_factory: Callable[[], AuthorizationCodeBroker] | None = None,
        on_status: Callable[[str], None] | None = None,
    ):
        """Initialize the provider.

        Args:
            server_url: The MCP server URL being authorized against
            config: Negotiator configuration (redirect URI, client name, scope)
            storage: Token storage, in-memory by default
            broker_factory: Creates a fresh broker per authorization
            on_status: Optional callback for status messages
        """
        self.server_url = server_url
        self.config = config
        self.storage = storage or InMemoryTokenStorage()
        self.client_metadata = build_client_metadata(config)
        self.on_status = on_status
        self._broker_factory = broker_factory or self._default_broker

        self._broker: AuthorizationCodeBroker | None = None
        self._auth: OAuthClientProvider | None = None

        # Connect deadline of the attempt using this provider. It stands
        # still while the user is in the browser; the broker's own timeout
        # bounds that wait instead.
        self.deadline: asyncio.Timeout | None = None
        self._paused_remaining: float | None = None

    @property
    def redirect_uri(self) -> str:
        return self.config.callback.redirect_uri

    @property
    def auth(self) -> OAuthClientProvider:
        """The ``httpx.Auth`` to hand to the Streamable HTTP transport."""
        if self._auth is None:
            self._auth = OAuthClientProvider(
                server_url=self.server_url,
                client_metadata=self.client_metadata,
                storage=self.storage,
                redirect_handler=self.redirect_handler,
                callback_handler=self.callback_handler,
            )
        return self._auth

    def _default_broker(self) -> AuthorizationCodeBroker:
        callback = self.config.callback
        return AuthorizationCodeBroker(
            port=callback.port,
            host=callback.host,
            path=callback.path,
            timeout=callback.timeout,
            on_status=self.on_status,
        )

    async def redirect_handler(self, authorization_url: str) -> None:
        """Start a broker and send the user to the authorization server."""
        # A previous authorization that never completed must release the port first
        await self.aclose()

        broker = self._broker_factory()
        self._broker = broker
        self._pause_deadline()
        try:
            await broker.begin(authorization_url)
        except BaseException:
            await self.aclose()
            raise

    async def callback_handler(self) -> tuple[str, str | None]:
        """Wait for the redirect and return ``(code, state)`` to the SDK."""
        broker = self._broker
        if broker is None:
            raise RuntimeError("callback_handler called before redirect_handler")

        try:
            result = await broker.wait_for_result()
        finally:
            await self.aclose()

        assert result.code is not None
        return result.code, result.state

    async def acquire_authorization_code(self, authorization_url: str) -> str:
        """Run one interactive authorization and return only the code."""
        await self.redirect_handler(authorization_url)
        code, _ = await self.callback_handler()
        return code

    def _pause_deadline(self) -> None:
        deadline = self.deadline
        if deadline is None or deadline.expired() or self._paused_remaining is not None:
            return
        when = deadline.when()
        if when is None:
            return
        self._paused_remaining = max(when - asyncio.get_running_loop().time(), 0.0)
        deadline.reschedule(None)
        logger.debug(f"Connect deadline paused with {self._paused_remaining:.1f}s left")

    def _resume_deadline(self) -> None:
        remaining, self._paused_remaining = self._paused_remaining, None
        deadline = self.deadline
        if remaining is None or deadline is None or deadline.expired():
            return
        deadline.reschedule(asyncio.get_running_loop().time() + remaining)

    async def aclose(self) -> None:
        """Stop any authorization still waiting for its redirect."""
        broker, self._broker = self._broker, None
        self._resume_deadline()
        if broker is not None:
            logger.debug("Stopping authorization broker")
            await broker.stop()
