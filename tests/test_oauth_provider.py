"""Tests for the brokered OAuth client provider."""

import asyncio

import pytest
from mcp.client.auth import OAuthClientProvider
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import AnyUrl

from conftest import SERVER_URL, send_request, wait_until
from mcp_negotiator.config import CallbackConfig, NegotiatorConfig
from mcp_negotiator.oauth.callback import AuthorizationCodeBroker, AuthorizationDeniedError
from mcp_negotiator.oauth.provider import BrokeredOAuthProvider, InMemoryTokenStorage, build_client_metadata

AUTH_URL = "https://auth.example.com/authorize?state=xyz"


async def open_browser(url: str) -> bool:
    return True


@pytest.fixture
def brokers() -> list[AuthorizationCodeBroker]:
    """Every broker the provider under test created."""
    return []


@pytest.fixture
def provider(sample_config: NegotiatorConfig, brokers: list[AuthorizationCodeBroker]) -> BrokeredOAuthProvider:
    """Provider whose brokers listen on OS-assigned ports."""

    def broker_factory() -> AuthorizationCodeBroker:
        broker = AuthorizationCodeBroker(port=0, host="127.0.0.1", timeout=5, open_browser=open_browser)
        brokers.append(broker)
        return broker

    return BrokeredOAuthProvider(SERVER_URL, sample_config, broker_factory=broker_factory)


class TestInMemoryTokenStorage:
    """Tests for InMemoryTokenStorage."""

    @pytest.mark.asyncio
    async def test_starts_empty(self) -> None:
        storage = InMemoryTokenStorage()
        assert await storage.get_tokens() is None
        assert await storage.get_client_info() is None

    @pytest.mark.asyncio
    async def test_stores_tokens(self) -> None:
        """Test tokens are returned as stored."""
        storage = InMemoryTokenStorage()
        token = OAuthToken(access_token="access-123", token_type="Bearer")

        await storage.set_tokens(token)

        assert await storage.get_tokens() == token

    @pytest.mark.asyncio
    async def test_stores_client_info(self) -> None:
        """Test registered client info is returned as stored."""
        storage = InMemoryTokenStorage()
        info = OAuthClientInformationFull(
            client_id="client-1",
            redirect_uris=[AnyUrl("http://localhost:8090/callback")],
        )

        await storage.set_client_info(info)

        assert await storage.get_client_info() == info


class TestClientMetadata:
    """Tests for build_client_metadata function."""

    def test_default_redirect_uri(self) -> None:
        """Test the registered redirect URI comes from the callback config."""
        metadata = build_client_metadata(NegotiatorConfig())

        assert [str(u) for u in metadata.redirect_uris] == ["http://localhost:8090/callback"]
        assert metadata.client_name == "mcp-negotiator"
        assert metadata.grant_types == ["authorization_code", "refresh_token"]
        assert metadata.response_types == ["code"]

    def test_custom_port_and_scope(self) -> None:
        """Test a configured port, path and scope are used."""
        config = NegotiatorConfig(scope="tools:read", callback=CallbackConfig(port=9123, path="/oauth/cb"))
        metadata = build_client_metadata(config)

        assert [str(u) for u in metadata.redirect_uris] == ["http://localhost:9123/oauth/cb"]
        assert metadata.scope == "tools:read"


class TestBrokeredOAuthProvider:
    """Tests for BrokeredOAuthProvider class."""

    def test_auth_is_sdk_provider(self, provider: BrokeredOAuthProvider) -> None:
        """Test the transport auth hook is the SDK's OAuthClientProvider."""
        auth = provider.auth
        assert isinstance(auth, OAuthClientProvider)
        assert provider.auth is auth

    def test_redirect_uri(self, provider: BrokeredOAuthProvider, sample_config: NegotiatorConfig) -> None:
        assert provider.redirect_uri == sample_config.callback.redirect_uri

    @pytest.mark.asyncio
    async def test_redirect_then_callback(
        self, provider: BrokeredOAuthProvider, brokers: list[AuthorizationCodeBroker]
    ) -> None:
        """Test the SDK handlers return the code and state from the redirect."""
        await provider.redirect_handler(AUTH_URL)
        (broker,) = brokers
        assert broker.is_listening

        callback = asyncio.create_task(provider.callback_handler())
        await send_request(broker.port, "/callback?code=abc123&state=xyz")

        assert await callback == ("abc123", "xyz")
        assert not broker.is_listening

    @pytest.mark.asyncio
    async def test_callback_failure_stops_broker(
        self, provider: BrokeredOAuthProvider, brokers: list[AuthorizationCodeBroker]
    ) -> None:
        """Test a denied authorization propagates and releases the port."""
        await provider.redirect_handler(AUTH_URL)
        (broker,) = brokers

        callback = asyncio.create_task(provider.callback_handler())
        await send_request(broker.port, "/callback")

        with pytest.raises(AuthorizationDeniedError):
            await callback
        assert not broker.is_listening

    @pytest.mark.asyncio
    async def test_acquire_authorization_code(
        self, provider: BrokeredOAuthProvider, brokers: list[AuthorizationCodeBroker]
    ) -> None:
        """Test the one-call flow returns only the code."""
        task = asyncio.create_task(provider.acquire_authorization_code(AUTH_URL))
        await wait_until(lambda: bool(brokers) and brokers[0].is_listening)
        await send_request(brokers[0].port, "/callback?code=only-code&state=s")

        assert await task == "only-code"

    @pytest.mark.asyncio
    async def test_aclose_stops_pending_authorization(
        self, provider: BrokeredOAuthProvider, brokers: list[AuthorizationCodeBroker]
    ) -> None:
        """Test closing the provider releases a listener still waiting."""
        await provider.redirect_handler(AUTH_URL)
        (broker,) = brokers

        await provider.aclose()
        await provider.aclose()

        assert not broker.is_listening

    @pytest.mark.asyncio
    async def test_new_redirect_replaces_previous_broker(
        self, provider: BrokeredOAuthProvider, brokers: list[AuthorizationCodeBroker]
    ) -> None:
        """Test each authorization gets a fresh broker and the old one is stopped."""
        await provider.redirect_handler(AUTH_URL)
        await provider.redirect_handler(AUTH_URL)

        first, second = brokers
        assert first is not second
        assert not first.is_listening
        assert second.is_listening
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_callback_before_redirect(self, provider: BrokeredOAuthProvider) -> None:
        """Test the callback handler needs a redirect first."""
        with pytest.raises(RuntimeError):
            await provider.callback_handler()

    def test_default_broker_uses_callback_config(self) -> None:
        """Test the built-in broker binds the configured redirect port."""
        config = NegotiatorConfig(callback=CallbackConfig(port=9001, path="/cb", timeout=30))
        provider = BrokeredOAuthProvider(SERVER_URL, config)

        broker = provider._default_broker()

        assert broker.port == 9001
        assert broker.path == "/cb"
        assert broker.timeout == 30
        assert broker.redirect_uri == "http://localhost:9001/cb"
