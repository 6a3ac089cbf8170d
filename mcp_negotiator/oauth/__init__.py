"""OAuth 2.1 authorization support for MCP Negotiator.

The Streamable HTTP transport authenticates with the MCP SDK's
``OAuthClientProvider``. This package supplies the interactive part the
SDK leaves to the application: a local listener on the registered
redirect URI that captures the authorization code after the user
approves access in a browser.

Main Components:
    BrokeredOAuthProvider: Client metadata, token storage and the SDK auth hook
    AuthorizationCodeBroker: Single-use redirect listener and browser launch

Quick Start:
    from mcp_negotiator.oauth import AuthorizationCodeBroker

    broker = AuthorizationCodeBroker(port=8090)
    code = await broker.acquire_authorization_code(authorization_url)
"""

from .callback import (
    AuthorizationCodeBroker,
    AuthorizationDeniedError,
    AuthorizationRequest,
    AuthorizationResult,
    CallbackError,
    CallbackTimeoutError,
    parse_callback_url,
)
from .provider import BrokeredOAuthProvider, InMemoryTokenStorage, build_client_metadata

__all__ = [
    # Provider (main entry point)
    "BrokeredOAuthProvider",
    "InMemoryTokenStorage",
    "build_client_metadata",
    # Broker
    "AuthorizationCodeBroker",
    "AuthorizationRequest",
    "AuthorizationResult",
    "parse_callback_url",
    # Errors
    "CallbackError",
    "CallbackTimeoutError",
    "AuthorizationDeniedError",
]
