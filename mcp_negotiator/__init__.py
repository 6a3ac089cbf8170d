"""MCP Negotiator - Connect to MCP servers over whichever HTTP transport they support."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-negotiator")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "NegotiatorConfig",
    "CallbackConfig",
    "load_config",
    "TransportNegotiator",
    "TransportKind",
    "NegotiationResult",
    "NegotiationError",
    "ConnectionAttempt",
    # OAuth
    "BrokeredOAuthProvider",
    "AuthorizationCodeBroker",
]

# Lazy imports so that importing the package does not pull in the MCP SDK
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("NegotiatorConfig", "CallbackConfig", "load_config"):
        from .config import CallbackConfig, NegotiatorConfig, load_config
        return {"NegotiatorConfig": NegotiatorConfig, "CallbackConfig": CallbackConfig, "load_config": load_config}[name]
    elif name in ("TransportNegotiator", "TransportKind", "NegotiationResult", "NegotiationError", "ConnectionAttempt"):
        from . import connection
        return getattr(connection, name)
    elif name == "BrokeredOAuthProvider":
        from .oauth.provider import BrokeredOAuthProvider
        return BrokeredOAuthProvider
    elif name == "AuthorizationCodeBroker":
        from .oauth.callback import AuthorizationCodeBroker
        return AuthorizationCodeBroker
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
