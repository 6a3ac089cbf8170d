"""Config loading for MCP Negotiator."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

DEFAULT_SERVER_URL = "http://localhost:3000/mcp"
DEFAULT_CLIENT_NAME = "mcp-negotiator"
DEFAULT_CLIENT_VERSION = "0.1.0"

# Connection timeout in seconds for each transport attempt
DEFAULT_CONNECTION_TIMEOUT = 45.0

# The redirect URI registered with the authorization server
DEFAULT_CALLBACK_HOST = "localhost"
DEFAULT_CALLBACK_PORT = 8090
DEFAULT_CALLBACK_PATH = "/callback"

# Deadline for the browser round trip during interactive authorization
DEFAULT_AUTH_TIMEOUT = 300.0

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".mcpn" / ".env",
]


@dataclass
class CallbackConfig:
    """Where the local OAuth redirect listener binds."""

    host: str = DEFAULT_CALLBACK_HOST
    port: int = DEFAULT_CALLBACK_PORT
    path: str = DEFAULT_CALLBACK_PATH
    timeout: float | None = DEFAULT_AUTH_TIMEOUT

    @property
    def redirect_uri(self) -> str:
        """The redirect URI the listener answers on."""
        return f"http://{self.host}:{self.port}{self.path}"


@dataclass
class NegotiatorConfig:
    """Complete MCP Negotiator configuration."""

    server_url: str = DEFAULT_SERVER_URL
    client_name: str = DEFAULT_CLIENT_NAME
    client_version: str = DEFAULT_CLIENT_VERSION
    scope: str | None = None
    connection_timeout: float | None = DEFAULT_CONNECTION_TIMEOUT
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    env_path: Path | None = None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env_timeout(name: str, default: float | None) -> float | None:
    """Read a timeout in seconds; zero or negative disables the deadline."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for {name}: {raw!r}\n\n"
            f"Expected a number of seconds (0 disables the timeout)."
        ) from None
    return value if value > 0 else None


def _env_port(name: str, default: int) -> int:
    """Read a TCP port number."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}\n\nExpected a port number.") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"Invalid value for {name}: {port} is outside 0-65535")
    return port


def load_config(env_path: Path | None = None, **overrides: Any) -> NegotiatorConfig:
    """Load configuration from the environment.

    The .env file is loaded first so that its values are visible to the
    MCPN_* lookups below. Keyword overrides that are not None win over
    anything read from the environment; ``callback_*`` keys set the
    matching CallbackConfig field.

    Args:
        env_path: Explicit path to .env file (optional)
        **overrides: Field values to force, e.g. ``server_url`` or ``callback_port``

    Returns:
        NegotiatorConfig with resolved values

    Raises:
        ValueError: If a numeric environment variable cannot be parsed
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    callback = CallbackConfig(
        host=os.environ.get("MCPN_CALLBACK_HOST") or DEFAULT_CALLBACK_HOST,
        port=_env_port("MCPN_CALLBACK_PORT", DEFAULT_CALLBACK_PORT),
        path=os.environ.get("MCPN_CALLBACK_PATH") or DEFAULT_CALLBACK_PATH,
        timeout=_env_timeout("MCPN_AUTH_TIMEOUT", DEFAULT_AUTH_TIMEOUT),
    )
    config = NegotiatorConfig(
        server_url=os.environ.get("MCPN_SERVER_URL") or DEFAULT_SERVER_URL,
        client_name=os.environ.get("MCPN_CLIENT_NAME") or DEFAULT_CLIENT_NAME,
        scope=os.environ.get("MCPN_OAUTH_SCOPE") or None,
        connection_timeout=_env_timeout("MCPN_CONNECTION_TIMEOUT", DEFAULT_CONNECTION_TIMEOUT),
        callback=callback,
        env_path=env_file,
    )

    for key, value in overrides.items():
        if value is None:
            continue
        if key.startswith("callback_") and hasattr(callback, key[len("callback_"):]):
            setattr(callback, key[len("callback_"):], value)
        elif hasattr(config, key) and key != "callback":
            setattr(config, key, value)
        else:
            raise TypeError(f"Unknown config option: {key}")

    if not callback.path.startswith("/"):
        callback.path = "/" + callback.path

    return config
