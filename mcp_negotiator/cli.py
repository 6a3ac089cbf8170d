"""CLI entry point for MCP Negotiator."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, NoReturn

import click
from mcp.types import CallToolResult, LoggingMessageNotificationParams

from . import __version__
from .config import NegotiatorConfig, load_config
from .connection import NegotiationError, TransportKind, TransportNegotiator
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("mcpn")

NEGOTIATION_HELP = (
    "The server rejected both the Streamable HTTP and the HTTP+SSE transport.\n\n"
    "Check that the URL points at the MCP endpoint (e.g. http://localhost:3000/mcp)\n"
    "and that the server is running. Use --verbose for details."
)


def url_option(func: Callable[..., Any]) -> Callable[..., Any]:
    """Shared --url option for commands that connect to a server."""
    return click.option(
        "--url",
        "-u",
        "server_url",
        default=None,
        help="MCP server endpoint (default: $MCPN_SERVER_URL or http://localhost:3000/mcp)",
    )(func)


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--callback-port", type=click.IntRange(0, 65535), default=None, help="Port of the registered OAuth redirect URI")
@click.option("--timeout", "connection_timeout", type=float, default=None, help="Seconds to wait for each transport to connect")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    json_mode: bool,
    env_path: str | None,
    callback_port: int | None,
    connection_timeout: float | None,
    verbose: bool,
) -> None:
    """MCP Negotiator - Connect to MCP servers over Streamable HTTP or HTTP+SSE."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["overrides"] = {
        "callback_port": callback_port,
        "connection_timeout": connection_timeout,
    }
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> NegotiatorConfig | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["env_path"], **ctx.obj["overrides"])
    except ValueError as e:
        output.error(e, error_type="ConfigError", help_text="Fix the MCPN_* environment variable and retry.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def build_negotiator(ctx: click.Context, **kwargs: Any) -> TransportNegotiator:
    """Create a negotiator that reports progress through the output handler."""
    output: OutputHandler = ctx.obj["output"]
    return TransportNegotiator(get_config(ctx), on_status=output.status, **kwargs)


def extract_content(result: CallToolResult) -> Any:
    """Pull text (or raw data) out of a tool result."""
    content: list[Any] = []
    for item in result.content:
        if hasattr(item, "text"):
            content.append(item.text)
        elif hasattr(item, "data"):
            content.append(item.data)
        else:
            content.append(str(item))
    return content[0] if len(content) == 1 else content


async def _probe(negotiator: TransportNegotiator, server_url: str | None) -> dict[str, Any]:
    async with negotiator.connect(server_url) as result:
        return {
            "server": result.server_url,
            "transport": result.transport_kind.value,
            "attempts": [a.to_dict() for a in result.attempts],
        }


async def _list_tools(negotiator: TransportNegotiator, server_url: str | None) -> dict[str, Any]:
    async with negotiator.connect(server_url) as result:
        listing = await result.session.list_tools()
        return {
            "server": result.server_url,
            "transport": result.transport_kind.value,
            "tools": [
                {"name": tool.name, "description": tool.description or ""}
                for tool in listing.tools
            ],
        }


async def _call_tool(
    negotiator: TransportNegotiator,
    server_url: str | None,
    tool: str,
    arguments: dict[str, Any],
    wait: float,
) -> dict[str, Any]:
    async with negotiator.connect(server_url) as result:
        logger.debug(f"Calling {tool} over {result.transport_kind.label}")
        tool_result = await result.session.call_tool(tool, arguments)
        # Give the server time to stream notifications the tool started
        if wait > 0:
            await asyncio.sleep(wait)
        return {
            "server": result.server_url,
            "transport": result.transport_kind.value,
            "isError": bool(tool_result.isError),
            "result": extract_content(tool_result),
        }


@main.command()
@url_option
@click.pass_context
def connect(ctx: click.Context, server_url: str | None) -> None:
    """Negotiate a transport with a server and report which one it speaks."""
    output: OutputHandler = ctx.obj["output"]
    negotiator = build_negotiator(ctx)

    try:
        data = asyncio.run(_probe(negotiator, server_url))
    except NegotiationError as e:
        output.error(e, help_text=NEGOTIATION_HELP)
        return
    except Exception as e:
        output.error(e)
        return

    label = TransportKind(data["transport"]).label
    output.success(data, human_message=f"Connected to {data['server']} using {label} ({data['transport']}).")


@main.command()
@url_option
@click.pass_context
def tools(ctx: click.Context, server_url: str | None) -> None:
    """List the tools a server offers."""
    output: OutputHandler = ctx.obj["output"]
    negotiator = build_negotiator(ctx)

    try:
        data = asyncio.run(_list_tools(negotiator, server_url))
    except NegotiationError as e:
        output.error(e, help_text=NEGOTIATION_HELP)
        return
    except Exception as e:
        output.error(e, help_text="Tools may not be supported by this server.")
        return

    if ctx.obj["json_mode"]:
        output.success(data)
        return

    click.secho(f"\nTools for [{data['server']}] via {data['transport']}:\n", bold=True)
    if not data["tools"]:
        click.echo("  No tools available")
    for t in data["tools"]:
        click.secho(f"  {t['name']}", fg="green", bold=True, nl=False)
        click.echo(f": {t['description']}" if t["description"] else "")


@main.command()
@click.argument("tool")
@click.argument("arguments", required=False)
@url_option
@click.option("--wait", "-w", type=float, default=0.0, help="Seconds to keep listening for notifications after the call")
@click.option("--stdin", is_flag=True, help="Read arguments from stdin")
@click.pass_context
def call(
    ctx: click.Context,
    tool: str,
    arguments: str | None,
    server_url: str | None,
    wait: float,
    stdin: bool,
) -> None:
    """Call a tool and print its result and any notifications it sends.

    ARGUMENTS should be a JSON object with the tool parameters.

    Example: mcpn call start-notification-stream '{"interval": 1000, "count": 5}' --wait 5
    """
    output: OutputHandler = ctx.obj["output"]

    if stdin:
        arguments = sys.stdin.read()

    if not arguments:
        args_dict: dict[str, Any] = {}
    else:
        try:
            args_dict = json.loads(arguments)
        except json.JSONDecodeError as e:
            output.error(
                e,
                error_type="ArgumentParseError",
                help_text=(
                    "Arguments must be valid JSON.\n\n"
                    "Example: mcpn call start-notification-stream '{\"interval\": 1000, \"count\": 5}'"
                ),
            )
            return

    async def on_log(params: LoggingMessageNotificationParams) -> None:
        output.notification(params.level, params.data)

    negotiator = build_negotiator(ctx, logging_callback=on_log)

    try:
        data = asyncio.run(_call_tool(negotiator, server_url, tool, args_dict, wait))
    except NegotiationError as e:
        output.error(e, help_text=NEGOTIATION_HELP)
        return
    except Exception as e:
        output.error(e)
        return

    if ctx.obj["json_mode"]:
        output.success(data)
    else:
        result = data["result"]
        lines = result if isinstance(result, list) else [result]
        click.secho("Tool result:", bold=True)
        for line in lines:
            click.echo(f"  {line}")


if __name__ == "__main__":
    main()
