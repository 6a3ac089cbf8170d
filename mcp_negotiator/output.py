"""Output formatters for human-readable and JSON output."""

import json
import sys
from typing import Any

import click


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output."""
    if success:
        output = {"success": True, "data": data}
    else:
        output = data  # Error dict already has success: false
    return json.dumps(output, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON with helpful information."""
    payload: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    # Negotiation failures carry one reason per transport
    attempts = getattr(error, "attempts", None)
    if attempts:
        payload["attempts"] = [a.to_dict() for a in attempts]
    return json.dumps({"success": False, "error": payload}, indent=2, default=str)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human).

    Status lines and server notifications go to stderr so that stdout
    stays machine-readable in JSON mode.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def status(self, message: str) -> None:
        """Progress line shown only in human mode."""
        if not self.json_mode:
            click.secho(message, fg="cyan", err=True)

    def notification(self, level: str, data: Any) -> None:
        """Show a server notification as it arrives."""
        if self.json_mode:
            click.echo(json.dumps({"notification": {"level": level, "data": data}}, default=str), err=True)
        else:
            click.echo(f"Notification: {level} - {data}", err=True)
