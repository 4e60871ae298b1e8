"""CLI output: JSON envelopes or human-readable text."""

import json
import sys
from typing import Any, NoReturn

import click

from .errors import MirimOAuthError


def format_json(data: Any) -> str:
    """Wrap a command result in the success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Render an error envelope; classified errors add their kind and code."""
    details: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    if isinstance(error, MirimOAuthError):
        details["kind"] = error.kind.value
        details["code"] = error.code

    return json.dumps({"success": False, "error": details}, indent=2, default=str)


class OutputHandler:
    """Writes command results in the mode chosen by --json."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
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
    ) -> NoReturn:
        """Report the error and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def status(self, message: str) -> None:
        """Progress message (stderr in human mode, suppressed in JSON mode)."""
        if not self.json_mode:
            click.secho(message, fg="cyan", err=True)
