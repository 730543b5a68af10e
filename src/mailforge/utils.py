"""Shared console, logging and error helpers."""

from __future__ import annotations

import logging
import os
import sys
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from mailforge.exceptions import ConfigurationError, MailforgeError, PipelineError

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for mailforge.

    Log levels:
    - Normal: Only warnings/errors shown
    - Verbose (-v): INFO level - task start/finish, watcher events
    - Debug (MAILFORGE_DEBUG=1): DEBUG level - shows everything
    """
    if os.environ.get("MAILFORGE_DEBUG"):
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    handler = RichHandler(
        console=console,
        show_time=verbose,
        show_path=bool(os.environ.get("MAILFORGE_DEBUG")),
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger("mailforge")
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = False


def alert(tag: str, message: str) -> None:
    """Audible + bold diagnostic, distinct from ordinary log output."""
    console.bell()
    console.print(f"[bold red]{escape(tag)}[/bold red] {escape(message)}")


def exit_with_error(message: str, exit_code: int = 1) -> NoReturn:
    """Exit the program with an error message."""
    typer.secho(f"Error: {message}", err=True, fg=typer.colors.RED)
    sys.exit(exit_code)


def handle_error(error: Exception) -> NoReturn:
    """Report an error at the CLI boundary and exit."""
    if isinstance(error, PipelineError) and isinstance(error.error, ConfigurationError):
        error = error.error
    if isinstance(error, ConfigurationError):
        alert(
            "[config]",
            f"Sorry, there was an issue locating your {error.path}. "
            f"{error.reason}. Please see README.md",
        )
        sys.exit(error.exit_code)
    if isinstance(error, MailforgeError):
        exit_with_error(error.message, error.exit_code)
    typer.secho(f"Unexpected error: {error}", err=True, fg=typer.colors.RED)
    sys.exit(1)
