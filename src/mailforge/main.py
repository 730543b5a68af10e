"""Mailforge CLI Main Entry Point

Mailforge - builds inlined, self-contained HTML e-mails from templates.

Usage:
    mailforge                          # build, serve and watch (default project)
    mailforge serve --project spring   # same, for projects/spring
    mailforge build --production       # one-off build with CSS inlined
    mailforge package --production     # build, then one zip per e-mail
    mailforge litmus --production      # build, upload images, render tests
    mailforge mail --to me@example.com # build, upload images, send samples
    mailforge --version                # show version
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer

from mailforge._version import __version__
from mailforge.config import DEFAULT_PROJECT, BuildSettings, load_settings
from mailforge.orchestrator import Orchestrator
from mailforge.utils import console, handle_error, setup_logging

Production = Annotated[
    bool, typer.Option("--production", help="Inline CSS and drop unused rules.")
]
Project = Annotated[
    Optional[str], typer.Option("--project", help="Project folder under projects/.")
]
Recipient = Annotated[
    Optional[str], typer.Option("--to", help="Send sample e-mails to this address.")
]
Verbose = Annotated[
    bool, typer.Option("-v", "--verbose", help="Show task progress.")
]

typer_app = typer.Typer(add_completion=False, no_args_is_help=False)


@dataclass
class CLIContext:
    """Options given before the command name."""

    production: bool = False
    project: Optional[str] = None
    verbose: bool = False


def resolve_settings(
    project: Optional[str], production: bool, recipient: Optional[str] = None
) -> BuildSettings:
    """Load settings for the current directory and print the project banner."""
    settings = load_settings(
        Path.cwd(),
        project=project,
        production=production or None,
        recipient=recipient,
    )
    if project is None and settings.project == DEFAULT_PROJECT:
        typer.secho(
            f"No --project given, falling back to '{DEFAULT_PROJECT}'.",
            err=True,
            fg=typer.colors.YELLOW,
        )
    console.print(f"Project used: [bold]{settings.project}[/bold]")
    return settings


def run_pipeline(pipeline: str, settings: BuildSettings, verbose: bool) -> None:
    setup_logging(verbose)
    orchestrator = Orchestrator(settings)
    try:
        asyncio.run(orchestrator.run(pipeline))
    except KeyboardInterrupt:
        raise typer.Exit(code=130)
    except Exception as e:
        handle_error(e)

    if orchestrator.page_errors:
        typer.secho(
            f"{len(orchestrator.page_errors)} page(s) failed to compile:",
            err=True,
            fg=typer.colors.RED,
        )
        for error in orchestrator.page_errors:
            typer.secho(f"  {error}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    console.print(f"[green]Done:[/green] {pipeline} -> {settings.output_dir}")


def start(
    ctx: typer.Context,
    pipeline: str,
    production: bool,
    project: Optional[str],
    verbose: bool,
    recipient: Optional[str] = None,
) -> None:
    """Merge command options with the global ones and run a pipeline."""
    options = ctx.obj if isinstance(ctx.obj, CLIContext) else CLIContext()
    production = production or options.production
    project = project if project is not None else options.project
    verbose = verbose or options.verbose
    run_pipeline(pipeline, resolve_settings(project, production, recipient), verbose)


@typer_app.callback(invoke_without_command=True)
def cli(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    production: Production = False,
    project: Project = None,
    verbose: Verbose = False,
) -> None:
    """Build templated HTML e-mails. Without a command: build, serve and watch."""
    if version:
        typer.echo(f"mailforge {__version__}")
        raise typer.Exit()

    ctx.obj = CLIContext(production=production, project=project, verbose=verbose)
    if ctx.invoked_subcommand is None:
        start(ctx, "serve", production, project, verbose)


@typer_app.command()
def build(
    ctx: typer.Context,
    production: Production = False,
    project: Project = None,
    verbose: Verbose = False,
) -> None:
    """Compile pages, styles and images into dist/<project>."""
    start(ctx, "build", production, project, verbose)


@typer_app.command()
def serve(
    ctx: typer.Context,
    production: Production = False,
    project: Project = None,
    verbose: Verbose = False,
) -> None:
    """Build, start the preview server and rebuild on change."""
    start(ctx, "serve", production, project, verbose)


@typer_app.command()
def package(
    ctx: typer.Context,
    production: Production = False,
    project: Project = None,
    verbose: Verbose = False,
) -> None:
    """Build, then write one zip per e-mail with the images it uses."""
    start(ctx, "package", production, project, verbose)


@typer_app.command()
def litmus(
    ctx: typer.Context,
    production: Production = False,
    project: Project = None,
    verbose: Verbose = False,
) -> None:
    """Build, upload images and submit every e-mail for render testing."""
    start(ctx, "litmus", production, project, verbose)


@typer_app.command()
def mail(
    ctx: typer.Context,
    production: Production = False,
    project: Project = None,
    to: Recipient = None,
    verbose: Verbose = False,
) -> None:
    """Build, upload images and send every e-mail as a sample."""
    start(ctx, "mail", production, project, verbose, to)


def app() -> None:
    """Entry point for the installed script."""
    typer_app()


if __name__ == "__main__":
    app()
