"""
datapump CLI - Main entry point.

Moves records between storage backends in parallel: Elasticsearch,
SQL databases, JSON-lines files and whatever plugins are installed.
"""

from __future__ import annotations

from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.traceback import install as install_rich_traceback

from datapump import __app_name__, __version__

# Options files may reference ${VARS} defined in a local .env
load_dotenv()

install_rich_traceback(show_locals=False, width=120)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name=__app_name__,
    help="Parallel bulk record transfer between storage backends",
    rich_markup_mode="rich",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]{__app_name__}[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """datapump - copy records from a source backend to a target backend."""


# =============================================================================
# Register commands
# =============================================================================

from .commands import drivers, run  # noqa: E402

app.command("run")(run.run_command)
app.command("drivers")(drivers.drivers_command)


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
