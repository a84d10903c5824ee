"""
Drivers command: list registered backends.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from datapump.core.backends import registry
from datapump.core.errors import FatalError

console = Console()
err_console = Console(stderr=True)


def drivers_command(
    long: bool = typer.Option(
        False,
        "--long",
        "-l",
        help="Show versions, descriptions and options",
    ),
    dirs: Optional[list[Path]] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Extra directory with *_backend.py plugins (repeatable)",
    ),
) -> None:
    """List the available backends.

    Examples:
        datapump drivers
        datapump drivers --long --dir ./plugins
    """
    try:
        registry.discover(dirs or [])
    except FatalError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(int(e.exit_code))

    rows = registry.describe(detailed=long)

    table = Table(title="Available Backends", show_header=True, header_style="bold magenta")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    if long:
        table.add_column("Version", justify="right")
        table.add_column("Threadsafe", justify="center")
        table.add_column("Description", style="dim")

    for row in rows:
        if long:
            table.add_row(row["id"], row["name"], row["version"], row["threadsafe"], row["description"])
        else:
            table.add_row(row["id"], row["name"])

    console.print(table)

    if long:
        for row in rows:
            _show_options(row["id"])


def _show_options(backend_id: str) -> None:
    specs = registry.get(backend_id).option_specs()
    if not any(specs.values()):
        return

    table = Table(title=f"{backend_id} options", show_header=True, header_style="bold")
    table.add_column("Option", style="cyan")
    table.add_column("Default", style="dim")
    table.add_column("Help")

    for role in ("source", "target"):
        for name, spec in specs.get(role, {}).items():
            option = f"{role}.{name}" + (" [red]*[/red]" if spec.required else "")
            default = "" if spec.default is None else str(spec.default)
            table.add_row(option, default, spec.help)

    console.print()
    console.print(table)
