"""
Run command: execute a transfer.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from datapump.core.config import ConfigError, load_options, parse_assignments
from datapump.core.config.models import TransferOptions
from datapump.core.engine.coordinator import ProgressStats
from datapump.core.errors import ExitCode, FatalError
from datapump.core.logging import setup_logging
from datapump.core.orchestrator import TransferSummary, run_transfer

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _collect_overrides(
    assignments: list[str] | None,
    **flags: Any,
) -> dict[str, Any]:
    """Merge ``--set`` assignments with the dedicated flags (flags win)."""
    overrides = parse_assignments(assignments or [])
    for key, value in flags.items():
        if value is not None:
            overrides[key] = value
    return overrides


def run_command(
    options_file: Optional[Path] = typer.Option(
        None,
        "--options",
        "-o",
        help="YAML or JSON options file",
    ),
    source: Optional[str] = typer.Option(
        None,
        "--source",
        "-s",
        help="Backend to export data from",
    ),
    target: Optional[str] = typer.Option(
        None,
        "--target",
        "-t",
        help="Backend to import data into",
    ),
    assignments: Optional[list[str]] = typer.Option(
        None,
        "--set",
        help="Override any option as dotted.key=value (repeatable)",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        "-c",
        min=1,
        help="Number of worker processes",
    ),
    step: Optional[int] = typer.Option(
        None,
        "--step",
        min=1,
        help="Records per work unit",
    ),
    test: bool = typer.Option(
        False,
        "--test",
        help="Read from the source without writing to the target",
    ),
    ignore_errors: bool = typer.Option(
        False,
        "--ignore-errors",
        help="Skip units that keep failing instead of aborting",
    ),
    retry: Optional[int] = typer.Option(
        None,
        "--retry",
        min=0,
        help="Attempts per backend call",
    ),
    memory_limit: Optional[float] = typer.Option(
        None,
        "--memory-limit",
        min=0.0,
        max=1.0,
        help="Stall workers above this used/budget memory ratio",
    ),
    transform: Optional[Path] = typer.Option(
        None,
        "--transform",
        "-x",
        help="Python file defining transform(record) -> record",
    ),
    mapping: Optional[bool] = typer.Option(
        None,
        "--mapping/--no-mapping",
        help="Copy metadata before the data",
    ),
    data: Optional[bool] = typer.Option(
        None,
        "--data/--no-data",
        help="Copy the records",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also write logs to this file",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Transfer records from a source backend to a target backend.

    Examples:
        datapump run -s jsonl -t sql --set source.file=dump.jsonl --set target.url=sqlite:///out.db --set target.table=docs
        datapump run --options transfer.yaml --concurrency 8
        datapump run -o transfer.yaml --test --no-mapping
    """
    try:
        overrides = _collect_overrides(
            assignments,
            **{
                "drivers.source": source,
                "drivers.target": target,
                "run.concurrency": concurrency,
                "run.step": step,
                "run.test": True if test else None,
                "run.mapping": mapping,
                "run.data": data,
                "errors.retry": retry,
                "errors.ignore": True if ignore_errors else None,
                "memory.limit": memory_limit,
                "xform.file": str(transform) if transform else None,
                "log.file": str(log_file) if log_file else None,
                "log.debug": True if verbose else None,
            },
        )
        options = load_options(options_file, overrides)
    except ConfigError as e:
        err_console.print(f"[red]{e}[/red]")
        if e.details:
            err_console.print(f"[dim]{e.details}[/dim]")
        raise typer.Exit(int(e.exit_code))

    setup_logging(
        level=options.log.level,
        log_file=options.log.file,
        json_format=options.log.json_format,
        timestamps=options.log.timestamps,
    )

    _print_header(options)
    summary = _run_transfer(options)

    console.print()
    _show_summary(options, summary)


def _print_header(options: TransferOptions) -> None:
    console.print()
    console.print(
        f"[bold]Transferring[/bold] [cyan]{options.drivers.source}[/cyan] -> "
        f"[cyan]{options.drivers.target}[/cyan]"
    )
    if options.run.test:
        console.print("[yellow]Test run - nothing will be written to the target[/yellow]")
    console.print()


def _run_transfer(options: TransferOptions) -> TransferSummary:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Transferring...[/cyan]", total=None)

        def on_progress(stats: ProgressStats) -> None:
            progress.update(
                task,
                completed=stats.processed,
                total=stats.total_expected or None,
            )

        try:
            return asyncio.run(run_transfer(options, on_progress))
        except FatalError as e:
            progress.stop()
            err_console.print(f"[red]Transfer failed:[/red] {e}")
            details = getattr(e, "details", None)
            if details:
                err_console.print(f"[dim]{details}[/dim]")
            raise typer.Exit(int(e.exit_code))
        except Exception as e:
            progress.stop()
            logger.exception(f"Uncaught error during transfer: {e}")
            raise typer.Exit(int(ExitCode.UNCAUGHT))


def _show_summary(options: TransferOptions, summary: TransferSummary) -> None:
    """Show summary table of the transfer."""
    table = Table(title="Transfer Summary")

    table.add_column("Source", style="cyan")
    table.add_column("Target", style="cyan")
    table.add_column("Processed", justify="right", style="green")
    table.add_column("Total", justify="right")
    table.add_column("Failed units", justify="right", style="red")
    table.add_column("Peak memory", justify="right")
    table.add_column("Workers", justify="right")
    table.add_column("Duration", justify="right")

    duration = f"{summary.duration_seconds:.1f}s" if summary.duration_seconds else "-"
    table.add_row(
        options.drivers.source,
        options.drivers.target,
        str(summary.processed),
        str(summary.total),
        str(summary.failed_units),
        f"{summary.peak_memory_ratio:.0%}",
        str(summary.concurrency or "-"),
        duration,
    )
    console.print(table)

    if summary.skipped:
        console.print(f"[dim]Skipped: {', '.join(summary.skipped)}[/dim]")

    if summary.errors:
        console.print()
        console.print("[red]Errors:[/red]")
        for error in summary.errors[:5]:
            console.print(f"  • {error}")
        if len(summary.errors) > 5:
            console.print(f"  [dim]... and {len(summary.errors) - 5} more[/dim]")
