"""Console output and input helpers shared by the CLI commands."""

from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

console = Console()

# Outcome counters worth colouring in summaries
_SUMMARY_STYLES = {
    "created": "green",
    "patched": "cyan",
    "skipped": "yellow",
    "failed": "red",
    "invalid": "red",
}


def _echo(mark: str, message: str, color: str, err: bool = False) -> None:
    click.secho(f"{mark} {message}", fg=color, err=err)


def echo_success(message: str) -> None:
    _echo("✓", message, "green")


def echo_error(message: str) -> None:
    _echo("✗", message, "red", err=True)


def echo_warning(message: str) -> None:
    _echo("⚠", message, "yellow")


def echo_info(message: str) -> None:
    _echo("ℹ", message, "blue")


def format_duration(seconds: float) -> str:
    """Run duration as ``5.0s``, ``2m 5s`` or ``1h 2m 5s``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


def print_table(title: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    console.print(table)


def print_summary(counts: Mapping[str, Any], title: str) -> None:
    """Print run or validation counters, colouring the outcome rows."""
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in counts.items():
        style = _SUMMARY_STYLES.get(key) if value else None
        table.add_row(key.replace("_", " ").title(), str(value), style=style)
    console.print(table)


def read_ids_file(path: Path) -> list[str]:
    """Read Rally ObjectIDs or FormattedIDs from a text file.

    Ids are separated by newlines or commas; blank lines and ``#`` comments
    are ignored. Repeated ids are kept once, at their first position.
    """
    ids: dict[str, None] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0]
        for part in line.split(","):
            if part.strip():
                ids.setdefault(part.strip(), None)
    return list(ids)
