"""Shared utilities for linecord CLI commands."""

from rich.console import Console
from rich.table import Table

console = Console()


def key_value_table(title: str, rows: dict) -> Table:
    """Two-column table of label → value."""
    table = Table(title=title, show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in rows.items():
        table.add_row(str(key), str(value))
    return table
