"""Maintenance commands: retention sweep and reply self-test."""

import click

from . import cli
from .shared import console


@cli.command()
@click.option("--days", "-d", type=float, default=None, help="Max age in days (default: configured retention)")
def sweep(days):
    """Remove correlations older than the retention window."""
    from linecord.config import load_settings
    from linecord.correlation import CorrelationStore
    from linecord.errors import PersistenceError

    settings = load_settings()
    max_age = days if days is not None else settings.correlation_max_age_days
    store = CorrelationStore(settings.correlation_file, max_entries=settings.correlation_max_entries)
    store.load()
    try:
        removed = store.sweep_expired(max_age)
    except PersistenceError as e:
        console.print(f"[red]Sweep failed to save: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓[/green] Removed {removed} correlations older than {max_age} days ({len(store)} left)")


@cli.command(name="check-replies")
def check_replies():
    """Self-test reply matchers and the annotation round trip."""
    from linecord.config import load_settings
    from linecord.main import build_bridge

    bridge = build_bridge(load_settings())
    result = bridge.replies.health_check()
    for name, ok in result["checks"].items():
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        console.print(f"  {mark} {name}")
    if result["healthy"]:
        console.print("[green]Reply detection healthy[/green]")
    else:
        console.print("[red]Reply detection failing[/red]")
        raise SystemExit(1)
