"""linecord CLI: inspect and maintain bridge state."""

import click
from linecord import __version__
from .shared import console


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="linecord")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug):
    """linecord: LINE ↔ Discord bridge core"""
    from linecord.main import configure_logging
    configure_logging(debug=debug)
    if ctx.invoked_subcommand is None:
        _show_help()


def _show_help():
    """Show all available commands."""
    console.print(f"[bold]linecord v{__version__}[/bold]: LINE ↔ Discord bridge core\n")
    commands = [
        ("status", "Show correlation and quota state"),
        ("sweep", "Remove correlations older than N days"),
        ("check-replies", "Self-test reply detection"),
    ]
    for name, desc in commands:
        console.print(f"    [bold]linecord {name:14s}[/bold] {desc}")
    console.print()
    console.print("[dim]Run 'linecord <command> --help' for details on a specific command.[/dim]")


# Import command modules (registers commands onto cli group)
from . import cmd_status  # noqa: E402, F401
from . import cmd_maintenance  # noqa: E402, F401
