"""
Redis Control Script for the settlement engine
Pause / resume new positions, or halt trading entirely, across every engine
replica without restarting them.

Usage:
  python redis_control.py status
  python redis_control.py pause
  python redis_control.py resume
  python redis_control.py done        # halts every trader-facing operation
  python redis_control.py undone
"""
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import RedisConfig
from core.control_switch import RedisControlSwitch, get_redis_client

app = typer.Typer(help="Shared pause/done flags for the settlement engine")
console = Console()


def _switch() -> Optional[RedisControlSwitch]:
    cfg = RedisConfig()
    client = get_redis_client(cfg)
    if client is None:
        console.print(f"[red]✗ Redis connection failed ({cfg.host}:{cfg.port})[/red]")
        console.print("  Make sure Redis is running: redis-server")
        return None
    return RedisControlSwitch(client, cfg.prefix)


def display_status(switch: RedisControlSwitch) -> None:
    """Display current flags."""
    paused, done = switch.is_paused(), switch.is_done()
    table = Table(title="SETTLEMENT ENGINE - CURRENT STATUS")
    table.add_column("Flag")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("paused", switch.key("paused"),
                  "[yellow]PAUSED[/yellow]" if paused else "[green]open[/green]")
    table.add_row("done", switch.key("done"),
                  "[red]DONE[/red]" if done else "[green]live[/green]")
    console.print(table)
    if done:
        console.print("  - every trader-facing operation is rejected")
    elif paused:
        console.print("  - no new positions; closes still settle")


@app.command()
def status():
    """Show the current flags."""
    switch = _switch()
    if switch is None:
        raise typer.Exit(1)
    display_status(switch)


@app.command()
def pause():
    """Stop new positions (intake and open settlement)."""
    switch = _switch()
    if switch is None:
        raise typer.Exit(1)
    switch.set_paused(True)
    console.print("[yellow]✓ Trading PAUSED[/yellow]")
    display_status(switch)


@app.command()
def resume():
    """Allow new positions again."""
    switch = _switch()
    if switch is None:
        raise typer.Exit(1)
    switch.set_paused(False)
    console.print("[green]✓ Trading RESUMED[/green]")
    display_status(switch)


@app.command()
def done(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Halt every trader-facing operation."""
    switch = _switch()
    if switch is None:
        raise typer.Exit(1)
    console.print(Panel.fit("[bold red]⚠️  This rejects every open, close and update![/bold red]",
                            border_style="red"))
    if not yes and not typer.confirm("Halt trading?"):
        console.print("Cancelled.")
        raise typer.Exit(0)
    switch.set_done(True)
    display_status(switch)


@app.command()
def undone():
    """Re-enable trading after a halt."""
    switch = _switch()
    if switch is None:
        raise typer.Exit(1)
    switch.set_done(False)
    console.print("[green]✓ Trading re-enabled[/green]")
    display_status(switch)


if __name__ == "__main__":
    app()
