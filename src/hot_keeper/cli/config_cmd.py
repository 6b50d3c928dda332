"""Config subcommand group for configuration management."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel

from hot_keeper.config import DEFAULT_CONFIG_FILE, Settings, atomic_write_config, load_settings
from hot_keeper.core.errors import ConfigInvalid

app = typer.Typer(help="Configuration management")
console = Console()


@app.command()
def init(
    path: Path = typer.Argument(Path(DEFAULT_CONFIG_FILE), help="Config file to create"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing config"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port number"),
):
    """Write a default configuration file."""
    if path.exists() and not force:
        console.print(f"[yellow]Config file already exists:[/yellow] {path}")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(code=1)

    try:
        settings = Settings(**({"port": port} if port is not None else {}))
        atomic_write_config(path, settings.to_file_dict())
    except Exception as e:
        console.print(f"[red]Configuration initialization failed:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Configuration initialized:[/green] {path}")


@app.command()
def show(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON instead of formatted panel"),
):
    """Show the effective configuration (file, environment and defaults merged)."""
    try:
        settings = load_settings(config)
    except ConfigInvalid as e:
        console.print(f"[red]Configuration invalid:[/red] {e}")
        raise typer.Exit(code=1)

    data = json.dumps(settings.to_file_dict(), indent=2)
    if json_output:
        typer.echo(data)
    else:
        console.print(Panel(JSON(data), title="Configuration", border_style="cyan"))
