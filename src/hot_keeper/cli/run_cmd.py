"""The ``run`` command: serve an application with hot reload."""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel

from hot_keeper.config import load_settings
from hot_keeper.core.app_loader import EntryPoint
from hot_keeper.core.errors import ConfigInvalid
from hot_keeper.daemon.logging_setup import setup_logging
from hot_keeper.daemon.runner import run_hot_keeper

console = Console(stderr=True)


def run(
    entry: str = typer.Argument(..., help="Entry point file for your application, optionally FILE:ATTRIBUTE"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to configuration file"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to run server on"),
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind"),
    secure: bool = typer.Option(False, "--secure", "-s", help="Use HTTPS instead of HTTP"),
    watch: Optional[List[str]] = typer.Option(None, "--watch", "-w", help="Directory to watch for changes (repeatable)"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", "-e", help="Directory to exclude from watching (repeatable)"),
    cert: Optional[str] = typer.Option(None, "--cert", help="Path to SSL certificate file"),
    key: Optional[str] = typer.Option(None, "--key", help="Path to SSL key file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, ...)"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write logs to this file"),
):
    """Run an application and hot reload it when its files change."""
    cwd = Path.cwd()

    try:
        entry_point = EntryPoint.parse(entry, cwd)
    except ConfigInvalid as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    if not entry_point.path.is_file():
        console.print(f"[red]Entry file not found:[/red] {entry_point.path}")
        raise typer.Exit(code=1)

    overrides = {
        "port": port,
        "host": host,
        "secure": True if secure else None,
        "watch": watch or None,
        "exclude_watch": exclude or None,
        "log_level": log_level,
        "log_file": str(log_file) if log_file is not None else None,
    }
    if cert or key:
        # Sources are deep-merged, so a lone --cert keeps the key from the config file
        overrides["certs"] = {k: v for k, v in (("cert", cert), ("key", key)) if v}

    setup_logging(log_level=log_level)

    try:
        settings = load_settings(config, overrides=overrides, cwd=cwd)
    except ConfigInvalid as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if settings.log_file or log_level is None:
        setup_logging(
            log_level=settings.log_level,
            log_file=Path(settings.log_file) if settings.log_file else None,
        )

    console.print(Panel(
        JSON(json.dumps(settings.to_file_dict(), indent=2)),
        title="Starting hot-keeper with configuration",
        border_style="cyan",
    ))

    raise typer.Exit(code=run_hot_keeper(entry, settings, cwd=cwd))

