"""CLI package for hot-keeper."""

import typer

from hot_keeper.cli import config_cmd, run_cmd

app = typer.Typer(
    name="hot-keeper",
    help="Hot reload your ASGI application while keeping chosen values alive",
    no_args_is_help=True,
)

app.command(name="run", help="Serve an application with hot reload")(run_cmd.run)
app.add_typer(config_cmd.app, name="config", help="Configuration management")


@app.command()
def version():
    """Show version information."""
    from hot_keeper import __version__
    typer.echo(f"hot-keeper {__version__}")


if __name__ == "__main__":
    app()
