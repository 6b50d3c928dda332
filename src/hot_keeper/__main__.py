"""Allow ``python -m hot_keeper``."""

from hot_keeper.cli import app

app()
