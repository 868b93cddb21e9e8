"""Allow ``python -m apiguard``."""

from apiguard.interfaces.cli.main import app

app()
