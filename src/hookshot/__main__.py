"""Allow ``python -m hookshot``."""

from hookshot.cli import app

app()
