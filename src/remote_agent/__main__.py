"""Allow ``python -m remote_agent``."""

from remote_agent.cli.app import app

app()
