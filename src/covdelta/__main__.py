"""Allow ``python -m covdelta``."""

from covdelta.cli import cli

cli()
