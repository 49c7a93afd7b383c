"""MCPorter command-line interface."""

from mcporter.cli.main import cli, main, parse_arguments

__all__ = ["cli", "main", "parse_arguments"]
