"""CLI entrypoint for running chorus as a module."""

from chorus.cli import cli
from chorus.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
