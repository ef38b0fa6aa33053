"""Logging configuration for the CLI and services."""
import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr at the given level."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
