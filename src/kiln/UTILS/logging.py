"""Logging utilities."""

import logging
import sys


def setup_logging(level: str = "WARNING"):
    """
    Setup logging configuration.

    Log records go to stderr; stdout belongs to the commands being run.
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.StreamHandler(sys.stderr)
        ],
        force=True,
    )
