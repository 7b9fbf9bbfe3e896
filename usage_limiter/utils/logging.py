"""
Logging setup.

Configures the root logger for the command line entry point. Library
modules only call logging.getLogger(__name__).
"""

import logging
import os
from typing import Optional

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(level: Optional[str] = None, fmt: str = _DEFAULT_FORMAT, datefmt: str = _DEFAULT_DATEFMT) -> None:
    """Configure root logger.

    Respect `LOG_LEVEL` env var when level is not supplied.
    """
    log_level = (level or os.getenv("LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.WARNING), format=fmt, datefmt=datefmt)

