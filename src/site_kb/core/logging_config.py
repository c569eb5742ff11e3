"""
Process-wide logging setup.

All modules log through named standard-library loggers under the `kb.`
prefix; this only decides format and level once at startup.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure root logging. Safe to call more than once.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format=LOG_FORMAT,
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger("kb").setLevel(level)
    # httpx logs every request at INFO; crawls would drown the job log
    logging.getLogger("httpx").setLevel(logging.WARNING)
