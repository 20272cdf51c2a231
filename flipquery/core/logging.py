"""
Logging for the flip query pipeline.

Every module logs through a child of the ``flipquery`` logger.  The stdout
handler is attached once, to that parent, and its level follows
``settings.log_level``.  httpx's own per-request lines are held at WARNING;
the SQL client logs each remote call itself.
"""
from __future__ import annotations

import logging
import sys

from flipquery.core.config import get_settings

ROOT_LOGGER = "flipquery"

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach the stdout handler to the package logger (once) and set its level."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)
        logging.getLogger("httpx").setLevel(logging.WARNING)
    level_name = (level or get_settings().log_level).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
