"""
Logging for the query engine.

All engine loggers live under the ``erpcopilot`` namespace and share one
stdout handler installed on that root the first time any logger is asked
for.  httpx is held at WARNING so each JSON-RPC round-trip does not add a
line of its own next to the executor's query log.
"""
from __future__ import annotations

import logging
import sys

from erpcopilot.core.config import get_settings

ROOT_LOGGER = "erpcopilot"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_QUIET_LIBRARIES = ("httpx", "httpcore")


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, get_settings().log_level.upper(), logging.INFO))
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return an engine logger; *name* is usually ``__name__``."""
    root = _configure_root()
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return root.getChild(name)
