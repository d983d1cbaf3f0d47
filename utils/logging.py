"""Logging helpers shared by the flashmorse modules."""

from __future__ import annotations

import logging
import sys

from config import LOG_LEVEL

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
DATE_FORMAT = '%H:%M:%S'

_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    _configured = True

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root = logging.getLogger('flashmorse')
    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``flashmorse`` namespace."""
    _configure_root()
    if not name.startswith('flashmorse'):
        name = f'flashmorse.{name}'
    return logging.getLogger(name)


morse_logger = get_logger('flashmorse.morse')
app_logger = get_logger('flashmorse.app')
