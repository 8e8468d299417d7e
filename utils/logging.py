"""Logger factory shared by routes, workers and the tone engine."""

from __future__ import annotations

import logging
import sys

from config import LOG_FORMAT, LOG_LEVEL

_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger('tonewatch')
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(LOG_LEVEL).upper(), logging.INFO))
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``tonewatch`` hierarchy."""
    _configure_root()
    if not name.startswith('tonewatch'):
        name = f'tonewatch.{name}'
    return logging.getLogger(name)


tone_logger = get_logger('tonewatch.tones')
