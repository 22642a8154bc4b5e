"""Debug logging setup.

The interactive session owns the terminal, so diagnostics must never be
written to stdout or stderr. With ``CATTY_DEBUG=1`` they go to a file in the
home directory; otherwise they are discarded.
"""

from __future__ import annotations

import logging

from .config import get_debug_log_path, is_debug_enabled

LOGGER_NAME = "catty"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"

_configured = False


def configure_debug_logging(path: str | None = None, *, force: bool = False) -> logging.Logger:
    """Attach the debug handler to the ``catty`` logger (once per process).

    An explicit ``path`` enables file logging regardless of ``CATTY_DEBUG``;
    ``force`` reconfigures an already configured logger.
    """
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    if _configured and not force:
        return logger

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    if path is not None or is_debug_enabled():
        handler: logging.Handler = logging.FileHandler(
            path or get_debug_log_path(), encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.setLevel(logging.DEBUG)
    else:
        handler = logging.NullHandler()
    logger.addHandler(handler)
    # Never bubble up to a root handler that might print to the terminal.
    logger.propagate = False
    _configured = True
    return logger


__all__ = ["configure_debug_logging", "LOGGER_NAME"]
