"""Root logging setup for the bridge service."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``bridge`` logger tree once; repeated calls only adjust the level."""
    logger = logging.getLogger("bridge")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(h, "_bridge_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._bridge_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    # Quiet the SDK's HTTP client unless debugging.
    if logger.level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
