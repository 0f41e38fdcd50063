"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty transport loggers: paho's protocol trace and aiohttp's access log.
NETWORK_LOGGERS = ("paho", "aiohttp.access")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers for either process.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO". Unknown names fall back to INFO.
    log_path:
        Optional file that receives the same records as the console.
    log_network:
        When true, broker and HTTP transport loggers follow ``level``; otherwise
        they only report warnings.
    """

    logging.captureWarnings(True)
    root_level = getattr(logging, level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(level=root_level, format=LOG_FORMAT, handlers=handlers, force=True)

    network_level = root_level if log_network else max(root_level, logging.WARNING)
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
