"""Logging utilities."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List

from .config import AgentConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s"


def configure_logging(config: AgentConfig, *, console: bool = True) -> Path:
    """Install the agent's file and console handlers.

    The scheduler and retention loops run on named threads, so the thread name
    is part of every record. Returns the path of the rotating log file.
    """
    log_dir = config.logging.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "hostwatch.log"

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: List[logging.Handler] = []

    rotating_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    rotating_handler.setFormatter(formatter)
    handlers.append(rotating_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=config.logging.level.upper(), handlers=handlers, force=True)

    logging.getLogger(__name__).debug("Logging configured with path %s", log_path)
    return log_path
