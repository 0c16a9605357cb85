"""Logging setup shared by every module.

Each module asks for ``get_logger("<component>")`` and gets a
``dictation.<component>`` logger that writes INFO and above to the console
and DEBUG and above to a rotating file under the data directory.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-26s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_ROOT_NAME = "dictation"


def _level_from_env() -> int:
    value = os.getenv("DICTATION_LOG_LEVEL", "INFO").upper()
    return getattr(logging, value, logging.INFO)


def configure_logging(log_dir: Optional[Path] = None) -> logging.Logger:
    """Attach console and file handlers to the ``dictation`` root logger.

    Safe to call more than once; handlers are only added the first time.
    """
    root = logging.getLogger(_ROOT_NAME)
    if root.handlers:
        return root

    root.setLevel(logging.DEBUG)
    root.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_level_from_env())
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "dictation.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(file_handler)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_ROOT_NAME}.{name}")
