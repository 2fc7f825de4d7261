from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

LOGGER_NAME = "promptcron"
LOG_FILE = "promptcron.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(home: Optional[Path] = None, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger
    formatter = logging.Formatter(LOG_FORMAT)
    if home is not None:
        home.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(home / LOG_FILE, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


@contextmanager
def run_log(path: Path) -> Iterator[None]:
    """Mirror everything the promptcron logger emits into one run's log file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(logging.DEBUG)
    logger = logging.getLogger(LOGGER_NAME)
    previous_level = logger.level
    if previous_level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    try:
        yield
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
        handler.close()


def write_raw(path: Path, text: str) -> None:
    """Append text verbatim to a run log, bypassing the formatter."""
    if not text.endswith("\n"):
        text += "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)
