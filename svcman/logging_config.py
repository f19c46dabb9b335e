"""Logging setup for the svcman command line."""

import logging
import sys
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int | str = logging.INFO, log_file: Optional[Path] = None,
                  format_string: str = DEFAULT_FORMAT) -> None:
    """
    Configure the root logger.

    Args:
        level: logging level or level name
        log_file: optional file to log to in addition to stderr
        format_string: record format
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=format_string, handlers=handlers, force=True)
    # psutil and pywin32 stay quiet unless something is wrong
    logging.getLogger("psutil").setLevel(logging.WARNING)
