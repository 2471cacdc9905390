"""
Logging setup for ComicCraft.

Console output is always enabled; a dated log file is added when a
directory is given.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logging_initialized = False


def setup_logging(
    log_level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Configure the root logger once at startup.

    Args:
        log_level: Level as an int or a name such as "DEBUG".
        log_dir: Optional directory for a comiccraft_YYYYMMDD.log file.
    """
    global _logging_initialized

    if _logging_initialized:
        return

    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / f"comiccraft_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"Could not create log file: {e}. Logging to console only.")

    _logging_initialized = True
