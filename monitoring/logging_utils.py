import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_PREFIX = "trading-bot-"


def log_file_for(log_dir: Union[str, Path], day: Optional[datetime] = None) -> Path:
    day = day or datetime.now()
    return Path(log_dir) / f"{LOG_FILE_PREFIX}{day.strftime('%Y-%m-%d')}.log"


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_format: Optional[str] = None,
    log_dir: Optional[Union[str, Path]] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When ``log_dir`` is given, records are also appended to a dated file that
    the recent-log command reads back.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or LOG_FORMAT
    handlers = [logging.StreamHandler()]
    if log_dir:
        path = log_file_for(log_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding='utf-8'))
    logging.basicConfig(level=level, format=fmt, datefmt=DATE_FORMAT, handlers=handlers)
