from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level} {name}:{line} {message}"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with a stderr sink at ``level``.

    When ``log_file`` is given everything down to DEBUG is written there too.
    Call once, before the first fetch.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, level="DEBUG", format=FILE_FORMAT, encoding="utf-8")
