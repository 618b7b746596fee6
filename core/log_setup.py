"""loguru sink configuration shared by the engine entry points."""
from __future__ import annotations

import sys
from typing import Optional

from loguru import logger


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_file:
        logger.add(log_file, level=level, rotation="50 MB", retention=5, enqueue=True)
    logger.debug(f"Logging configured at {level}")
