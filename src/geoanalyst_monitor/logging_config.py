from __future__ import annotations

import sys

from loguru import logger


CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level:<7}</level> | {name} | {message}"


def configure_logging(*, level: str, json_logs: bool) -> None:
    log_level = level.strip().upper() or "INFO"
    logger.remove()
    if json_logs:
        logger.add(sys.stderr, level=log_level, serialize=True)
    else:
        logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT)
