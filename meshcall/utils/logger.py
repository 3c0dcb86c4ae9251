"""Logging utilities.

meshcall logs through loguru. aiortc, aioice and websockets log through the
standard library and are very chatty at DEBUG (every STUN check, every
frame), so their level is set separately from ours.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

# Standard-library loggers of the WebRTC and websocket stack.
LIBRARY_LOGGERS = ("aiortc", "aioice", "websockets")


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Union[Path, str]] = None,
    rotation: str = "10 MB",
    retention: str = "1 week",
    library_level: str = "WARNING",
) -> None:
    """Setup logging configuration.

    Args:
        log_level: meshcall logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        rotation: Log rotation size
        retention: Log retention period
        library_level: Level for the aiortc, aioice and websockets loggers
    """
    level = log_level.upper()
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
        )

    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level.upper())


def get_logger(name: str):
    """Get a logger bound to a module name."""
    return logger.bind(name=name)
