"""
Handles custom logger configuration.
"""


import sys
from pathlib import Path

from loguru import logger

from .config import config


def config_logger(name: str) -> None:
    """
    Configures the default logger.

    Args:
        name: The name to use for the log file.

    """
    log_config = config["logging"]
    level = log_config["level"].as_str()

    logger.remove()
    logger.add(sys.stderr, level=level)

    log_dir = log_config["directory"].get()
    if log_dir is None:
        # Only log to the console.
        return

    log_dir = Path(log_config["directory"].as_filename())
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / f"{name}.log",
        level="DEBUG",
        enqueue=True,
        rotation="00:00",
        retention="30 days",
        compression="zip",
    )
