"""
Logging setup for convergedb.
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig


PACKAGE_LOGGER = "convergedb"


def configure_logging(
    config: Optional[LoggingConfig] = None, console: Optional[Console] = None
) -> logging.Logger:
    """
    Attach handlers to the package logger.

    Console output goes through rich unless ``config.rich`` is off; a rotating
    file handler is added when ``config.file`` is set. Calling this again
    replaces the handlers installed by the previous call.
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.rich:
        console_handler: logging.Handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(config.format))
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if config.file:
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(config.format))
        logger.addHandler(file_handler)

    return logger
