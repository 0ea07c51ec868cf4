"""
Logging setup for cellpad.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
configure_logging() once to attach a Rich handler to the package logger.
"""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "cellpad"


def configure_logging(level: Union[int, str] = "WARNING", console: Optional[Console] = None) -> logging.Logger:
    """
    Attach a RichHandler writing to stderr to the package logger.

    Calling it again only changes the level.

    Args:
        level: Level name or number
        console: Console to log to (defaults to a stderr console)

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(handler)

    return logger
