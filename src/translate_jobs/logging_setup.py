"""
Logging setup for translate-jobs.

Console output goes through rich; a rotating file keeps the history.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.logging import RichHandler

from translate_jobs.config import LoggingConfig

_HANDLER_MARK = "_translate_jobs_handler"


def setup_logging(config: LoggingConfig, console: Console | None = None) -> logging.Logger:
    """
    Configure the package logger.

    Safe to call more than once: handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        config: Logging section of the settings.
        console: Rich console for terminal output (stderr by default).

    Returns:
        The configured `translate_jobs` logger.
    """
    logger = logging.getLogger("translate_jobs")
    logger.setLevel(config.level)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(console_handler, _HANDLER_MARK, True)
    logger.addHandler(console_handler)

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(config.format))
        setattr(file_handler, _HANDLER_MARK, True)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
