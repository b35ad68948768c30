from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "boomerang"
HANDLER_MARK = "_boomerang_handler"

DETAILED_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s"
SIMPLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> logging.Logger:
    """Attach console and optional rotating file handlers to the ``boomerang`` logger.

    Safe to call repeatedly: handlers installed by an earlier call are replaced,
    never duplicated. Console output goes to stderr so command output on stdout
    stays machine-readable.
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        if getattr(handler, HANDLER_MARK, False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(SIMPLE_FORMAT, datefmt="%H:%M:%S"))
    setattr(console_handler, HANDLER_MARK, True)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(DETAILED_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        setattr(file_handler, HANDLER_MARK, True)
        logger.addHandler(file_handler)
        logger.setLevel(min(log_level, logging.DEBUG))

    return logger
