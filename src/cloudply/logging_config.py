"""
Logging Configuration
Opt-in console/file output for the 'cloudply' loggers. The library itself
only creates module loggers and never configures handlers on import.
"""
import logging
import sys
from typing import Optional, Union

from cloudply.config import LOG_DATE_FORMAT, LOG_FORMAT


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach handlers to the 'cloudply' package logger.

    Args:
        level: Logging level, as a number or a name ("DEBUG", "info", ...).
        log_file: Optional path; records are also written there (overwritten).

    Returns:
        The configured package logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown logging level '{level}'.")

    logger = logging.getLogger("cloudply")
    logger.setLevel(level)

    # Repeated setup replaces the previous handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug(f"Logging initialized at level {logging.getLevelName(level)}.")
    return logger
