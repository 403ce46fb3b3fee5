"""
Logging utilities for consistent logging setup across the application.
"""

import logging


def setup_logger(logger: logging.Logger, log_level: int) -> None:
    """
    Attach a StreamHandler with the standard shadowgate format.

    Args:
        logger: The logger instance to configure
        log_level: The logging level to set
    """
    logger.setLevel(log_level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(log_level)
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def parse_log_level(value: str | None, default: int = logging.INFO) -> int:
    """Turn a level name such as ``"debug"`` into a logging constant."""
    if not value:
        return default
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default
