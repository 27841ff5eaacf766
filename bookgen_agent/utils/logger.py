"""
Logging utilities for Bookgen Agent.

Configures the root logger once for CLI workers and the API server.
"""

import logging
import sys


_logging_configured = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str = "INFO",
    format: str = DEFAULT_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT
) -> None:
    """Set up logging for the project.

    Idempotent. A second call only changes the level and formatter of the
    handlers already installed.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        format: Log message format string.
        date_format: Date format for timestamps.

    Examples:
        >>> setup_logging(level="DEBUG")
        >>> get_logger(__name__).debug("claimed job 3")
    """
    global _logging_configured

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    formatter = logging.Formatter(format, date_format)

    if _logging_configured:
        for handler in root_logger.handlers:
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
        return

    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Third-party HTTP clients log every request at INFO
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger, configuring defaults on first use.

    Args:
        name: Module name, usually ``__name__``.

    Returns:
        Logger instance.
    """
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)
