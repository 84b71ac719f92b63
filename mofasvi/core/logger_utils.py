"""Logger utilities and protocols for consistent logging across the codebase."""

import logging
from enum import Enum
from typing import Optional, Protocol

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(Enum):
    """Valid logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggerProtocol(Protocol):
    """Protocol for logger objects.

    Any object implementing these methods can be used as a logger.
    """

    def info(self, msg: str, *args, **kwargs) -> None:
        """Log info message."""
        ...

    def warning(self, msg: str, *args, **kwargs) -> None:
        """Log warning message."""
        ...

    def error(self, msg: str, *args, **kwargs) -> None:
        """Log error message."""
        ...

    def debug(self, msg: str, *args, **kwargs) -> None:
        """Log debug message."""
        ...


def ensure_logger(logger: Optional[LoggerProtocol], name: str = "mofasvi") -> LoggerProtocol:
    """Ensure a logger exists, falling back to a named module logger.

    Parameters
    ----------
    logger : LoggerProtocol or None
        Existing logger or None
    name : str
        Name for the fallback ``logging`` logger

    Returns
    -------
    LoggerProtocol
        The provided logger or ``logging.getLogger(name)``
    """
    if logger is not None:
        return logger
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", fmt: str = DEFAULT_FORMAT) -> logging.Logger:
    """Configure root logging for command-line runs.

    Parameters
    ----------
    level : str
        One of the ``LogLevel`` values (case-insensitive)
    fmt : str
        Format string passed to ``logging.basicConfig``

    Returns
    -------
    logging.Logger
        The package logger

    Raises
    ------
    ValueError
        If ``level`` is not a valid ``LogLevel``
    """
    valid_levels = [lvl.value for lvl in LogLevel]
    if level.upper() not in valid_levels:
        raise ValueError(f"log_level must be one of {valid_levels}, got {level}")

    logging.basicConfig(level=getattr(logging, level.upper()), format=fmt)
    package_logger = logging.getLogger("mofasvi")
    package_logger.setLevel(getattr(logging, level.upper()))
    return package_logger
