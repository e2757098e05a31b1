"""
Logging utility for the Comic Aggregator.

Provides multi-destination logging with:
- Daily rotating file logs (YYYYMMDD_<name>.log)
- Colorized console output
- Size-based rotation with backup retention
- Module-specific logger instances with caching
- Package-level loggers for the orchestrator, normalizer and sources
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

import colorlog

from comic_aggregator.config import LoggingConfig


# Global logger cache to prevent duplicate logger creation
_LOGGER_CACHE: Dict[str, logging.Logger] = {}

_LOG_COLORS = {
    "DEBUG": "white",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


class LoggerConfig:
    """
    Centralized logger configuration manager.

    Manages log directories, file naming conventions, and formatting rules.
    """

    def __init__(self):
        """Initialize logger configuration from application settings."""
        self.log_dir = LoggingConfig.LOG_DIR
        self.log_level = getattr(logging, LoggingConfig.LOG_LEVEL.upper(), logging.INFO)
        self.max_bytes = LoggingConfig.MAX_LOG_SIZE
        self.backup_count = LoggingConfig.BACKUP_COUNT

        # File format (detailed)
        self.file_format = LoggingConfig.LOG_FORMAT
        self.date_format = LoggingConfig.DATE_FORMAT

        # Console format (colorized and simplified)
        self.console_format = (
            "%(log_color)s%(levelname)-8s%(reset)s "
            "%(cyan)s%(name)s%(reset)s - %(message)s"
        )

        LoggingConfig.ensure_log_directory()

    def get_daily_log_filename(self, logger_name: str) -> str:
        """
        Generate daily log filename with YYYYMMDD prefix.

        Args:
            logger_name: Name of the logger

        Returns:
            Formatted log filename (e.g., '20260107_comic_aggregator_orchestrator.log')
        """
        date_prefix = datetime.now().strftime("%Y%m%d")
        base_name = logger_name.replace(".", "_").lower()
        return f"{date_prefix}_{base_name}.log"

    def get_log_file_path(self, logger_name: str) -> Path:
        """Get full path to the log file for a logger."""
        return self.log_dir / self.get_daily_log_filename(logger_name)


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Create and configure a logger instance with file and console handlers.

    Features:
    - Daily log files with date prefix
    - Size-based rotation (10MB default) with 5 backups
    - Colorized console output
    - Detailed file logs, simplified console logs

    Args:
        name: Logger name (typically __name__ of calling module)
        level: Optional custom log level (defaults to config setting)

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(__name__)
        >>> logger.info("Aggregator started")
    """
    if name in _LOGGER_CACHE:
        return _LOGGER_CACHE[name]

    config = LoggerConfig()
    logger = logging.getLogger(name)
    logger.setLevel(level or config.log_level)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        _LOGGER_CACHE[name] = logger
        return logger

    file_handler = RotatingFileHandler(
        filename=config.get_log_file_path(name),
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)  # Capture all levels in file
    file_handler.setFormatter(
        logging.Formatter(fmt=config.file_format, datefmt=config.date_format)
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(config.log_level)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            fmt=config.console_format,
            datefmt=config.date_format,
            log_colors=_LOG_COLORS,
        )
    )

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    _LOGGER_CACHE[name] = logger
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Retrieve cached logger instance or create new one.

    Args:
        name: Logger name (typically __name__ of calling module)

    Returns:
        Cached or newly created logger instance

    Example:
        >>> from comic_aggregator.utils.logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Processing listings")
    """
    if name in _LOGGER_CACHE:
        return _LOGGER_CACHE[name]
    return setup_logger(name)


def get_orchestrator_logger() -> logging.Logger:
    """
    Get the package logger for the orchestration engine.

    Module loggers such as ``comic_aggregator.orchestrator.request_queue``
    propagate into its handlers.

    Example:
        >>> get_orchestrator_logger().info("Queue drained")
    """
    return get_logger("comic_aggregator.orchestrator")


def get_normalizer_logger() -> logging.Logger:
    """Get the package logger for result normalization."""
    return get_logger("comic_aggregator.normalizer")


def get_source_logger() -> logging.Logger:
    """Get the logger for source adapter and HTTP client activity."""
    return get_logger("comic_aggregator.sources")


def configure_logging() -> List[logging.Logger]:
    """
    Attach file and console handlers to every package logger.

    Module loggers propagate into these, so one call covers the whole
    package. Safe to call repeatedly.

    Returns:
        The orchestrator, normalizer and source loggers
    """
    return [get_orchestrator_logger(), get_normalizer_logger(), get_source_logger()]
