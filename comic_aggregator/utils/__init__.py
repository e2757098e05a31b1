"""
Utils Module

Shared utilities and common functionality.

Components:
    - logger: Logging with daily rotation and colorized output
    - exceptions: Error taxonomy for sources, the request queue and aggregation
"""

from comic_aggregator.utils.logger import (
    LoggerConfig,
    configure_logging,
    get_logger,
    get_normalizer_logger,
    get_orchestrator_logger,
    get_source_logger,
    setup_logger,
)

__all__ = [
    # Logger utilities
    "LoggerConfig",
    "setup_logger",
    "get_logger",
    "get_orchestrator_logger",
    "get_normalizer_logger",
    "get_source_logger",
    "configure_logging",
]
