"""
Sources Module

Source adapter contract, registry and the shared HTTP client.

Components:
    - SourceAdapter: Base class for comic sources
    - SourceRegistry: Adapter lookup and operation dispatch
    - OPERATIONS: Operation name to adapter method mapping
    - HttpSourceClient: aiohttp client with block detection
"""

from .base import OPERATIONS, SourceAdapter, SourceRegistry
from .http import BlockDetection, HttpSourceClient, detect_block

__all__ = [
    "OPERATIONS",
    "SourceAdapter",
    "SourceRegistry",
    "HttpSourceClient",
    "BlockDetection",
    "detect_block",
]
