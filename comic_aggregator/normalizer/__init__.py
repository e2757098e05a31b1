"""
Normalizer Module

Comic listing schemas and adapter result normalization.

Components:
    - ComicItem: Normalized listing schema
    - PaginatedResult: Page wrapper schema
    - ResultNormalizer: Adapter output to JSON-compatible data
"""

from .schemas import ComicItem, PaginatedResult
from .transformer import ResultNormalizer

__all__ = [
    "ComicItem",
    "PaginatedResult",
    "ResultNormalizer",
]
