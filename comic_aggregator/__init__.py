"""
Comic Aggregator - Main Package

Aggregates comic listings from multiple unreliable sources, normalizes and
deduplicates them, and serves results through a freshness-aware cache.

Modules:
    sources: Source adapter contract, registry and HTTP client
    orchestrator: Request queue, integrity engine and scrape workflows
    normalizer: Listing schemas and result normalization
    utils: Logging and exceptions
"""

__version__ = "0.1.0"
__author__ = "Comic Aggregator Team"

__all__ = [
    "__version__",
    "__author__",
]
