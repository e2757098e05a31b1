"""
Tests Package

Unit and integration tests for the Comic Aggregator.

Structure:
    - Unit tests: Queue, integrity engine, health, cache, normalizer and sources
    - Integration tests: Orchestrator workflows over in-memory sources
    - fakes.py: Shared test doubles
"""

__all__ = []
