"""
Source adapter contract and registry.

Adapters turn one comic site or API into the common operations the
orchestrator schedules. Field extraction lives in the adapters; the
orchestrator only sees their return values.
"""

import logging
from typing import Any, Dict, List, Optional

from ..utils.exceptions import NotFoundError, UnsupportedOperationError

logger = logging.getLogger(__name__)

# Operation name -> adapter coroutine method
OPERATIONS: Dict[str, str] = {
    "latest": "get_latest",
    "popular": "get_popular",
    "recommended": "get_recommended",
    "search": "search",
    "detail": "get_detail",
    "chapter": "get_chapter_images",
    "genre": "get_by_genre",
    "genres": "get_genres",
}


class SourceAdapter:
    """
    Base class for comic source adapters.

    Subclasses set ``source_id`` and ``name`` and override the operations
    their source offers. Operations left alone raise
    UnsupportedOperationError.

    List operations return a list of item dicts (or ComicItem models), or a
    paginated wrapper ``{current_page, length_page, has_next, has_prev, data}``.

    Example:
        >>> class AquaAdapter(SourceAdapter):
        ...     source_id = "aqua"
        ...     name = "AquaReader"
        ...     async def get_latest(self, page=1):
        ...         return {"current_page": page, "length_page": 5, "data": [...]}
        >>> AquaAdapter().supports("latest")
        True
    """

    source_id: str = ""
    name: str = ""

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{self.name or self.source_id} does not support {operation}",
            source=self.source_id,
            operation=operation,
        )

    async def get_latest(self, page: int = 1) -> Any:
        raise self._unsupported("latest")

    async def get_popular(self) -> Any:
        raise self._unsupported("popular")

    async def get_recommended(self) -> Any:
        raise self._unsupported("recommended")

    async def search(self, keyword: str) -> Any:
        raise self._unsupported("search")

    async def get_detail(self, slug: str) -> Any:
        raise self._unsupported("detail")

    async def get_chapter_images(self, slug: str) -> Any:
        raise self._unsupported("chapter")

    async def get_by_genre(self, genre_slug: str, page: int = 1) -> Any:
        raise self._unsupported("genre")

    async def get_genres(self) -> Any:
        raise self._unsupported("genres")

    def supports(self, operation: str) -> bool:
        """True when the adapter overrides the operation's method."""
        method_name = OPERATIONS.get(operation)
        if method_name is None:
            return False
        return getattr(type(self), method_name) is not getattr(SourceAdapter, method_name)

    def supported_operations(self) -> List[str]:
        return [operation for operation in OPERATIONS if self.supports(operation)]

    async def close(self) -> None:
        """Release adapter resources (HTTP sessions and the like)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_id={self.source_id!r})"


class SourceRegistry:
    """
    Registered source adapters, keyed by source id.

    Registration order is kept and used as the default source order for
    multi-source aggregation.
    """

    def __init__(self, adapters: Optional[List[SourceAdapter]] = None):
        self._adapters: Dict[str, SourceAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        """
        Add an adapter, replacing any adapter with the same id.

        Raises:
            ValueError: If the adapter has no ``source_id``
        """
        if not adapter.source_id:
            raise ValueError(f"{type(adapter).__name__} has no source_id")
        if adapter.source_id in self._adapters:
            logger.warning(f"Replacing registered source: {adapter.source_id}")
        self._adapters[adapter.source_id] = adapter
        logger.info(
            f"Registered source: {adapter.source_id}",
            extra={"operations": adapter.supported_operations()},
        )

    def unregister(self, source_id: str) -> bool:
        removed = self._adapters.pop(source_id, None)
        if removed is not None:
            logger.info(f"Unregistered source: {source_id}")
        return removed is not None

    def get(self, source_id: str) -> SourceAdapter:
        """
        Look up an adapter.

        Raises:
            NotFoundError: If no adapter is registered under ``source_id``
        """
        adapter = self._adapters.get(source_id)
        if adapter is None:
            raise NotFoundError(f"Unknown source: {source_id}", resource=source_id, source=source_id)
        return adapter

    def list_sources(self) -> List[str]:
        return list(self._adapters)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def execute(self, source_id: str, operation: str, *args: Any) -> Any:
        """
        Run an operation on a source.

        Args:
            source_id: Registered source id
            operation: Operation name (see OPERATIONS)
            *args: Positional arguments for the adapter method

        Returns:
            Raw adapter result

        Raises:
            NotFoundError: Unknown source
            UnsupportedOperationError: Unknown operation name or not implemented by the adapter
        """
        adapter = self.get(source_id)
        method_name = OPERATIONS.get(operation)
        if method_name is None:
            raise UnsupportedOperationError(
                f"Unknown operation: {operation}", source=source_id, operation=operation
            )
        return await getattr(adapter, method_name)(*args)

    async def close(self) -> None:
        """Close every registered adapter."""
        for adapter in list(self._adapters.values()):
            await adapter.close()

    def __repr__(self) -> str:
        return f"SourceRegistry(sources={self.list_sources()})"
