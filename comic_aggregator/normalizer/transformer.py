"""
Result normalization for source adapter output.

Turns whatever an adapter returns (pydantic models, lists, dicts) into
plain JSON-compatible structures the integrity engine and the cache can
work with.
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from ..utils.exceptions import DataNormalizationError
from .schemas import ComicItem, PaginatedResult

logger = logging.getLogger(__name__)

PAGINATION_FIELDS = ("current_page", "length_page", "has_next", "has_prev")


class ResultNormalizer:
    """
    Convert adapter results into JSON-compatible data.

    Supported shapes are pydantic models, dictionaries, lists, tuples and
    scalars (str, int, float, bool, None); dates are rendered as ISO strings
    and enums by value. Anything else is rejected.

    Example:
        >>> ResultNormalizer.normalize([ComicItem(title="Naruto", href="/m/2")])
        [{'title': 'Naruto', 'href': '/m/2'}]
        >>> ResultNormalizer.extract_items({"current_page": 1, "length_page": 3, "data": []})
        ([], {'current_page': 1, 'length_page': 3})
    """

    @staticmethod
    def normalize(raw: Any, source: Optional[str] = None) -> Any:
        """
        Normalize an adapter result.

        Args:
            raw: Adapter output
            source: Source identifier for error context

        Returns:
            JSON-compatible copy of ``raw``

        Raises:
            DataNormalizationError: If ``raw`` contains an unsupported type
        """
        if raw is None or isinstance(raw, (str, bool, int, float)):
            return raw
        if isinstance(raw, BaseModel):
            return raw.model_dump(mode="json", exclude_none=True)
        if isinstance(raw, Enum):
            return ResultNormalizer.normalize(raw.value, source)
        if isinstance(raw, (datetime, date)):
            return raw.isoformat()
        if isinstance(raw, dict):
            return {
                str(key): ResultNormalizer.normalize(value, source)
                for key, value in raw.items()
            }
        if isinstance(raw, (list, tuple)):
            return [ResultNormalizer.normalize(value, source) for value in raw]

        raise DataNormalizationError(
            f"Unsupported result type: {type(raw).__name__}",
            source=source,
            value=raw,
        )

    @staticmethod
    def extract_items(result: Any) -> tuple[list, Optional[dict]]:
        """
        Unwrap one pagination layer.

        Args:
            result: Normalized result (list or ``{data: [...], ...}`` wrapper)

        Returns:
            Tuple of (items, pagination) where pagination holds the navigation
            fields present on the wrapper, or None for bare lists and
            non-list results
        """
        if isinstance(result, list):
            return result, None
        if isinstance(result, dict) and isinstance(result.get("data"), list):
            pagination = {key: result[key] for key in PAGINATION_FIELDS if key in result}
            return result["data"], pagination or None
        return [], None

    @staticmethod
    def is_list_shaped(result: Any) -> bool:
        """True for a bare list or a ``{data: [...]}`` wrapper."""
        return isinstance(result, list) or (
            isinstance(result, dict) and isinstance(result.get("data"), list)
        )

    @staticmethod
    def replace_items(result: Any, items: list) -> Any:
        """Put ``items`` back into the shape ``result`` came in."""
        if isinstance(result, dict) and isinstance(result.get("data"), list):
            return {**result, "data": items}
        return items

    @staticmethod
    def to_comic_items(items: list, source: Optional[str] = None) -> list[ComicItem]:
        """
        Validate raw item dictionaries into ComicItem models.

        Invalid entries are skipped and logged.
        """
        validated = []
        for index, item in enumerate(items):
            try:
                validated.append(ComicItem.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    f"Skipping invalid item #{index} from {source or 'unknown source'}",
                    extra={"errors": e.error_count()},
                )
        return validated

    @staticmethod
    def to_paginated(result: dict, source: Optional[str] = None) -> PaginatedResult:
        """
        Validate a paginated wrapper.

        Raises:
            DataNormalizationError: If the wrapper fails validation
        """
        try:
            return PaginatedResult.model_validate(result)
        except ValidationError as e:
            raise DataNormalizationError(
                f"Invalid paginated result: {e.error_count()} error(s)",
                source=source,
                field="pagination",
            ) from e
