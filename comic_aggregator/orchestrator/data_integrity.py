"""
Data Integrity Service.

Content fingerprinting, exact and fuzzy deduplication, processed-item
ledger, freshness tracking, validation and new-item detection for
scraped comic listings.

All ledger access is guarded by a re-entrant lock because the maintenance
sweep runs on a scheduler thread.
"""

import hashlib
import logging
import re
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from comic_aggregator.config import IntegrityConfig

logger = logging.getLogger(__name__)

SimilarityFunc = Callable[[str, str], float]

DEFAULT_HASH_FIELDS = ("title", "href")
DEFAULT_MERGE_FIELDS = ("genre", "chapter", "rating", "description")
DEDUP_STRATEGIES = ("newest", "oldest", "best_quality", "merge")

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def normalize_title(title: Any) -> str:
    """Lower-case a title and strip everything outside ``[a-z0-9]``."""
    if not isinstance(title, str):
        return ""
    return _NON_ALNUM.sub("", title.lower())


def character_overlap_similarity(first: str, second: str) -> float:
    """
    Cheap similarity ratio between two normalized titles.

    Equal strings score 1.0. When the shorter string is contained in the
    longer one the score is ``len(shorter) / len(longer)``. Otherwise it is
    the number of index-aligned equal characters divided by the longer
    length. This is a positional heuristic, not an edit distance.

    Args:
        first: First normalized string
        second: Second normalized string

    Returns:
        Similarity in [0, 1]

    Example:
        >>> character_overlap_similarity("narutoshippuden", "naruto")
        0.4
    """
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0

    longer, shorter = (first, second) if len(first) > len(second) else (second, first)

    if shorter in longer:
        return len(shorter) / len(longer)

    matches = sum(1 for index, char in enumerate(shorter) if longer[index] == char)
    return matches / len(longer)


def djb2_hash(text: str) -> str:
    """djb2 digest with 32-bit signed wrap-around, rendered in base 36."""
    value = 5381
    for char in text:
        value = ((value << 5) + value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    value = abs(value)

    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dot-separated path inside nested dictionaries."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _has_text(value: Any) -> bool:
    if value is None:
        return False
    return len(str(value)) > 0


class DataIntegrityService:
    """
    Fingerprint ledger, deduplication and freshness engine.

    Ledgers:
        - Processed fingerprints keyed by (context, hash), expiring after ``hash_expiry``
        - Freshness timestamps keyed by a free-form key (``<source>_<operation>``)
        - Per-context fingerprint sets of the last generation seen by
          ``detect_new_items``

    Timestamps in the ledgers come from ``clock`` (monotonic by default)
    and are only compared with each other.

    Example:
        >>> integrity = DataIntegrityService()
        >>> result = integrity.deduplicate(items, strategy="best_quality")
        >>> result["stats"]["unique"]
        12
    """

    def __init__(
        self,
        hash_expiry: Optional[float] = None,
        stale_threshold: Optional[float] = None,
        freshness_retention: Optional[float] = None,
        hash_algorithm: Optional[str] = None,
        similarity: SimilarityFunc = character_overlap_similarity,
        fuzzy_threshold: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize integrity service.

        Args:
            hash_expiry: Seconds a processed fingerprint stays valid
            stale_threshold: Default freshness threshold in seconds
            freshness_retention: Seconds before maintenance drops a freshness entry
            hash_algorithm: ``md5`` (hex) or ``djb2`` (base 36)
            similarity: Similarity function applied to normalized titles
            fuzzy_threshold: Similarity must be strictly greater than this to match
            clock: Time source in seconds
        """
        self.hash_expiry = hash_expiry if hash_expiry is not None else IntegrityConfig.HASH_EXPIRY_SECONDS
        self.stale_threshold = (
            stale_threshold if stale_threshold is not None else IntegrityConfig.STALE_THRESHOLD_SECONDS
        )
        self.freshness_retention = (
            freshness_retention if freshness_retention is not None
            else IntegrityConfig.FRESHNESS_RETENTION_SECONDS
        )
        self.hash_algorithm = (hash_algorithm or IntegrityConfig.HASH_ALGORITHM).lower()
        if self.hash_algorithm not in ("md5", "djb2"):
            raise ValueError(f"Unsupported hash algorithm: {self.hash_algorithm}")
        self.fuzzy_threshold = (
            fuzzy_threshold if fuzzy_threshold is not None else IntegrityConfig.FUZZY_THRESHOLD
        )
        self._similarity = similarity
        self._clock = clock

        self._lock = threading.RLock()
        self._processed: Dict[str, Dict[str, Any]] = {}
        self._freshness: Dict[str, Dict[str, Any]] = {}
        self._dedupe_index: Dict[str, Set[str]] = {}
        self._stats = self._empty_stats()

        logger.debug(
            f"DataIntegrityService initialized (hash={self.hash_algorithm}, "
            f"stale_threshold={self.stale_threshold}s)"
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "duplicates_detected": 0,
            "data_processed": 0,
            "fuzzy_matches": 0,
            "stale_data_refreshed": 0,
        }

    # ========== Fingerprints ==========

    def generate_hash(self, item: Any, fields: Sequence[str] = DEFAULT_HASH_FIELDS) -> str:
        """
        Compute the content fingerprint of an item.

        Field values are looked up by dotted path, lower-cased and stripped;
        empty values are skipped and the rest joined with ``|``.

        Args:
            item: Item dictionary
            fields: Field paths included in the fingerprint

        Returns:
            Hex MD5 or base-36 djb2 digest, or ``""`` for non-dict input
        """
        if not isinstance(item, dict) or not item:
            return ""

        parts = []
        for field_path in fields:
            value = get_nested_value(item, field_path)
            if value is None or value == "" or value is False:
                continue
            text = str(value).lower().strip()
            if text:
                parts.append(text)
        content = "|".join(parts)

        if self.hash_algorithm == "djb2":
            return djb2_hash(content)
        return hashlib.md5(content.encode("utf-8")).hexdigest()

    def generate_unique_id(self, item: Any) -> str:
        """Build ``comic_<slug>`` from the last href segment, falling back to the hash."""
        if not isinstance(item, dict) or not item:
            return ""

        href = item.get("href")
        if isinstance(href, str) and href:
            segments = [segment for segment in href.split("/") if segment]
            if segments:
                return f"comic_{segments[-1]}"
        return f"comic_{self.generate_hash(item)}"

    def is_processed(self, item_hash: str, context: str = "default") -> bool:
        """Check the processed ledger, dropping the entry if it has expired."""
        key = f"{context}:{item_hash}"
        with self._lock:
            entry = self._processed.get(key)
            if entry is None:
                return False
            if self._clock() > entry["expires_at"]:
                del self._processed[key]
                return False
            return True

    def mark_processed(
        self, item_hash: str, context: str = "default", metadata: Optional[dict] = None
    ) -> None:
        """Record a fingerprint as processed for ``hash_expiry`` seconds."""
        now = self._clock()
        with self._lock:
            self._processed[f"{context}:{item_hash}"] = {
                "hash": item_hash,
                "context": context,
                "metadata": metadata or {},
                "processed_at": now,
                "expires_at": now + self.hash_expiry,
            }
            self._stats["data_processed"] += 1

    # ========== Deduplication ==========

    def calculate_similarity(self, first: str, second: str) -> float:
        """Similarity of two strings using the configured similarity function."""
        return self._similarity(first, second)

    def is_fuzzy_match(self, first: dict, second: dict) -> bool:
        """Compare two items by normalized title."""
        title_a = normalize_title(first.get("title"))
        title_b = normalize_title(second.get("title"))
        if not title_a or not title_b:
            return False
        if title_a == title_b:
            return True
        return self.calculate_similarity(title_a, title_b) > self.fuzzy_threshold

    def deduplicate(
        self,
        items: Any,
        fields: Sequence[str] = DEFAULT_HASH_FIELDS,
        strategy: str = "newest",
        merge_fields: Sequence[str] = DEFAULT_MERGE_FIELDS,
        context: str = "default",
    ) -> Dict[str, Any]:
        """
        Collapse exact and fuzzy duplicates.

        Items are visited in input order. An item joins the group with the
        same fingerprint, or failing that the first group whose title is a
        fuzzy match. How the group's item is updated depends on ``strategy``:

        - ``newest``: later input merges over the stored item
        - ``oldest``: stored item is kept unchanged
        - ``best_quality``: higher quality score merges over the lower;
          ties keep the stored item
        - ``merge``: the new item's fields are always merged into the stored item

        Unmatched items open a new group and are enriched with ``_id``,
        ``_hash`` and ``_processed_at`` unless those keys already exist.

        Args:
            items: List of item dictionaries (anything else yields an empty result)
            fields: Fingerprint fields
            strategy: Conflict resolution strategy
            merge_fields: Fields combined when merging
            context: Label used in log messages

        Returns:
            Dictionary with ``items`` (group creation order), ``duplicates``
            and ``stats`` (total, unique, duplicates, duplicate_rate)
        """
        if not isinstance(items, list):
            return {
                "items": [],
                "duplicates": [],
                "stats": {"total": 0, "unique": 0, "duplicates": 0, "duplicate_rate": 0.0},
            }
        if strategy not in DEDUP_STRATEGIES:
            raise ValueError(f"Unknown deduplication strategy: {strategy}")

        groups, duplicates, fuzzy_matches = self._group(items, fields, strategy, merge_fields)

        total = len(items)
        with self._lock:
            self._stats["duplicates_detected"] += len(duplicates)
            self._stats["fuzzy_matches"] += fuzzy_matches

        if duplicates:
            logger.debug(
                f"Deduplicated {context}: {total} -> {len(groups)} items",
                extra={"strategy": strategy, "fuzzy_matches": fuzzy_matches},
            )

        return {
            "items": [group["item"] for group in groups],
            "duplicates": duplicates,
            "stats": {
                "total": total,
                "unique": len(groups),
                "duplicates": len(duplicates),
                "duplicate_rate": len(duplicates) / total if total else 0.0,
            },
        }

    def count_unique(self, items: Any, fields: Sequence[str] = DEFAULT_HASH_FIELDS) -> int:
        """Number of groups ``deduplicate`` would produce, without touching the counters."""
        if not isinstance(items, list):
            return 0
        groups, _, _ = self._group(items, fields, "oldest", DEFAULT_MERGE_FIELDS)
        return len(groups)

    def _group(
        self,
        items: list,
        fields: Sequence[str],
        strategy: str,
        merge_fields: Sequence[str],
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], int]:
        groups: List[Dict[str, Any]] = []
        by_hash: Dict[str, Dict[str, Any]] = {}
        duplicates: List[Dict[str, Any]] = []
        fuzzy_matches = 0

        for index, item in enumerate(items):
            if not isinstance(item, dict):
                continue

            item_hash = self.generate_hash(item, fields)
            group = by_hash.get(item_hash)

            if group is None and normalize_title(item.get("title")):
                for candidate in groups:
                    if self.is_fuzzy_match(item, candidate["item"]):
                        group = candidate
                        fuzzy_matches += 1
                        break

            if group is None:
                enriched = dict(item)
                enriched.setdefault("_id", self.generate_unique_id(item))
                enriched.setdefault("_hash", item_hash)
                enriched.setdefault("_processed_at", datetime.now().isoformat())
                group = {"item": enriched, "index": index, "hash": item_hash}
                groups.append(group)
                by_hash[item_hash] = group
                continue

            duplicates.append({"item": item, "matched_with": group["item"], "hash": item_hash})
            group["item"] = self._resolve(group, item, index, strategy, merge_fields)

        return groups, duplicates, fuzzy_matches

    def _resolve(
        self,
        group: Dict[str, Any],
        item: dict,
        index: int,
        strategy: str,
        merge_fields: Sequence[str],
    ) -> dict:
        stored = group["item"]
        if strategy == "merge":
            return self.merge_items(stored, item, merge_fields)
        if strategy == "best_quality":
            if self.get_quality_score(item) > self.get_quality_score(stored):
                return self._carry_enrichment(self.merge_items(item, stored, merge_fields), stored)
            return stored
        if strategy == "newest":
            if index > group["index"]:
                return self._carry_enrichment(self.merge_items(item, stored, merge_fields), stored)
            return stored
        return stored

    @staticmethod
    def _carry_enrichment(merged: dict, stored: dict) -> dict:
        for key in ("_id", "_hash", "_processed_at"):
            if key in stored and key not in merged:
                merged[key] = stored[key]
        return merged

    def get_quality_score(self, item: Any) -> int:
        """
        Score an item by field completeness.

        Title 10, thumbnail (>10 chars) 15, description (>50 chars) 15,
        positive rating 10, chapter 10, 3 per genre up to 15, author 10,
        status 5, type 5, href 5.
        """
        if not isinstance(item, dict):
            return 0

        score = 0
        if _has_text(item.get("title")):
            score += 10
        thumbnail = item.get("thumbnail")
        if isinstance(thumbnail, str) and len(thumbnail) > 10:
            score += 15
        description = item.get("description")
        if isinstance(description, str) and len(description) > 50:
            score += 15
        try:
            if item.get("rating") is not None and float(item["rating"]) > 0:
                score += 10
        except (TypeError, ValueError):
            pass
        if _has_text(item.get("chapter")):
            score += 10

        genre = item.get("genre")
        if isinstance(genre, list):
            score += min(len(genre) * 3, 15)
        elif isinstance(genre, str) and genre:
            score += min(len(genre.split(",")) * 3, 15)

        if _has_text(item.get("author")):
            score += 10
        if _has_text(item.get("status")):
            score += 5
        if _has_text(item.get("type")):
            score += 5
        if _has_text(item.get("href")):
            score += 5
        return score

    def merge_items(
        self, primary: Optional[dict], secondary: Optional[dict], fields: Iterable[str] = ()
    ) -> Optional[dict]:
        """
        Merge two items into a new dictionary based on ``primary``.

        For each of ``fields``: an empty primary value is filled from the
        secondary, lists are unioned without structurally equal entries,
        and of two strings the longer wins. ``_sources`` records the
        provenance of both items.
        """
        if not primary:
            return secondary
        if not secondary:
            return primary

        merged = dict(primary)
        for field_name in fields:
            primary_value = primary.get(field_name)
            secondary_value = secondary.get(field_name)

            if not primary_value and secondary_value:
                merged[field_name] = secondary_value
            elif isinstance(primary_value, list) and isinstance(secondary_value, list):
                combined = list(primary_value)
                for entry in secondary_value:
                    if entry not in combined:
                        combined.append(entry)
                merged[field_name] = combined
            elif isinstance(primary_value, str) and isinstance(secondary_value, str):
                if len(secondary_value) > len(primary_value):
                    merged[field_name] = secondary_value

        sources: List[Any] = []
        for origin in self._provenance(primary) + self._provenance(secondary):
            if origin not in sources:
                sources.append(origin)
        merged["_sources"] = sources
        return merged

    @staticmethod
    def _provenance(item: dict) -> List[Any]:
        sources = item.get("_sources")
        if isinstance(sources, list) and sources:
            return list(sources)
        return [item.get("_source") or "unknown"]

    # ========== Freshness ==========

    def is_stale(self, key: str, threshold: Optional[float] = None) -> bool:
        """Stale when never refreshed or older than ``threshold`` seconds."""
        limit = threshold if threshold is not None else self.stale_threshold
        with self._lock:
            entry = self._freshness.get(key)
            if entry is None:
                return True
            stale = self._clock() - entry["timestamp"] > limit
            if stale:
                self._stats["stale_data_refreshed"] += 1
            return stale

    def update_freshness(self, key: str, metadata: Optional[dict] = None) -> None:
        with self._lock:
            self._freshness[key] = {
                "key": key,
                "timestamp": self._clock(),
                "metadata": metadata or {},
            }

    # ========== Validation ==========

    def validate_integrity(
        self,
        data: Any,
        required_fields: Sequence[str] = DEFAULT_HASH_FIELDS,
        min_title_length: int = 1,
        validate_urls: bool = True,
    ) -> Dict[str, Any]:
        """
        Check items for missing fields and suspicious values.

        Missing required fields and non-dict items are errors; short titles
        and ``href``/``thumbnail`` values not starting with ``/`` or
        ``http`` are warnings. Never raises.

        Returns:
            Dictionary with ``valid``, ``errors``, ``warnings`` and ``stats``
        """
        items = data if isinstance(data, list) else [data]
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []
        invalid_indexes: Set[int] = set()

        for index, item in enumerate(items):
            if not isinstance(item, dict):
                errors.append({"index": index, "message": "Invalid item: not an object"})
                invalid_indexes.add(index)
                continue

            for field_name in required_fields:
                if not item.get(field_name):
                    errors.append({
                        "index": index,
                        "field": field_name,
                        "message": f"Missing required field: {field_name}",
                    })
                    invalid_indexes.add(index)

            title = item.get("title")
            if isinstance(title, str) and title and len(title) < min_title_length:
                warnings.append({"index": index, "field": "title", "message": "Title too short"})

            href = item.get("href")
            if validate_urls and isinstance(href, str) and href:
                if not href.startswith(("/", "http")):
                    warnings.append({"index": index, "field": "href", "message": "Invalid URL format"})

            thumbnail = item.get("thumbnail")
            if validate_urls and isinstance(thumbnail, str) and thumbnail:
                if not thumbnail.startswith(("/", "http")):
                    warnings.append({
                        "index": index,
                        "field": "thumbnail",
                        "message": "Invalid thumbnail URL",
                    })

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "stats": {
                "total": len(items),
                "valid": len(items) - len(invalid_indexes),
                "invalid": len(invalid_indexes),
                "warnings": len(warnings),
            },
        }

    # ========== New-item detection ==========

    def detect_new_items(self, current_items: Any, context: str = "default") -> Dict[str, Any]:
        """
        Split items into new and already-seen relative to the previous call.

        The previous generation for ``context`` is replaced by the current one.
        New items are copied with ``_is_new`` set.
        """
        if not isinstance(current_items, list):
            return {
                "new_items": [],
                "existing_items": [],
                "all_new": False,
                "stats": {"total": 0, "new": 0, "existing": 0, "new_rate": 0.0},
            }

        current_hashes: Set[str] = set()
        new_items: List[dict] = []
        existing_items: List[dict] = []

        with self._lock:
            previous = self._dedupe_index.get(context, set())
            for item in current_items:
                item_hash = self.generate_hash(item)
                current_hashes.add(item_hash)
                if item_hash in previous:
                    existing_items.append(item)
                elif isinstance(item, dict):
                    new_items.append({**item, "_is_new": True})
                else:
                    new_items.append(item)
            self._dedupe_index[context] = current_hashes

        total = len(current_items)
        return {
            "new_items": new_items,
            "existing_items": existing_items,
            "all_new": not existing_items and bool(new_items),
            "stats": {
                "total": total,
                "new": len(new_items),
                "existing": len(existing_items),
                "new_rate": len(new_items) / total if total else 0.0,
            },
        }

    # ========== Maintenance ==========

    def cleanup(self) -> Dict[str, int]:
        """
        Purge expired fingerprints and freshness entries past retention.

        Returns:
            Number of removed fingerprints and freshness entries
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in list(self._processed.items()) if now > entry["expires_at"]]
            for key in expired:
                del self._processed[key]

            outdated = [
                key for key, entry in list(self._freshness.items())
                if now - entry["timestamp"] > self.freshness_retention
            ]
            for key in outdated:
                del self._freshness[key]

        if expired or outdated:
            logger.info(
                f"Integrity cleanup removed {len(expired)} fingerprints "
                f"and {len(outdated)} freshness entries"
            )
        return {"fingerprints_removed": len(expired), "freshness_removed": len(outdated)}

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            return {
                **self._stats,
                "hash_map_size": len(self._processed),
                "freshness_map_size": len(self._freshness),
                "dedupe_index_size": len(self._dedupe_index),
            }

    def clear(self) -> None:
        """Drop every ledger and reset counters."""
        with self._lock:
            self._processed.clear()
            self._freshness.clear()
            self._dedupe_index.clear()
            self._stats = self._empty_stats()
        logger.info("DataIntegrityService cleared")

    def __repr__(self) -> str:
        return (
            f"DataIntegrityService(hash={self.hash_algorithm}, "
            f"fingerprints={len(self._processed)}, freshness={len(self._freshness)})"
        )
