"""
Natural-key lookup resolution with a write-once cache.

Resolving ``(entity, attribute, value)`` queries the remote store for the
primary id of the single record whose attribute equals the value. Every
outcome (the id, "not found", "duplicates found") is cached per key and
replayed on later calls without querying again. Entries never expire; the
cache object decides its own lifetime (process-wide or per run).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from record_transfer.core.config import settings
from record_transfer.domain.metadata import MetadataLookupError, MetadataService
from record_transfer.domain.records import RecordService

logger = logging.getLogger(__name__)

# Attribute types that can be matched with an equality filter
RESOLVABLE_TYPES = ("String", "Memo")

CacheKey = Tuple[str, str, str]


class LookupResolutionError(Exception):
    """Raised when a lookup value does not resolve to exactly one record."""


@dataclass(frozen=True)
class ResolveCacheEntry:
    value: Optional[str]
    valid: bool
    message: Optional[str] = None


class ResolveCache:
    """Thread-safe (entity, attribute, value) -> outcome map. First write for a key wins."""

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, ResolveCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[ResolveCacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: CacheKey, entry: ResolveCacheEntry) -> ResolveCacheEntry:
        with self._lock:
            return self._entries.setdefault(key, entry)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_process_cache = ResolveCache()


def get_process_resolve_cache() -> ResolveCache:
    """Return the cache shared by every import in this process."""
    return _process_cache


def resolve_cache_for_run() -> ResolveCache:
    """Pick the cache for a new import run according to ``resolve_cache_scope``."""
    if settings.resolve_cache_scope == "run":
        return ResolveCache()
    return _process_cache


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class LookupResolver:
    def __init__(self, metadata: MetadataService, records: RecordService, cache: Optional[ResolveCache] = None):
        self.metadata = metadata
        self.records = records
        self.cache = cache if cache is not None else get_process_resolve_cache()

    def resolve(self, entity: str, attribute: str, value: str) -> str:
        """
        Resolve a natural-key value to the primary id of a record.

        Args:
            entity: Logical name of the entity to search
            attribute: Attribute holding the natural key
            value: Raw value taken from the import row

        Returns:
            The primary id of the one matching record

        Raises:
            LookupResolutionError: No match, several matches, or an attribute
                type that cannot be matched
        """
        key = (entity, attribute, value)
        cached = self.cache.get(key)
        if cached is not None:
            return self._replay(cached)

        try:
            schema = self.metadata.get_entity_schema(entity)
        except MetadataLookupError as exc:
            raise LookupResolutionError(str(exc)) from exc

        attribute_meta = schema.attribute(attribute)
        if attribute_meta is None:
            raise LookupResolutionError(f"Unknown attribute {entity}.{attribute}")
        if attribute_meta.type not in RESOLVABLE_TYPES:
            raise LookupResolutionError(f"Not implemented: resolve attribute type {attribute_meta.type}")

        primary_key = schema.primary_id_attribute
        params = {
            "$select": primary_key,
            "$filter": f"{attribute} eq {_quote(value)}",
            "$top": "2",
        }
        rows = self.records.retrieve_multiple(entity, params)

        if len(rows) == 1:
            entry = ResolveCacheEntry(value=rows[0].get(primary_key), valid=True)
        elif not rows:
            entry = ResolveCacheEntry(value=None, valid=False, message=f"Not Found: {entity}.{attribute} = {value}")
        else:
            entry = ResolveCacheEntry(value=None, valid=False, message=f"Duplicates Found: {entity}.{attribute} = {value}")

        if not entry.valid:
            logger.debug("Lookup %s.%s = %r did not resolve: %s", entity, attribute, value, entry.message)
        return self._replay(self.cache.put(key, entry))

    @staticmethod
    def _replay(entry: ResolveCacheEntry) -> str:
        if entry.valid:
            return entry.value
        raise LookupResolutionError(entry.message)
