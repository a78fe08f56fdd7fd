import threading
from collections import OrderedDict

from ..log_utils import get_logger
from .models import CacheEntry, utcnow, iso

logger = get_logger(__name__)


class ConversionCache:
    """Converted page sets keyed by document id.

    Entries never expire on their own; they go away through ``invalidate``
    (explicitly, or on a forced reconversion), when a staleness check against
    the source fingerprint fails, or when ``max_entries`` is reached and the
    least recently used entry is evicted.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        # Ordered oldest-use first
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def has_cached(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._entries

    def get(self, document_id: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(document_id)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            entry.access_count += 1
            entry.last_accessed_at = utcnow()
            self._entries.move_to_end(document_id)
            return CacheEntry(
                document_id=entry.document_id,
                page_urls=list(entry.page_urls),
                converted_at=entry.converted_at,
                source_fingerprint=entry.source_fingerprint,
                access_count=entry.access_count,
                last_accessed_at=entry.last_accessed_at,
            )

    def peek(self, document_id: str) -> CacheEntry | None:
        """Like ``get`` but without touching hit counters or recency."""
        with self._lock:
            return self._entries.get(document_id)

    def put(self, document_id: str, page_urls: list[str], source_fingerprint: str | None = None) -> CacheEntry:
        entry = CacheEntry(
            document_id=document_id,
            page_urls=list(page_urls),
            source_fingerprint=source_fingerprint,
        )
        evicted = []
        with self._lock:
            self._entries[document_id] = entry
            self._entries.move_to_end(document_id)
            while self._max_entries is not None and len(self._entries) > self._max_entries:
                evicted.append(self._entries.popitem(last=False)[0])
            self._evictions += len(evicted)
        logger.debug("Cached %d pages for document %s", entry.page_count, document_id)
        for victim in evicted:
            logger.info("Evicted least recently used cache entry for document %s", victim)
        return entry

    def invalidate(self, document_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(document_id, None) is not None
        if removed:
            logger.info("Invalidated cached pages for document %s", document_id)
        return removed

    def invalidate_many(self, document_ids: list[str]) -> int:
        return sum(1 for document_id in document_ids if self.invalidate(document_id))

    def is_stale(self, document_id: str, fingerprint: str | None) -> bool:
        """True when the cached entry was produced from a different source.

        Entries without a recorded fingerprint, and checks without one, are
        never considered stale.
        """
        if fingerprint is None:
            return False
        with self._lock:
            entry = self._entries.get(document_id)
            if entry is None or entry.source_fingerprint is None:
                return False
            return entry.source_fingerprint != fingerprint

    def stats(self, top: int = 10) -> dict[str, object]:
        with self._lock:
            entries = list(self._entries.values())
            hits, misses, evictions = self._hits, self._misses, self._evictions
        lookups = hits + misses
        popular = sorted(entries, key=lambda e: e.access_count, reverse=True)[:top]
        return {
            "totalEntries": len(entries),
            "maxEntries": self._max_entries,
            "totalPages": sum(e.page_count for e in entries),
            "hits": hits,
            "misses": misses,
            "evictions": evictions,
            "hitRate": round(hits / lookups * 100, 2) if lookups else 0.0,
            "popularDocuments": [
                {
                    "documentId": e.document_id,
                    "accessCount": e.access_count,
                    "lastAccessed": iso(e.last_accessed_at),
                }
                for e in popular
                if e.access_count > 0
            ],
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
