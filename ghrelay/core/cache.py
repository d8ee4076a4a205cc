"""Response cache for idempotent GitHub calls.

Entries are keyed by request fingerprint and carry a freshness deadline and,
when GitHub supplied one, an ETag for conditional revalidation.

Key behaviours:
- lookup() returns fresh and stale entries; the caller decides whether to
  serve or revalidate (CacheEntry.is_fresh)
- refresh() extends the deadline after a "304 Not Modified" without
  touching the stored body
- invalidate_related() drops entries whose resource key overlaps a
  mutation's target
- store() drops results of reads that were dispatched before an
  overlapping invalidation, so a slow read cannot resurrect stale data
"""

import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from ghrelay.core.fingerprint import keys_overlap
from ghrelay.core.models import CacheEntry, Category

logger = logging.getLogger(__name__)

# (sequence, resource_key, category); key None means "whole category"
_Invalidation = Tuple[int, Optional[str], Optional[Category]]


class ResponseCache:
    """
    Bounded LRU cache of GitHub responses.

    Thread safety: all public methods take an internal RLock.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.time,
        history: int = 256,
    ):
        """
        Args:
            ttl: Seconds an entry is served without contacting GitHub
            max_entries: Least recently used entries are evicted past this
            clock: Time source (injectable for tests)
            history: Number of invalidations remembered for store() checks
        """
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._seq = 0
        self._invalidations: Deque[_Invalidation] = deque(maxlen=history)
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def begin(self) -> int:
        """Sequence token to pass to store() for a read about to be dispatched."""
        with self._lock:
            return self._seq

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.misses += 1
                return None
            self._entries.move_to_end(fingerprint)
            self.hits += 1
            return entry

    def make_entry(
        self,
        fingerprint: str,
        body: Any,
        resource_key: str,
        etag: Optional[str] = None,
        category: Optional[Category] = None,
    ) -> CacheEntry:
        now = self.clock()
        return CacheEntry(
            fingerprint=fingerprint,
            body=body,
            fresh_until=now + self.ttl,
            resource_key=resource_key,
            etag=etag,
            inserted_at=now,
            category=category,
        )

    def store(
        self,
        fingerprint: str,
        entry: CacheEntry,
        since: Optional[int] = None,
    ) -> bool:
        """
        Insert or replace an entry.

        Args:
            fingerprint: Cache key
            entry: Entry to store
            since: Token from begin() taken when the read was dispatched

        Returns:
            False if the entry was dropped because an overlapping
            invalidation happened after ``since``
        """
        with self._lock:
            if since is not None and self._invalidated_since(entry, since):
                logger.debug(f"Dropping stale store for {fingerprint[:12]}")
                return False
            self._entries[fingerprint] = entry
            self._entries.move_to_end(fingerprint)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def _invalidated_since(self, entry: CacheEntry, since: int) -> bool:
        if since >= self._seq:
            return False
        if self._invalidations and self._invalidations[0][0] > since + 1:
            # History rolled past the token; assume the worst.
            return True
        for seq, key, category in self._invalidations:
            if seq <= since:
                continue
            if key is None:
                if category is None or entry.category == category:
                    return True
            elif keys_overlap(key, entry.resource_key):
                return True
        return False

    def refresh(self, fingerprint: str) -> Optional[CacheEntry]:
        """Extend an entry's deadline by one TTL; the body is left as is."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            entry.fresh_until = self.clock() + self.ttl
            self._entries.move_to_end(fingerprint)
            return entry

    def _record(self, key: Optional[str], category: Optional[Category]) -> None:
        self._seq += 1
        self._invalidations.append((self._seq, key, category))

    def invalidate_related(self, resource_key: str) -> int:
        """Drop every entry whose resource key overlaps ``resource_key``."""
        with self._lock:
            self._record(resource_key, None)
            doomed = [
                fp
                for fp, entry in self._entries.items()
                if keys_overlap(resource_key, entry.resource_key)
            ]
            for fp in doomed:
                del self._entries[fp]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} entries for '{resource_key}'")
        return len(doomed)

    def invalidate_category(self, category: Category) -> int:
        """Drop every entry of one API surface."""
        with self._lock:
            self._record(None, category)
            doomed = [
                fp for fp, entry in self._entries.items() if entry.category == category
            ]
            for fp in doomed:
                del self._entries[fp]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._record(None, None)
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "ttl": self.ttl,
            }
