import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from backend.py_models.listing import ListingRecord

log = logging.getLogger("listings")


def normalize_url(url: str) -> str:
    """Lower-case scheme/host, drop the fragment and a trailing slash."""
    raw = (url or "").strip()
    try:
        p = urlparse(raw)
    except ValueError:
        return raw
    path = p.path.rstrip("/") if p.path not in ("", "/") else ""
    return urlunparse((p.scheme.lower(), p.netloc.lower(), path, p.params, p.query, ""))


def make_cache_key(url: str, address_hint: str = "") -> str:
    return f"{normalize_url(url)}::hint={(address_hint or '').strip()}"


@dataclass(frozen=True)
class CacheEntry:
    record: ListingRecord
    created_at: float
    fresh_until: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.fresh_until

    def age(self, now: float) -> float:
        return now - self.created_at


class ResultCache:
    """In-process, time-bounded memo of scraped listings.

    ``ttl_s`` is the maximum age; entries past it are evicted when read, and
    every write sweeps out whatever else has expired.
    With ``fresh_s`` below ``ttl_s`` entries older than ``fresh_s`` are still
    returned but report ``is_fresh() == False`` so callers can refresh them in
    the background.
    """

    def __init__(self, ttl_s: float, fresh_s: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = float(ttl_s)
        self.fresh_s = min(float(fresh_s), self.ttl_s) if fresh_s is not None else self.ttl_s
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[CacheEntry]:
        hit = self._entries.get(key)
        if hit is None:
            return None
        if self.now() >= hit.expires_at:
            del self._entries[key]
            log.debug("CACHE expired | %s", key)
            return None
        return hit

    def put(self, key: str, record: ListingRecord) -> CacheEntry:
        now = self.now()
        self.sweep(now)
        entry = CacheEntry(
            record=record,
            created_at=now,
            fresh_until=now + self.fresh_s,
            expires_at=now + self.ttl_s,
        )
        self._entries[key] = entry
        return entry

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self.now() if now is None else now
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        if expired:
            log.debug("CACHE swept %d expired", len(expired))
        return len(expired)

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
