# backend/listings/service.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from backend.listings.address import resolve_address
from backend.listings.browser import BrowserManager
from backend.listings.cache import ResultCache, make_cache_key
from backend.listings.config import ScraperConfig
from backend.listings.errors import ExtractionTimeout, InputError
from backend.listings.fetchers import Fetchers
from backend.listings.gate import AdmissionGate
from backend.listings.inflight import InFlightCoordinator
from backend.listings.scraper import ExtractionOrchestrator, detect_source
from backend.py_models.listing import ListingRecord, SourceSite

log = logging.getLogger("listings")


def validate_url(url: Optional[str]) -> str:
    raw = (url or "").strip()
    if not raw:
        raise InputError("Missing url parameter.")
    p = urlparse(raw)
    if p.scheme not in ("http", "https") or not p.netloc:
        raise InputError("Invalid url parameter.")
    return raw


@dataclass
class ListingLookup:
    listing: ListingRecord
    cached: bool
    deduped: bool = False
    stale: bool = False

    def to_json(self) -> dict:
        out = {"ok": True, "listing": self.listing.to_json(), "cached": self.cached}
        if self.deduped:
            out["deduped"] = True
        return out


class ListingService:
    """
    Everything between a request and the orchestrator: URL checks, the result
    cache, joining a running extraction for the same key, and the admission
    gate in front of new ones.
    """

    def __init__(
        self,
        config: Optional[ScraperConfig] = None,
        orchestrator: Optional[ExtractionOrchestrator] = None,
        browser: Optional[BrowserManager] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self.config = config if config is not None else ScraperConfig()
        self.browser = browser if browser is not None else BrowserManager(self.config)
        self.orchestrator = orchestrator if orchestrator is not None else ExtractionOrchestrator(
            self.config, Fetchers(self.config, self.browser)
        )
        self.cache = cache if cache is not None else ResultCache(self.config.cache_ttl_s, self.config.cache_fresh_s)
        self.inflight = InFlightCoordinator()
        self.gate = AdmissionGate(self.config.max_concurrency, self.config.per_host_concurrency)
        self.extractions = 0

    async def start(self) -> None:
        if not self.config.warm_browser:
            return
        try:
            await self.browser.ensure_ready()
        except Exception as e:
            # the first rendered fetch will try again
            log.warning("BROWSER warm-up failed: %s", e)

    async def close(self) -> None:
        await self.browser.shutdown()

    async def get_listing(self, url: str, address_hint: str = "", refresh: bool = False) -> ListingLookup:
        url = validate_url(url)
        site = detect_source(url)
        hint = (address_hint or "").strip()
        key = make_cache_key(url, hint)

        if not refresh:
            hit = self.cache.get(key)
            if hit is not None:
                stale = not hit.is_fresh(self.cache.now())
                if stale:
                    self._refresh_in_background(key, url, site, hint)
                log.info("CACHE hit%s | %s", " (stale)" if stale else "", key)
                return ListingLookup(hit.record, cached=True, stale=stale)

        task, created = self.inflight.run(key, lambda: self._extract(key, url, site, hint))
        if created:
            timeout = self.config.request_timeout_s
        else:
            timeout = self.config.inflight_wait_timeout_s
            log.info("INFLIGHT join | %s", key)
        try:
            record = await self.inflight.wait(task, timeout)
        except asyncio.TimeoutError:
            # the extraction keeps running and fills the cache for the next caller
            raise ExtractionTimeout(url, timeout)
        return ListingLookup(record, cached=False, deduped=not created)

    def _refresh_in_background(self, key: str, url: str, site: SourceSite, hint: str) -> None:
        _, created = self.inflight.run(key, lambda: self._extract(key, url, site, hint))
        if created:
            log.info("CACHE refresh scheduled | %s", key)

    async def _extract(self, key: str, url: str, site: SourceSite, hint: str) -> ListingRecord:
        host = (urlparse(url).hostname or "").lower()
        async with self.gate.slot(host):
            self.extractions += 1
            try:
                result = await asyncio.wait_for(
                    self.orchestrator.extract(url, site),
                    self.config.extraction_timeout_s,
                )
            except asyncio.TimeoutError:
                raise ExtractionTimeout(url, self.config.extraction_timeout_s)

        record = result.record.with_address(resolve_address(result.record.address, hint))
        if record.looks_good():
            self.cache.put(key, record)
        else:
            log.info("CACHE skip (nothing usable) | %s", key)
        return record
