# backend/listings/scraper.py
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from backend.centris import parsing as centris
from backend.duproprio import parsing as duproprio
from backend.listings.config import ScraperConfig
from backend.listings.errors import ExtractionError, TierAttempt, TierFailure, UnsupportedSourceError
from backend.listings.fetchers import Fetchers
from backend.py_models.listing import ListingRecord, SourceSite

log = logging.getLogger("listings")

HOSTS: Dict[str, SourceSite] = {
    "centris.ca": SourceSite.CENTRIS,
    "duproprio.com": SourceSite.DUPROPRIO,
}


def detect_source(url: str) -> SourceSite:
    """Which site a listing URL belongs to (subdomains included)."""
    host = (urlparse(url or "").hostname or "").lower()
    for domain, site in HOSTS.items():
        if host == domain or host.endswith("." + domain):
            return site
    raise UnsupportedSourceError(url)


class Tier(str, Enum):
    DIRECT = "direct"
    RENDERED = "rendered"
    STRUCTURED = "structured"


class ExtractionState(str, Enum):
    NOT_STARTED = "not_started"
    TRYING_DIRECT = "trying_direct"
    TRYING_RENDERED = "trying_rendered"
    TRYING_STRUCTURED = "trying_structured"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRYING = {
    Tier.DIRECT: ExtractionState.TRYING_DIRECT,
    Tier.RENDERED: ExtractionState.TRYING_RENDERED,
    Tier.STRUCTURED: ExtractionState.TRYING_STRUCTURED,
}

HtmlParser = Callable[..., ListingRecord]
PayloadParser = Callable[..., ListingRecord]


@dataclass(frozen=True)
class SitePlan:
    """Per-site tier order plus the parsers and wait conditions each tier uses."""

    site: SourceSite
    tiers: Tuple[Tier, ...]
    parse_html: HtmlParser
    ready_selectors: Sequence[str]
    parse_structured: Optional[PayloadParser] = None
    structured_script: Optional[str] = None


SITE_PLANS: Dict[SourceSite, SitePlan] = {
    SourceSite.CENTRIS: SitePlan(
        site=SourceSite.CENTRIS,
        tiers=(Tier.DIRECT, Tier.RENDERED),
        parse_html=centris.parse_centris_html,
        ready_selectors=centris.READY_SELECTORS,
    ),
    SourceSite.DUPROPRIO: SitePlan(
        site=SourceSite.DUPROPRIO,
        tiers=(Tier.DIRECT, Tier.RENDERED, Tier.STRUCTURED),
        parse_html=duproprio.parse_duproprio_html,
        ready_selectors=duproprio.READY_SELECTORS,
        parse_structured=duproprio.parse_duproprio_structured,
        structured_script=duproprio.STRUCTURED_SCRIPT,
    ),
}


@dataclass
class ExtractionResult:
    record: ListingRecord
    tier: Tier
    attempts: List[TierAttempt] = field(default_factory=list)
    state: ExtractionState = ExtractionState.SUCCEEDED


class ExtractionOrchestrator:
    """
    Walks a site's tiers cheapest-first and stops at the first record that
    looks good. A tier is abandoned when its fetch fails, when anything in it
    raises, or when what it parsed has no usable field. Only running out of
    tiers is fatal.
    """

    def __init__(
        self,
        config: Optional[ScraperConfig] = None,
        fetchers: Optional[Fetchers] = None,
        plans: Optional[Mapping[SourceSite, SitePlan]] = None,
    ) -> None:
        self.config = config if config is not None else ScraperConfig()
        self.fetchers = fetchers or Fetchers(self.config)
        self.plans = dict(plans or SITE_PLANS)

    async def _run_tier(self, tier: Tier, plan: SitePlan, url: str) -> ListingRecord:
        threshold = self.config.annual_fee_threshold
        if tier is Tier.DIRECT:
            html = await self.fetchers.direct(url)
            return plan.parse_html(url, html, fee_threshold=threshold)
        if tier is Tier.RENDERED:
            html = await self.fetchers.rendered(url, plan.ready_selectors)
            return plan.parse_html(url, html, fee_threshold=threshold)
        if plan.parse_structured is None or not plan.structured_script:
            raise TierFailure(tier.value, f"not supported for {plan.site.value}")
        payload: Any = await self.fetchers.structured(url, plan.ready_selectors, plan.structured_script)
        return plan.parse_structured(url, payload, fee_threshold=threshold)

    async def extract(self, url: str, site: Optional[SourceSite] = None) -> ExtractionResult:
        plan = self.plans[site or detect_source(url)]
        loop = asyncio.get_running_loop()
        attempts: List[TierAttempt] = []
        state = ExtractionState.NOT_STARTED

        for tier in plan.tiers:
            state = _TRYING[tier]
            log.debug("STATE %s | %s", state.value, url)
            started = loop.time()

            def elapsed() -> int:
                return int((loop.time() - started) * 1000)

            try:
                record = await self._run_tier(tier, plan, url)
            except TierFailure as e:
                attempts.append(
                    TierAttempt(tier.value, False, e.reason, elapsed(), title=e.title, final_url=e.final_url)
                )
                log.info("TIER ✘ %s | %s | %s", tier.value, url, e.reason)
                continue
            except Exception as e:
                reason = f"unexpected {e.__class__.__name__}: {e}"
                attempts.append(TierAttempt(tier.value, False, reason, elapsed()))
                log.warning("TIER ✘ %s | %s | %s", tier.value, url, reason, exc_info=log.isEnabledFor(logging.DEBUG))
                continue

            if not record.looks_good():
                attempts.append(TierAttempt(tier.value, False, "no usable fields parsed", elapsed()))
                log.info("TIER ✘ %s | %s | no usable fields parsed", tier.value, url)
                continue

            attempts.append(TierAttempt(tier.value, True, elapsed_ms=elapsed()))
            state = ExtractionState.SUCCEEDED
            log.info(
                "SCRAPE ✔ %s | tier=%s price=%s beds=%s baths=%s area=%s fee=%s",
                plan.site.value,
                tier.value,
                record.price,
                record.bedroom_count,
                record.bathroom_count,
                record.living_area,
                record.condo_fee,
            )
            return ExtractionResult(record=record, tier=tier, attempts=attempts, state=state)

        log.debug("STATE %s | %s", ExtractionState.FAILED.value, url)
        err = ExtractionError(url, attempts)
        log.warning("SCRAPE ✘ %s | %s", plan.site.value, err)
        raise err
