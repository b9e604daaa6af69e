# backend/listings/fetchers.py
import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Sequence, TypeVar

import httpx
from playwright.async_api import Error as PWError

from backend.listings.browser import (
    BrowserManager,
    goto_with_retries,
    is_timeout,
    page_identity,
    safe_evaluate,
    wait_for_any,
)
from backend.listings.client import debug_dump, fetch_html_direct, has_block_markers, visible_text
from backend.listings.config import ScraperConfig
from backend.listings.errors import BlockedPageError, TierFailure

log = logging.getLogger("listings")

T = TypeVar("T")


class Fetchers:
    """
    The three ways of getting at a listing page. Each call is time-boxed on its
    own budget and either returns page data or raises ``TierFailure``.
    """

    def __init__(
        self,
        config: Optional[ScraperConfig] = None,
        browser: Optional[BrowserManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config if config is not None else ScraperConfig()
        self.browser = browser if browser is not None else BrowserManager(self.config)
        self.transport = transport

    async def _time_box(self, tier: str, budget_s: float, work: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(work, budget_s)
        except asyncio.TimeoutError:
            raise TierFailure(tier, f"timeout after {budget_s:g}s", timed_out=True)
        except TierFailure:
            raise
        except PWError as e:
            # playwright errors carry a call log after the first line
            first = (str(e).splitlines() or [e.__class__.__name__])[0]
            raise TierFailure(tier, f"browser error: {first}", timed_out=is_timeout(e))

    async def direct(self, url: str) -> str:
        cfg = self.config
        page = await self._time_box(
            "direct",
            cfg.direct_timeout_s + 1,
            fetch_html_direct(
                url,
                cfg.direct_timeout_s,
                min_length=cfg.min_html_length,
                proxy=cfg.proxy,
                transport=self.transport,
                debug=cfg.debug,
            ),
        )
        return page.html

    async def _wait_ready(self, tier: str, page, selectors: Sequence[str]) -> str:
        try:
            return await wait_for_any(page, selectors, self.config.selector_timeout_s)
        except asyncio.TimeoutError:
            title, final_url = await page_identity(page)
            raise TierFailure(
                tier,
                f"no listing content after {self.config.selector_timeout_s:g}s",
                title=title,
                final_url=final_url,
                timed_out=True,
            )

    async def rendered(self, url: str, ready_selectors: Sequence[str]) -> str:
        cfg = self.config

        async def run() -> str:
            async with self.browser.page() as page:
                await goto_with_retries(page, url, timeout_s=cfg.nav_timeout_s, retries=cfg.nav_retries)
                hit = await self._wait_ready("rendered", page, ready_selectors)
                log.debug("RENDER ready on %s | %s", hit, url)
                html = await asyncio.wait_for(page.content(), cfg.content_timeout_s)
                if cfg.debug:
                    debug_dump("rendered", url, html)
                # markers count only in the title and visible text, not in scripts
                title, final_url = await page_identity(page)
                if has_block_markers(f"{title or ''} {visible_text(html)}"):
                    raise BlockedPageError("rendered", "block/challenge page", title=title, final_url=final_url)
                return html

        return await self._time_box("rendered", cfg.render_timeout_s, run())

    async def structured(self, url: str, ready_selectors: Sequence[str], script: str) -> Dict[str, Any]:
        cfg = self.config

        async def run() -> Dict[str, Any]:
            async with self.browser.page() as page:
                await goto_with_retries(page, url, timeout_s=cfg.nav_timeout_s, retries=cfg.nav_retries)
                await self._wait_ready("structured", page, ready_selectors)
                data = await safe_evaluate(page, script, timeout_s=cfg.eval_timeout_s, retries=cfg.eval_retries)
                if not isinstance(data, dict) or not data:
                    title, final_url = await page_identity(page)
                    raise TierFailure("structured", "in-page evaluation returned nothing", title=title, final_url=final_url)
                return data

        return await self._time_box("structured", cfg.structured_timeout_s, run())
