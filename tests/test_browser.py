from __future__ import annotations

import asyncio

import pytest
from playwright.async_api import Error as PWError
from playwright.async_api import TimeoutError as PWTimeoutError

from backend.centris.parsing import READY_SELECTORS as CENTRIS_READY
from backend.centris.parsing import parse_centris_html
from backend.listings.browser import (
    BLOCKED_RESOURCE_TYPES,
    BrowserManager,
    BrowserSession,
    _route_light,
    goto_with_retries,
    safe_evaluate,
    wait_for_any,
)
from backend.listings.config import ScraperConfig
from backend.listings.errors import BlockedPageError, TierFailure
from backend.listings.fetchers import Fetchers

URL = "https://duproprio.com/en/montreal/condo-for-sale/hab-123"


class FakePage:
    def __init__(self, *, content: str = "<html><span class='listing-price__amount'>$1</span></html>",
                 ready: tuple = (".listing-price__amount",), goto_failures: int = 0,
                 evaluate_results: list | None = None, title: str = "Listing") -> None:
        self._content = content
        self._ready = ready
        self._goto_failures = goto_failures
        self._evaluate_results = list(evaluate_results or [])
        self._title = title
        self.url = URL
        self.gotos: list = []
        self.closed = False
        self.routes: list = []
        self.timeouts: dict = {}

    def set_default_navigation_timeout(self, ms: float) -> None:
        self.timeouts["nav"] = ms

    def set_default_timeout(self, ms: float) -> None:
        self.timeouts["default"] = ms

    async def route(self, pattern, handler) -> None:
        self.routes.append(pattern)

    async def goto(self, url: str, wait_until: str, timeout: float) -> None:
        self.gotos.append(wait_until)
        if self._goto_failures:
            self._goto_failures -= 1
            raise PWTimeoutError("Timeout 28000ms exceeded.")

    async def wait_for_selector(self, selector: str, state: str, timeout: float):
        if selector in self._ready:
            await asyncio.sleep(0.01)
            return object()
        await asyncio.sleep(3600)

    async def content(self) -> str:
        return self._content

    async def title(self) -> str:
        return self._title

    async def evaluate(self, script: str):
        if not self._evaluate_results:
            return None
        res = self._evaluate_results.pop(0)
        if isinstance(res, Exception):
            raise res
        return res

    async def close(self) -> None:
        self.closed = True


class ClosedPage(FakePage):
    async def wait_for_selector(self, selector: str, state: str, timeout: float):
        raise PWError("Target page, context or browser has been closed")


class FakeContext:
    def __init__(self, log: list, page_factory) -> None:
        self.log = log
        self.page_factory = page_factory
        self.pages: list = []

    async def new_page(self) -> FakePage:
        page = self.page_factory()
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.log.append("context")


class FakeBrowser:
    def __init__(self, log: list) -> None:
        self.log = log
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.log.append("browser")


class FakeDriver:
    def __init__(self, log: list) -> None:
        self.log = log

    async def stop(self) -> None:
        self.log.append("driver")


class FakeLauncher:
    def __init__(self, page_factory=FakePage) -> None:
        self.calls = 0
        self.log: list = []
        self.page_factory = page_factory
        self.sessions: list = []

    async def __call__(self, config: ScraperConfig) -> BrowserSession:
        self.calls += 1
        session = BrowserSession(
            driver=FakeDriver(self.log),
            browser=FakeBrowser(self.log),
            context=FakeContext(self.log, self.page_factory),
        )
        self.sessions.append(session)
        return session


def _config(**kw) -> ScraperConfig:
    kw.setdefault("selector_timeout_s", 0.2)
    return ScraperConfig(**kw)


def test_browser_launches_once_and_pages_are_closed() -> None:
    launcher = FakeLauncher()

    async def scenario():
        mgr = BrowserManager(_config(), launcher=launcher)
        assert not mgr.is_ready
        async with mgr.page() as p1:
            assert mgr.open_pages == 1
        async with mgr.page() as p2:
            pass
        return mgr, p1, p2

    mgr, p1, p2 = asyncio.run(scenario())
    assert launcher.calls == 1 and mgr.launches == 1
    assert p1.closed and p2.closed
    assert mgr.open_pages == 0
    assert p1.routes == ["**/*"]
    assert p1.timeouts["nav"] == 28000


def test_page_is_closed_on_error() -> None:
    launcher = FakeLauncher()

    async def scenario():
        mgr = BrowserManager(_config(), launcher=launcher)
        with pytest.raises(RuntimeError):
            async with mgr.page():
                raise RuntimeError("parse blew up")
        return launcher.sessions[0].context.pages[0]

    assert asyncio.run(scenario()).closed


def test_shutdown_closes_context_then_browser_then_driver() -> None:
    launcher = FakeLauncher()

    async def scenario():
        mgr = BrowserManager(_config(), launcher=launcher)
        await mgr.ensure_ready()
        await mgr.shutdown()
        await mgr.shutdown()
        return mgr

    mgr = asyncio.run(scenario())
    assert launcher.log == ["context", "browser", "driver"]
    assert not mgr.is_ready


def test_disconnected_browser_is_relaunched() -> None:
    launcher = FakeLauncher()

    async def scenario():
        mgr = BrowserManager(_config(), launcher=launcher)
        first = await mgr.ensure_ready()
        first.browser.connected = False
        second = await mgr.ensure_ready()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not second
    assert launcher.calls == 2


def test_concurrent_ensure_ready_launches_once() -> None:
    launcher = FakeLauncher()

    async def scenario():
        mgr = BrowserManager(_config(), launcher=launcher)
        await asyncio.gather(*(mgr.ensure_ready() for _ in range(5)))

    asyncio.run(scenario())
    assert launcher.calls == 1


def test_route_aborts_heavy_resources() -> None:
    class Req:
        def __init__(self, kind: str) -> None:
            self.resource_type = kind

    class Route:
        def __init__(self, kind: str) -> None:
            self.request = Req(kind)
            self.outcome = None

        async def abort(self) -> None:
            self.outcome = "abort"

        async def continue_(self) -> None:
            self.outcome = "continue"

    async def scenario():
        routes = {k: Route(k) for k in ("image", "font", "media", "script", "stylesheet", "document")}
        for r in routes.values():
            await _route_light(r)
        return {k: r.outcome for k, r in routes.items()}

    outcomes = asyncio.run(scenario())
    for kind in BLOCKED_RESOURCE_TYPES:
        assert outcomes[kind] == "abort"
    assert outcomes["script"] == outcomes["stylesheet"] == outcomes["document"] == "continue"


def test_goto_retries_with_lighter_wait_condition() -> None:
    page = FakePage(goto_failures=1)
    asyncio.run(goto_with_retries(page, URL, timeout_s=1, retries=1))
    assert page.gotos == ["domcontentloaded", "commit"]


def test_goto_gives_up_after_retries() -> None:
    page = FakePage(goto_failures=5)
    with pytest.raises(PWTimeoutError):
        asyncio.run(goto_with_retries(page, URL, timeout_s=1, retries=1))
    assert len(page.gotos) == 2


def test_wait_for_any_returns_first_selector_to_appear() -> None:
    page = FakePage(ready=(".b",))
    assert asyncio.run(wait_for_any(page, [".a", ".b", ".c"], 1)) == ".b"


def test_wait_for_any_times_out() -> None:
    page = FakePage(ready=())
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(wait_for_any(page, [".a", ".b"], 0.05))


def test_wait_for_any_raises_browser_error_when_every_wait_fails() -> None:
    with pytest.raises(PWError, match="has been closed"):
        asyncio.run(wait_for_any(ClosedPage(), [".a", ".b"], 5))


def test_wait_for_any_still_waits_while_other_selectors_pend() -> None:
    class HalfClosedPage(FakePage):
        async def wait_for_selector(self, selector: str, state: str, timeout: float):
            if selector == ".a":
                raise PWError("Target page, context or browser has been closed")
            return await super().wait_for_selector(selector, state, timeout)

    assert asyncio.run(wait_for_any(HalfClosedPage(ready=(".b",)), [".a", ".b"], 1)) == ".b"


def test_safe_evaluate_retries_destroyed_context() -> None:
    destroyed = PWError("Execution context was destroyed, most likely because of a navigation")
    page = FakePage(evaluate_results=[destroyed, {"bedsText": "3"}])
    assert asyncio.run(safe_evaluate(page, "() => 1", timeout_s=1, retries=2)) == {"bedsText": "3"}


def test_safe_evaluate_propagates_other_errors() -> None:
    page = FakePage(evaluate_results=[PWError("ReferenceError: foo is not defined")])
    with pytest.raises(PWError):
        asyncio.run(safe_evaluate(page, "() => foo", timeout_s=1, retries=2))


# --- fetch tiers on top of the fake browser ---------------------------------

def _fetchers(page_factory, **cfg) -> Fetchers:
    config = _config(**cfg)
    return Fetchers(config, BrowserManager(config, launcher=FakeLauncher(page_factory)))


def test_rendered_tier_returns_dom() -> None:
    html = "<html><body><span class='listing-price__amount'>$425,000</span></body></html>"
    fetchers = _fetchers(lambda: FakePage(content=html))
    assert asyncio.run(fetchers.rendered(URL, [".listing-price__amount"])) == html


def test_rendered_tier_reports_page_when_nothing_renders() -> None:
    fetchers = _fetchers(lambda: FakePage(ready=(), title="Access denied"), selector_timeout_s=0.05)
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetchers.rendered(URL, [".listing-price__amount"]))
    assert exc.value.tier == "rendered"
    assert exc.value.title == "Access denied"
    assert exc.value.final_url == URL
    assert exc.value.timed_out


def test_rendered_tier_detects_block_page() -> None:
    html = "<html><span class='listing-price__amount'></span><div>captcha</div></html>"
    fetchers = _fetchers(lambda: FakePage(content=html))
    with pytest.raises(BlockedPageError):
        asyncio.run(fetchers.rendered(URL, [".listing-price__amount"]))


def test_rendered_listing_with_recaptcha_widget_is_not_blocked() -> None:
    html = """
    <html>
      <head>
        <title>Condo for sale - Montréal</title>
        <script src="https://www.google.com/recaptcha/api.js" async defer></script>
        <script>window.captchaSiteKey = "abc";</script>
      </head>
      <body>
        <span data-cy="buyPrice">$579,000</span>
        <h2 itemprop="address">1234 Rue Sainte-Catherine, Montréal</h2>
        <div class="row teaser"><div class="col-lg-3 piece">3 bedrooms</div></div>
        <form class="broker-contact"><div class="g-recaptcha" data-sitekey="abc"></div></form>
      </body>
    </html>
    """
    fetchers = _fetchers(lambda: FakePage(content=html, ready=("[data-cy='buyPrice']",)))
    got = asyncio.run(fetchers.rendered(URL, CENTRIS_READY))
    assert got == html
    record = parse_centris_html(URL, got)
    assert record.price == "$579,000"
    assert record.bedroom_count == 3
    assert record.looks_good()


def test_rendered_tier_detects_challenge_title() -> None:
    html = "<html><body><span class='listing-price__amount'>$1</span></body></html>"
    fetchers = _fetchers(lambda: FakePage(content=html, title="Access Denied"))
    with pytest.raises(BlockedPageError) as exc:
        asyncio.run(fetchers.rendered(URL, [".listing-price__amount"]))
    assert exc.value.title == "Access Denied"


def test_rendered_tier_reports_closed_page_as_browser_error() -> None:
    fetchers = _fetchers(lambda: ClosedPage(), selector_timeout_s=5)
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetchers.rendered(URL, [".listing-price__amount"]))
    assert exc.value.reason.startswith("browser error: Target page, context or browser has been closed")
    assert not exc.value.timed_out


def test_rendered_tier_budget_is_enforced() -> None:
    class SlowPage(FakePage):
        async def content(self) -> str:
            await asyncio.sleep(3600)
            return ""

    fetchers = _fetchers(SlowPage, render_timeout_s=0.1)
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetchers.rendered(URL, [".listing-price__amount"]))
    assert exc.value.timed_out


def test_structured_tier_returns_payload() -> None:
    payload = {"domPriceText": "$425,000", "bedsText": "2"}
    fetchers = _fetchers(lambda: FakePage(evaluate_results=[payload]))
    assert asyncio.run(fetchers.structured(URL, [".listing-price__amount"], "() => ({})")) == payload


def test_structured_tier_empty_payload_fails() -> None:
    fetchers = _fetchers(lambda: FakePage(evaluate_results=[None]))
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetchers.structured(URL, [".listing-price__amount"], "() => null"))
    assert exc.value.tier == "structured"
