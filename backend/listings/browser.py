import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, Tuple

from playwright.async_api import Error as PWError
from playwright.async_api import TimeoutError as PWTimeoutError
from playwright.async_api import async_playwright

from backend.listings.client import USER_AGENT
from backend.listings.config import ScraperConfig

log = logging.getLogger("listings")

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]
VIEWPORT = {"width": 1280, "height": 720}
LOCALE = "en-CA"

# Stylesheets and scripts stay: blocking them broke client rendering on some pages.
BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})


@dataclass
class BrowserSession:
    """The one browser process + browsing context shared by the whole service."""

    driver: Any
    browser: Any
    context: Any


Launcher = Callable[[ScraperConfig], Awaitable[BrowserSession]]


async def launch_chromium(config: ScraperConfig) -> BrowserSession:
    driver = await async_playwright().start()
    try:
        browser = await driver.chromium.launch(headless=config.headless, args=LAUNCH_ARGS)
        context = await browser.new_context(
            user_agent=USER_AGENT,
            viewport=VIEWPORT,
            locale=LOCALE,
        )
    except Exception:
        await driver.stop()
        raise
    return BrowserSession(driver=driver, browser=browser, context=context)


async def _route_light(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class BrowserManager:
    """
    Owns a single lazily launched Chromium for the process lifetime.
    Pages are per-attempt and always closed; the browser and context are only
    torn down by ``shutdown()``.
    """

    def __init__(self, config: Optional[ScraperConfig] = None, launcher: Optional[Launcher] = None) -> None:
        self.config = config if config is not None else ScraperConfig()
        self._launcher = launcher or launch_chromium
        self._session: Optional[BrowserSession] = None
        self._lock: Optional[asyncio.Lock] = None
        self.launches = 0
        self.open_pages = 0

    @property
    def is_ready(self) -> bool:
        if self._session is None:
            return False
        is_connected = getattr(self._session.browser, "is_connected", None)
        return bool(is_connected()) if callable(is_connected) else True

    async def ensure_ready(self) -> BrowserSession:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._session is not None and not self.is_ready:
                log.warning("BROWSER disconnected; relaunching")
                await self._close_session()
            if self._session is None:
                self._session = await self._launcher(self.config)
                self.launches += 1
                log.info("BROWSER ready | headless=%s", self.config.headless)
            return self._session

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Any]:
        session = await self.ensure_ready()
        page = await session.context.new_page()
        self.open_pages += 1
        try:
            nav_ms = self.config.nav_timeout_s * 1000
            page.set_default_navigation_timeout(nav_ms)
            page.set_default_timeout(nav_ms)
            await page.route("**/*", _route_light)
            yield page
        finally:
            self.open_pages -= 1
            try:
                await page.close()
            except PWError as e:
                log.debug("page close failed: %s", e)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        for label, closer in (
            ("context", session.context.close),
            ("browser", session.browser.close),
            ("driver", session.driver.stop),
        ):
            try:
                await closer()
            except Exception as e:
                log.debug("BROWSER %s close failed: %s", label, e)

    async def shutdown(self) -> None:
        if self._session is None:
            return
        await self._close_session()
        log.info("BROWSER shut down")


# --- retry / navigation helpers ---------------------------------------------

def is_timeout(err: BaseException) -> bool:
    if isinstance(err, (PWTimeoutError, asyncio.TimeoutError)):
        return True
    return "timeout" in str(err).lower()


def is_context_destroyed(err: BaseException) -> bool:
    msg = str(err)
    return "Execution context was destroyed" in msg or "because of a navigation" in msg


@dataclass
class RetryPolicy:
    """Bounded retry: ``attempts`` total tries, only for errors ``retry_on`` accepts."""

    attempts: int = 2
    delay_s: float = 0.3
    backoff: float = 2.0
    retry_on: Callable[[BaseException], bool] = is_timeout

    async def run(
        self,
        fn: Callable[[int], Awaitable[Any]],
        before_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    ) -> Any:
        attempts = max(1, self.attempts)
        for i in range(attempts):
            try:
                return await fn(i)
            except Exception as e:
                if i == attempts - 1 or not self.retry_on(e):
                    raise
                log.debug("retry %d/%d after %s", i + 1, attempts - 1, e)
                if before_retry is not None:
                    await before_retry(i, e)
                await asyncio.sleep(self.delay_s * (self.backoff ** i))


async def _stop_loading(page) -> None:
    try:
        await page.evaluate("() => (window.stop ? window.stop() : null)")
    except PWError as e:
        log.debug("window.stop failed: %s", e)


async def goto_with_retries(
    page,
    url: str,
    *,
    timeout_s: float,
    retries: int = 1,
    wait_until: str = "domcontentloaded",
) -> None:
    """Navigate; on timeout stop the page and retry with the lighter ``commit`` condition."""

    async def attempt(i: int) -> None:
        mode = wait_until if i == 0 else "commit"
        await asyncio.wait_for(page.goto(url, wait_until=mode, timeout=timeout_s * 1000), timeout_s + 1)

    async def before_retry(i: int, err: BaseException) -> None:
        await _stop_loading(page)
        await asyncio.sleep(0.3)

    policy = RetryPolicy(attempts=retries + 1, delay_s=0.6, backoff=1.0, retry_on=is_timeout)
    await policy.run(attempt, before_retry=before_retry)


async def wait_for_any(page, selectors: Sequence[str], timeout_s: float) -> str:
    """Race the selectors; return whichever appears first.

    Raises ``asyncio.TimeoutError`` if none shows up within ``timeout_s``. If
    every wait fails early with a browser error (page or context closed), the
    last such error is raised instead.
    """
    if not selectors:
        raise ValueError("wait_for_any needs at least one selector")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    tasks = {
        asyncio.ensure_future(page.wait_for_selector(sel, state="attached", timeout=timeout_s * 1000)): sel
        for sel in selectors
    }
    pending = set(tasks)
    last_error: Optional[BaseException] = None
    try:
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if t.cancelled():
                    continue
                err = t.exception()
                if err is None:
                    return tasks[t]
                if not is_timeout(err):
                    last_error = err
        if not pending and last_error is not None:
            raise last_error
        raise asyncio.TimeoutError(f"none of {list(selectors)} appeared within {timeout_s:g}s")
    finally:
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def safe_evaluate(page, script: str, *, timeout_s: float, retries: int = 2) -> Any:
    """Run ``script`` in the page. A navigation destroying the context is retried."""

    async def attempt(i: int) -> Any:
        await asyncio.sleep(0.12)
        return await asyncio.wait_for(page.evaluate(script), timeout_s)

    policy = RetryPolicy(attempts=retries + 1, delay_s=0.3, backoff=1.0, retry_on=is_context_destroyed)
    return await policy.run(attempt)


async def page_identity(page) -> Tuple[Optional[str], Optional[str]]:
    """Title and URL of whatever the page ended up showing."""
    title = None
    try:
        title = await asyncio.wait_for(page.title(), 2.0)
    except (PWError, asyncio.TimeoutError) as e:
        log.debug("page title unavailable: %s", e)
    return title, getattr(page, "url", None)
