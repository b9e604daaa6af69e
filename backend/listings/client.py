import asyncio
import hashlib
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from backend.listings.errors import BlockedPageError, TierFailure

log = logging.getLogger("listings")

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept-Language": "en-CA,en;q=0.9,fr-CA;q=0.8",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

BLOCK_MARKERS = (
    "captcha",
    "access denied",
    "please enable javascript",
    "unusual traffic",
)

DEBUG_DIR = Path(tempfile.gettempdir()) / "listings-debug"


def new_client(
    timeout: float = 30.0,
    proxy: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    AsyncClient with browser-like headers, optional proxy, redirects followed.
    Transient connection errors are retried by the transport.
    """
    limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
    return httpx.AsyncClient(
        timeout=timeout,
        headers=BROWSER_HEADERS,
        proxy=proxy,
        follow_redirects=True,
        http2=False,
        limits=limits,
        transport=transport or httpx.AsyncHTTPTransport(retries=2),
    )


def has_block_markers(text: Optional[str]) -> bool:
    t = (text or "").lower()
    return any(marker in t for marker in BLOCK_MARKERS)


def looks_blocked(html: Optional[str]) -> bool:
    if not (html or "").strip():
        return True
    return has_block_markers(html)


def visible_text(html: Optional[str]) -> str:
    """Text a visitor would read; scripts, styles and embedded frames are dropped."""
    soup = BeautifulSoup(html or "", "lxml")
    for tag in soup(["script", "style", "noscript", "template", "iframe"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def looks_like_html(html: str) -> bool:
    low = html[:4096].lower()
    return "<html" in low or "<!doctype html" in low


def debug_dump(kind: str, url: str, text: str) -> Optional[Path]:
    """Save a fetched body under the temp dir so selectors can be checked offline."""
    try:
        DEBUG_DIR.mkdir(parents=True, exist_ok=True)
        h = hashlib.sha1(f"{url}|{len(text)}".encode("utf-8")).hexdigest()[:12]
        path = DEBUG_DIR / f"{kind}_{h}.html"
        path.write_text(text, encoding="utf-8", errors="ignore")
        log.debug("saved %s → %s :: %s", kind.upper(), path, url)
        return path
    except OSError as e:
        log.debug("debug save failed: %s", e)
        return None


@dataclass
class DirectPage:
    url: str
    final_url: str
    status: int
    html: str


async def fetch_html_direct(
    url: str,
    timeout: float = 7.0,
    *,
    min_length: int = 1500,
    proxy: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    debug: bool = False,
) -> DirectPage:
    """
    Plain GET, no JavaScript. Raises ``TierFailure`` unless the body is a
    substantial HTML document without block/challenge markers.
    """
    tier = "direct"
    try:
        async with new_client(timeout=timeout, proxy=proxy, transport=transport) as client:
            r = await asyncio.wait_for(client.get(url), timeout)
            html = r.text
    except asyncio.TimeoutError:
        raise TierFailure(tier, f"timeout after {timeout:g}s", timed_out=True)
    except httpx.TimeoutException as e:
        raise TierFailure(tier, f"timeout: {e.__class__.__name__}", timed_out=True)
    except httpx.HTTPError as e:
        raise TierFailure(tier, f"http error: {e.__class__.__name__}: {e}")

    final_url = str(r.url)
    if debug:
        debug_dump("http", url, html)
    if not r.is_success:
        raise TierFailure(tier, f"status {r.status_code}", final_url=final_url)
    if not html or len(html) < min_length:
        raise TierFailure(tier, f"body too short ({len(html or '')} chars)", final_url=final_url)
    if not looks_like_html(html):
        raise TierFailure(tier, "body is not an HTML document", final_url=final_url)
    if looks_blocked(html):
        raise BlockedPageError(tier, "block/challenge page", final_url=final_url)
    return DirectPage(url=url, final_url=final_url, status=r.status_code, html=html)
