from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.listings.client import fetch_html_direct, looks_blocked, looks_like_html
from backend.listings.errors import BlockedPageError, TierFailure

URL = "https://www.centris.ca/en/condos~for-sale~montreal/12345678"
PAGE = "<!DOCTYPE html><html><head><title>Condo</title></head><body>" + "<p>listing</p>" * 200 + "</body></html>"


def _transport(status: int = 200, body: str = PAGE, seen: list | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, text=body, headers={"content-type": "text/html"})

    return httpx.MockTransport(handler)


def test_direct_fetch_returns_html_page() -> None:
    seen: list = []
    page = asyncio.run(fetch_html_direct(URL, transport=_transport(seen=seen)))
    assert page.status == 200
    assert page.html == PAGE
    assert page.final_url == URL
    assert "Mozilla/5.0" in seen[0].headers["user-agent"]
    assert seen[0].headers["accept-language"].startswith("en-CA")


def test_non_ok_status_is_tier_failure() -> None:
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetch_html_direct(URL, transport=_transport(status=403)))
    assert exc.value.tier == "direct"
    assert "403" in exc.value.reason


def test_short_body_is_tier_failure() -> None:
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetch_html_direct(URL, transport=_transport(body="<html></html>")))
    assert "too short" in exc.value.reason


def test_non_html_body_is_tier_failure() -> None:
    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetch_html_direct(URL, transport=_transport(body='{"a": 1}' * 400)))
    assert "not an HTML" in exc.value.reason


def test_block_markers_raise_blocked_page() -> None:
    body = PAGE.replace("<p>listing</p>", "<p>Please complete the CAPTCHA</p>", 1)
    with pytest.raises(BlockedPageError):
        asyncio.run(fetch_html_direct(URL, transport=_transport(body=body)))


def test_network_error_is_tier_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetch_html_direct(URL, transport=httpx.MockTransport(handler)))
    assert "ConnectError" in exc.value.reason
    assert not exc.value.timed_out


def test_read_timeout_is_flagged() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TierFailure) as exc:
        asyncio.run(fetch_html_direct(URL, transport=httpx.MockTransport(handler)))
    assert exc.value.timed_out


def test_looks_blocked_and_html_helpers() -> None:
    assert looks_blocked("")
    assert looks_blocked("<html>Access Denied</html>")
    assert looks_blocked("<p>We detected unusual traffic from your network</p>")
    assert not looks_blocked(PAGE)
    assert looks_like_html(PAGE)
    assert not looks_like_html("plain text")
