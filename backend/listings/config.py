import logging
import os
from dataclasses import dataclass, field
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"

DEFAULT_ALLOWED_ORIGINS = (
    "https://joeymakesweb.com",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_origins() -> tuple:
    raw = os.getenv("LISTINGS_ALLOWED_ORIGINS", "").strip()
    if not raw:
        return DEFAULT_ALLOWED_ORIGINS
    return tuple(o.strip().rstrip("/") for o in raw.split(",") if o.strip())


@dataclass
class ScraperConfig:
    """Runtime knobs for the extraction service, read from the environment.

    Timeouts are in seconds. ``cache_fresh_s`` left unset gives a pure TTL cache;
    set below ``cache_ttl_s`` it enables the fresh/stale two-tier policy.
    """

    cache_ttl_s: float = field(default_factory=lambda: _env_float("LISTINGS_CACHE_TTL_SECS", 6 * 60 * 60))
    cache_fresh_s: Optional[float] = field(default_factory=lambda: _env_optional_float("LISTINGS_CACHE_FRESH_SECS"))

    max_concurrency: int = field(default_factory=lambda: _env_int("LISTINGS_MAX_CONCURRENCY", 1))
    per_host_concurrency: Optional[int] = field(default_factory=lambda: _env_optional_int("LISTINGS_PER_HOST_CONCURRENCY"))

    request_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_REQUEST_TIMEOUT_SECS", 38.0))
    extraction_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_EXTRACTION_TIMEOUT_SECS", 60.0))
    inflight_wait_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_INFLIGHT_WAIT_SECS", 30.0))

    direct_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_DIRECT_TIMEOUT_SECS", 7.0))
    render_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_RENDER_TIMEOUT_SECS", 30.0))
    structured_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_STRUCTURED_TIMEOUT_SECS", 30.0))
    nav_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_NAV_TIMEOUT_SECS", 28.0))
    selector_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_SELECTOR_TIMEOUT_SECS", 15.0))
    content_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_CONTENT_TIMEOUT_SECS", 12.0))
    eval_timeout_s: float = field(default_factory=lambda: _env_float("LISTINGS_EVAL_TIMEOUT_SECS", 9.0))
    nav_retries: int = field(default_factory=lambda: _env_int("LISTINGS_NAV_RETRIES", 1))
    eval_retries: int = field(default_factory=lambda: _env_int("LISTINGS_EVAL_RETRIES", 2))

    # Bare fee amounts at or above this are read as yearly. Monthly condo fees
    # this high are rare, but it is a guess, hence configurable.
    annual_fee_threshold: float = field(default_factory=lambda: _env_float("LISTINGS_ANNUAL_FEE_THRESHOLD", 1200.0))
    min_html_length: int = field(default_factory=lambda: _env_int("LISTINGS_MIN_HTML_LENGTH", 1500))

    allowed_origins: tuple = field(default_factory=_env_origins)
    warm_browser: bool = field(default_factory=lambda: _env_flag("LISTINGS_WARM_BROWSER", True))
    headless: bool = field(default_factory=lambda: _env_flag("LISTINGS_HEADLESS", True))
    proxy: Optional[str] = field(default_factory=lambda: os.getenv("LISTINGS_PROXY", "").strip() or None)
    debug: bool = field(default_factory=lambda: _env_flag("LISTINGS_DEBUG", False))


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    if debug:
        logging.getLogger("listings").setLevel(logging.DEBUG)
    if _env_flag("HTTP_DEBUG", False):
        logging.getLogger("httpx").setLevel(logging.DEBUG)
