# backend/listings/parsing.py
import json
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from backend.listings.normalize import (
    ANNUAL_FEE_THRESHOLD,
    clean_text,
    format_currency,
    is_placeholder,
    money_text_to_display,
    normalize_area,
    normalize_fee_to_monthly,
    parse_count,
)
from backend.py_models.listing import UNAVAILABLE, ListingRecord, SourceSite

__all__ = [
    "ListingDocument",
    "Rule",
    "Match",
    "first_match",
    "extract_fields",
    "normalize_label",
    "quantitative_value",
    "jsonld_listing",
    "jsonld_price",
    "jsonld_address",
    "parse_jsonld_blocks",
    "record_from_matches",
    "MONEY_PATTERN",
    "FEE_PATTERN",
]

log = logging.getLogger("listings")

# Nodes visited by the last-resort text scan; keeps its cost bounded.
SCAN_NODE_LIMIT = 2500
SCAN_TAGS = ("div", "span", "li", "p", "td", "dd", "dt")

MONEY_PATTERN = re.compile(r"\$\s*\d[\d\s,]*(?:\.\d{2})?|\d[\d\s,]*(?:[.,]\d{2})?\s*\$")
# money plus the period it is quoted for, when the page says so
FEE_PATTERN = re.compile(
    r"(?:\$\s*\d[\d\s,]*(?:\.\d{2})?|\d[\d\s,]*(?:[.,]\d{2})?\s*\$)"
    r"(?:\s*(?:/|per|par)\s*(?:month|mois|year|an|ann[ée]e)\b|\s*\((?:monthly|yearly|mensuel|annuel)\))?",
    re.I,
)

_RESIDENCE_TYPES = {
    "singlefamilyresidence", "house", "apartment", "residence", "accommodation",
    "condominium", "realestatelisting", "place",
}
_PRODUCT_TYPES = {"product", "offer", "aggregateoffer"}


# --- tiny utils -------------------------------------------------------------

def _text(el) -> str:
    if el is None:
        return ""
    return clean_text(el.get_text(" ", strip=True))


def normalize_label(s) -> str:
    """Case-fold, strip accents and punctuation: ``"Salles de bain :"`` → ``"salles de bain"``."""
    t = unicodedata.normalize("NFKD", clean_text(s))
    t = "".join(ch for ch in t if not unicodedata.combining(ch))
    t = re.sub(r"[^\w\s]", " ", t.casefold())
    return re.sub(r"\s+", " ", t).strip()


def _types_of(obj: dict) -> set:
    t = obj.get("@type")
    if isinstance(t, list):
        return {str(x).lower() for x in t}
    return {str(t).lower()} if t else set()


def _walk_ld(data) -> Iterable[dict]:
    if isinstance(data, list):
        for it in data:
            yield from _walk_ld(it)
    elif isinstance(data, dict):
        yield data
        graph = data.get("@graph")
        if isinstance(graph, list):
            yield from _walk_ld(graph)


class ListingDocument:
    """Read-only view of one listing page with the lookups the site rules need."""

    def __init__(self, html: str) -> None:
        self.html = html or ""
        self.soup = BeautifulSoup(self.html, "lxml")
        self._jsonld: Optional[List[dict]] = None

    def select_one(self, selector: str) -> Optional[Tag]:
        return self.soup.select_one(selector)

    def select(self, selector: str) -> List[Tag]:
        return self.soup.select(selector)

    def text(self, *selectors: str) -> str:
        """Text of the first selector that yields a non-empty element."""
        for sel in selectors:
            t = _text(self.soup.select_one(sel))
            if t:
                return t
        return ""

    def all_text(self, selector: str) -> str:
        return clean_text(" ".join(_text(el) for el in self.soup.select(selector)))

    def attr(self, selector: str, name: str) -> str:
        el = self.soup.select_one(selector)
        if el is None:
            return ""
        val = el.get(name)
        if isinstance(val, list):
            val = " ".join(val)
        return clean_text(val)

    def meta(self, *selectors: str) -> str:
        for sel in selectors:
            v = self.attr(sel, "content")
            if v:
                return v
        return ""

    def title(self) -> str:
        return _text(self.soup.title)

    def jsonld(self) -> List[dict]:
        """Every JSON-LD object on the page, ``@graph`` and lists flattened."""
        if self._jsonld is None:
            blocks = [
                s.string or s.get_text(strip=True)
                for s in self.soup.select("script[type='application/ld+json']")
            ]
            self._jsonld = parse_jsonld_blocks(blocks)
        return self._jsonld

    def label_value(
        self,
        labels: Iterable[str],
        *,
        item: str,
        label: str,
        value: str,
        exact_only: bool = False,
    ) -> str:
        """
        Value of the ``item`` whose ``label`` child matches any of ``labels``.
        Labels are compared normalized; an exact match anywhere on the page wins
        over a substring match.
        """
        targets = [normalize_label(l) for l in labels if l]
        pairs = []
        for el in self.soup.select(item):
            lab = normalize_label(_text(el.select_one(label)))
            val = _text(el.select_one(value))
            if lab and val:
                pairs.append((lab, val))
        for lab, val in pairs:
            if lab in targets:
                return val
        if exact_only:
            return ""
        for lab, val in pairs:
            if any(t and t in lab for t in targets):
                return val
        return ""

    def scan_text(
        self,
        phrases: Sequence[str],
        pattern: "re.Pattern",
        *,
        limit: int = SCAN_NODE_LIMIT,
    ) -> str:
        """
        Best-effort: look through at most ``limit`` text nodes for one mentioning
        any of ``phrases`` and return the first ``pattern`` hit in it or in the
        node right after it.
        """
        wanted = [p.lower() for p in phrases]
        nodes = self.soup.find_all(SCAN_TAGS, limit=limit)
        for i, node in enumerate(nodes):
            line = _text(node)
            if not line or len(line) > 400:
                continue
            low = line.lower()
            if not any(p in low for p in wanted):
                continue
            m = pattern.search(line)
            if m:
                return clean_text(m.group(0))
            if i + 1 < len(nodes):
                m = pattern.search(_text(nodes[i + 1]))
                if m:
                    return clean_text(m.group(0))
        return ""


# --- rule tables ------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    """One way of finding a field. ``best_effort`` marks low-confidence scans."""

    name: str
    fn: Callable[[Any], Any]
    best_effort: bool = False


@dataclass(frozen=True)
class Match:
    value: Any = None
    rule: Optional[str] = None
    best_effort: bool = False


def _is_empty(v) -> bool:
    if v is None:
        return True
    if isinstance(v, str):
        return is_placeholder(v)
    return False


def first_match(rules: Sequence[Rule], source) -> Match:
    """First non-empty rule result. Results of different rules are never merged."""
    for rule in rules:
        try:
            value = rule.fn(source)
        except (ValueError, TypeError, KeyError, AttributeError, IndexError) as e:
            log.debug("rule %s raised %s", rule.name, e)
            continue
        if not _is_empty(value):
            return Match(value=value, rule=rule.name, best_effort=rule.best_effort)
    return Match()


def extract_fields(table: Mapping[str, Sequence[Rule]], source) -> Dict[str, Match]:
    return {field: first_match(rules, source) for field, rules in table.items()}


def log_provenance(url: str, matches: Mapping[str, Match]) -> None:
    if not log.isEnabledFor(logging.DEBUG):
        return
    parts = [
        f"{k}<-{m.rule}{'?' if m.best_effort else ''}"
        for k, m in matches.items()
        if m.rule
    ]
    log.debug("FIELDS %s | %s", url, " ".join(parts) or "none")


# --- JSON-LD helpers ------------------------------------------------------------

def quantitative_value(x) -> Optional[float]:
    """Return numeric value from a QuantitativeValue-ish dict or raw."""
    if isinstance(x, dict):
        x = x.get("value")
    if x is None or isinstance(x, bool):
        return None
    try:
        return float(str(x).replace(",", "").strip())
    except ValueError:
        return None


def parse_jsonld_blocks(blocks: Iterable[str]) -> List[dict]:
    """JSON-LD objects from raw ``<script>`` bodies (as returned by in-page evaluation)."""
    out: List[dict] = []
    for raw in blocks or []:
        if not isinstance(raw, str) or not raw.strip():
            continue
        try:
            out.extend(_walk_ld(json.loads(raw)))
        except ValueError:
            log.debug("skipping malformed JSON-LD block")
    return out


def jsonld_listing(items: Sequence[dict]) -> Optional[dict]:
    """
    Residence-like JSON-LD object merged with the product/offer object that
    carries its price. Residence keys win.
    """
    residence = next((o for o in items if _types_of(o) & _RESIDENCE_TYPES), None)
    product = next((o for o in items if _types_of(o) & _PRODUCT_TYPES), None)
    merged: dict = {}
    if residence:
        merged.update(residence)
    if product:
        for k, v in product.items():
            merged.setdefault(k, v)
        if "offers" not in merged and "price" in product:
            merged["offers"] = product
    return merged or None


def jsonld_price(ld: Optional[dict]) -> Optional[float]:
    if not ld:
        return None
    offers = ld.get("offers")
    if isinstance(offers, list) and offers:
        offers = offers[0]
    price = offers.get("price") if isinstance(offers, dict) else None
    if price is None:
        price = ld.get("price")
    return quantitative_value(price)


def jsonld_address(ld: Optional[dict]) -> str:
    if not ld:
        return ""
    addr = ld.get("address")
    if isinstance(addr, str):
        return clean_text(addr)
    if not isinstance(addr, dict):
        return ""
    parts = [
        addr.get("streetAddress"),
        addr.get("addressLocality"),
        " ".join(p for p in (addr.get("addressRegion"), addr.get("postalCode")) if p),
    ]
    return ", ".join(clean_text(p) for p in parts if p and clean_text(p))


# --- record assembly ------------------------------------------------------------

def _as_int(v) -> Optional[int]:
    n = parse_count(v)
    return int(n) if n is not None else None


def _price(v) -> str:
    if v is None:
        return UNAVAILABLE
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return format_currency(v) if v > 0 else UNAVAILABLE
    return money_text_to_display(v)


def record_from_matches(
    url: str,
    site: SourceSite,
    matches: Mapping[str, Match],
    *,
    fee_threshold: float = ANNUAL_FEE_THRESHOLD,
) -> ListingRecord:
    """Canonical record out of raw field matches; anything missing becomes a sentinel."""

    def val(field: str):
        m = matches.get(field)
        return m.value if m is not None else None

    fee_raw = val("condo_fee")
    return ListingRecord(
        source_url=url,
        source_site=site,
        address=clean_text(val("address")) or UNAVAILABLE,
        price=_price(val("price")),
        bedroom_count=_as_int(val("bedroom_count")),
        bathroom_count=parse_count(val("bathroom_count")),
        floor_levels=_as_int(val("floor_levels")),
        living_area=normalize_area(val("living_area")),
        condo_fee=normalize_fee_to_monthly(fee_raw, fee_threshold) if fee_raw is not None else UNAVAILABLE,
        contact=clean_text(val("contact")) or UNAVAILABLE,
    )
