# backend/duproprio/parsing.py
from typing import Any, Dict, List, Mapping, Optional

from backend.listings.normalize import (
    ANNUAL_FEE_THRESHOLD,
    clean_text,
    extract_money_from_text,
    to_money_amount,
)
from backend.listings.parsing import (
    FEE_PATTERN,
    ListingDocument,
    Rule,
    extract_fields,
    jsonld_address,
    jsonld_listing,
    jsonld_price,
    log_provenance,
    normalize_label,
    parse_jsonld_blocks,
    record_from_matches,
)
from backend.py_models.listing import ListingRecord, SourceSite

__all__ = [
    "parse_duproprio_html",
    "parse_duproprio_structured",
    "DUPROPRIO_RULES",
    "STRUCTURED_RULES",
    "STRUCTURED_SCRIPT",
    "READY_SELECTORS",
]

READY_SELECTORS = [".listing-price__amount", ".listing-main-characteristics__item"]

BEDROOM_LABELS = ["Bedrooms", "Bedroom", "Chambres", "Chambre"]
BATHROOM_LABELS = ["Bathrooms", "Bathroom", "Bath", "Salles de bain", "Salle de bain"]
LEVEL_LABELS = ["Levels", "Floors", "Storeys", "Niveaux", "Étages"]
FEE_LABELS = ["Condo fees", "Condominium fees", "Frais de condo", "Frais de copropriété"]
FEE_PHRASES = ["condo fees", "condominium fees", "frais de condo", "frais de copropriété"]

PRICE_META = (
    "meta[property='product:price:amount']",
    "meta[property='og:price:amount']",
    "meta[name='twitter:data1']",
)
FEE_SELECTORS = (".listing-fees__amount", ".listing-financial__amount", "[data-testid*='condo']")

_CHAR_ITEM = ".listing-main-characteristics__item"
_CHAR_TITLE = ".listing-main-characteristics__title"
_CHAR_NUMBER = ".listing-main-characteristics__number"


# --- HTML lookups -----------------------------------------------------------

def _characteristic(doc: ListingDocument, labels: List[str]) -> str:
    return doc.label_value(labels, item=_CHAR_ITEM, label=_CHAR_TITLE, value=_CHAR_NUMBER)


def _dimensions(doc: ListingDocument) -> str:
    """The living-area block is tagged ``item-dimensions``; otherwise look for a unit."""
    for item in doc.select(_CHAR_ITEM):
        el = item.select_one(_CHAR_NUMBER)
        number = clean_text(el.get_text(" ", strip=True)) if el is not None else ""
        if not number:
            continue
        classes = " ".join(item.get("class") or []).lower()
        low = number.lower()
        if "item-dimensions" in classes or "ft²" in low or "sqft" in low or "m²" in low or "pi²" in low:
            return number
    return ""


def _meta_price(doc: ListingDocument) -> Optional[float]:
    raw = doc.meta(*PRICE_META)
    return to_money_amount(raw) if raw else None


def _og_price(doc: ListingDocument) -> str:
    return extract_money_from_text(
        doc.meta("meta[property='og:description']") or doc.meta("meta[property='og:title']")
    )


def _dotted_row_fee(doc: ListingDocument) -> str:
    """Financial box rows: label on the left, amount on the right."""
    wanted = [normalize_label(l) for l in FEE_LABELS]
    for row in doc.select(".listing-box__dotted-row"):
        cells = row.find_all(recursive=False)
        if len(cells) < 2:
            continue
        label = normalize_label(cells[0].get_text(" ", strip=True))
        if any(w in label for w in wanted):
            value = clean_text(cells[-1].get_text(" ", strip=True))
            if value:
                return value
    return ""


def _phone(doc: ListingDocument) -> str:
    text = doc.text("a[href^='tel:']")
    if text:
        return text
    return doc.attr("a[href^='tel:']", "href").replace("tel:", "").strip()


def _ld(doc: ListingDocument) -> Optional[dict]:
    return jsonld_listing(doc.jsonld())


DUPROPRIO_RULES: Dict[str, List[Rule]] = {
    "price": [
        Rule("dom.price", lambda d: d.text(".listing-price__amount")),
        Rule("meta.price", _meta_price),
        Rule("meta.og_description", _og_price),
        Rule("jsonld.price", lambda d: jsonld_price(_ld(d))),
    ],
    "bedroom_count": [
        Rule("characteristics.beds", lambda d: _characteristic(d, BEDROOM_LABELS)),
    ],
    "bathroom_count": [
        Rule("characteristics.baths", lambda d: _characteristic(d, BATHROOM_LABELS)),
    ],
    "floor_levels": [
        Rule("characteristics.levels", lambda d: _characteristic(d, LEVEL_LABELS)),
    ],
    "living_area": [
        Rule("characteristics.dimensions", _dimensions),
    ],
    "condo_fee": [
        Rule("dom.fees", lambda d: d.text(*FEE_SELECTORS)),
        Rule("dotted_row.fees", _dotted_row_fee),
        Rule("scan.fees", lambda d: d.scan_text(FEE_PHRASES, FEE_PATTERN), best_effort=True),
    ],
    "address": [
        Rule("dom.address", lambda d: d.text(".listing-address", "[class*='listing-address']")),
        Rule("jsonld.address", lambda d: jsonld_address(_ld(d))),
    ],
    "contact": [
        Rule("dom.phone", _phone),
    ],
}


def parse_duproprio_html(url: str, html: str, *, fee_threshold: float = ANNUAL_FEE_THRESHOLD) -> ListingRecord:
    doc = ListingDocument(html)
    matches = extract_fields(DUPROPRIO_RULES, doc)
    log_provenance(url, matches)
    return record_from_matches(url, SourceSite.DUPROPRIO, matches, fee_threshold=fee_threshold)


# --- structured (in-page) tier ----------------------------------------------

# Runs inside the rendered page and returns the handful of fields we need, so the
# full DOM never has to be serialized. Keys match parse_duproprio_structured.
STRUCTURED_SCRIPT = r"""
() => {
  const toLine = (s) => (s || "").replace(/\s+/g, " ").trim();
  const getMeta = (sel) => document.querySelector(sel)?.getAttribute("content") || "";
  const getText = (sel) => toLine(document.querySelector(sel)?.textContent || "");
  const norm = (s) => toLine(s).normalize("NFD").replace(/[\u0300-\u036f]/g, "").toLowerCase();

  const metaAmount =
    getMeta("meta[property='product:price:amount']") ||
    getMeta("meta[property='og:price:amount']") ||
    getMeta("meta[name='twitter:data1']");
  const domPriceText = getText(".listing-price__amount");

  let bedsText = "", bathsText = "", levelsText = "", dimText = "";
  for (const item of document.querySelectorAll(".listing-main-characteristics__item")) {
    const number = toLine(item.querySelector(".listing-main-characteristics__number")?.textContent);
    const title = norm(item.querySelector(".listing-main-characteristics__title")?.textContent);
    const cls = (item.getAttribute("class") || "").toLowerCase();
    if (!number) continue;
    if (!bedsText && (title.includes("bedroom") || title.includes("chambre"))) bedsText = number;
    if (!bathsText && (title.includes("bathroom") || title === "bath" || title.includes("salle de bain") || title.includes("salles de bain"))) bathsText = number;
    if (!levelsText && (title.includes("level") || title.includes("floor") || title.includes("niveau") || title.includes("etage"))) levelsText = number;
    const low = number.toLowerCase();
    if (!dimText && (cls.includes("item-dimensions") || low.includes("ft²") || low.includes("sqft") || low.includes("pi²"))) dimText = number;
  }

  let condoFeesText =
    getText(".listing-fees__amount") ||
    getText(".listing-financial__amount") ||
    getText("[data-testid*='condo']");
  if (!condoFeesText) {
    const money = /\$\s*[\d\s,]{2,}(?:\.\d{2})?|\d[\d\s,]*(?:[.,]\d{2})?\s*\$/;
    const nodes = Array.from(document.querySelectorAll("div, span, li, p, td, dd, dt")).slice(0, 2500);
    for (let i = 0; i < nodes.length && !condoFeesText; i += 1) {
      const line = toLine(nodes[i].textContent);
      if (!line || line.length > 400) continue;
      const low = norm(line);
      if (!(low.includes("condo fees") || low.includes("condominium fees") || low.includes("frais de condo") || low.includes("frais de copropriete"))) continue;
      const m = line.match(money) || toLine(nodes[i + 1]?.textContent).match(money);
      if (m) condoFeesText = m[0];
    }
  }

  const addressText = getText(".listing-address") || getText("[class*='listing-address']");
  const tel = document.querySelector("a[href^='tel:']");
  const phoneText = toLine(tel?.textContent) || (tel?.getAttribute("href") || "").replace("tel:", "");

  const ldjson = Array.from(document.querySelectorAll("script[type='application/ld+json']"))
    .map((s) => s.textContent || "")
    .filter(Boolean);

  return { metaAmount, domPriceText, bedsText, bathsText, levelsText, dimText, condoFeesText, addressText, phoneText, ldjson };
}
"""


def _payload_ld(p: Mapping[str, Any]) -> Optional[dict]:
    return p.get("_ld")


def _payload_fee(p: Mapping[str, Any]) -> str:
    t = clean_text(p.get("condoFeesText"))
    if t and "$" not in t:
        return extract_money_from_text(t) or t
    return t


STRUCTURED_RULES: Dict[str, List[Rule]] = {
    "price": [
        Rule("eval.dom_price", lambda p: clean_text(p.get("domPriceText"))),
        Rule("eval.meta_price", lambda p: to_money_amount(p.get("metaAmount")) if p.get("metaAmount") else None),
        Rule("eval.jsonld_price", lambda p: jsonld_price(_payload_ld(p))),
    ],
    "bedroom_count": [Rule("eval.beds", lambda p: clean_text(p.get("bedsText")))],
    "bathroom_count": [Rule("eval.baths", lambda p: clean_text(p.get("bathsText")))],
    "floor_levels": [Rule("eval.levels", lambda p: clean_text(p.get("levelsText")))],
    "living_area": [Rule("eval.dimensions", lambda p: clean_text(p.get("dimText")))],
    "condo_fee": [Rule("eval.fees", _payload_fee)],
    "address": [
        Rule("eval.address", lambda p: clean_text(p.get("addressText"))),
        Rule("eval.jsonld_address", lambda p: jsonld_address(_payload_ld(p))),
    ],
    "contact": [Rule("eval.phone", lambda p: clean_text(p.get("phoneText")))],
}


def parse_duproprio_structured(
    url: str,
    payload: Optional[Mapping[str, Any]],
    *,
    fee_threshold: float = ANNUAL_FEE_THRESHOLD,
) -> ListingRecord:
    source: Dict[str, Any] = dict(payload or {})
    source["_ld"] = jsonld_listing(parse_jsonld_blocks(source.get("ldjson") or []))
    matches = extract_fields(STRUCTURED_RULES, source)
    log_provenance(url, matches)
    return record_from_matches(url, SourceSite.DUPROPRIO, matches, fee_threshold=fee_threshold)
