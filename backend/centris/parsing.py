# backend/centris/parsing.py
import re
from typing import Dict, List, Optional

from backend.listings.normalize import ANNUAL_FEE_THRESHOLD, clean_text, to_money_amount
from backend.listings.parsing import (
    FEE_PATTERN,
    MONEY_PATTERN,
    ListingDocument,
    Rule,
    extract_fields,
    jsonld_address,
    jsonld_listing,
    jsonld_price,
    log_provenance,
    normalize_label,
    quantitative_value,
    record_from_matches,
)
from backend.py_models.listing import ListingRecord, SourceSite

__all__ = ["parse_centris_html", "CENTRIS_RULES", "READY_SELECTORS"]

# Any of these showing up means the listing body has rendered.
READY_SELECTORS = ["[data-cy='buyPrice']", "[data-cy='price']", "[data-cy='address']"]

BEDROOM_LABELS = ["Bedrooms", "Bedroom", "Chambres", "Chambre"]
BATHROOM_LABELS = ["Bathrooms", "Bathroom", "Salles de bain", "Salle de bain"]
LEVEL_LABELS = ["Number of floors", "Number of storeys", "Storeys", "Nombre d'étages", "Étages"]
NET_AREA_LABELS = ["Net area", "Living area", "Superficie nette", "Superficie habitable"]
AREA_LABELS = ["Area", "Superficie"]
FEE_LABELS = ["Condominium fees", "Condo fees", "Frais de copropriété", "Frais de condo"]
FEE_PHRASES = ["condominium fees", "condo fees", "frais de copropriété", "frais de condo"]
PRICE_PHRASES = ["asking price", "for sale", "prix demandé", "à vendre"]

# "3 bedrooms, 2 bathrooms and 1 powder room" / "3 chambres, 2 salles de bain, 1 salle d'eau"
_teaser_beds = re.compile(r"(\d+)\s*(?:bedrooms?|chambres?)\b", re.I)
_teaser_baths = re.compile(r"(\d+)\s*(?:bathrooms?|salles? de bains?)\b", re.I)
_teaser_powder = re.compile(r"(\d+)\s*(?:powder rooms?|salles? d['’]eau)\b", re.I)


# --- lookups ----------------------------------------------------------------

def _carac(doc: ListingDocument, labels: List[str], exact_only: bool = False) -> str:
    return doc.label_value(
        labels,
        item=".carac-container",
        label=".carac-title",
        value=".carac-value",
        exact_only=exact_only,
    )


def _teaser(doc: ListingDocument) -> str:
    return doc.text(".row.teaser")


def _teaser_bedrooms(doc: ListingDocument) -> Optional[int]:
    m = _teaser_beds.search(_teaser(doc))
    return int(m.group(1)) if m else None


def _teaser_bathrooms(doc: ListingDocument) -> Optional[float]:
    t = _teaser(doc)
    m = _teaser_baths.search(t)
    if not m:
        return None
    baths = float(m.group(1))
    powder = _teaser_powder.search(t)
    if powder:
        baths += 0.5 * int(powder.group(1))
    return baths


def _dom_price(doc: ListingDocument) -> str:
    t = doc.text("[data-cy='buyPrice']", "[data-cy='price']", ".price")
    m = MONEY_PATTERN.search(t)
    return clean_text(m.group(0)) if m else ""


def _meta_price(doc: ListingDocument) -> Optional[float]:
    raw = doc.attr("[itemprop='price']", "content") or doc.meta("meta[property='product:price:amount']")
    return to_money_amount(raw) if raw else None


def _ld(doc: ListingDocument) -> Optional[dict]:
    return jsonld_listing(doc.jsonld())


def _fee_table_row(doc: ListingDocument) -> str:
    """Financial details table: the fee is the last cell of the matching row."""
    wanted = [normalize_label(l) for l in FEE_LABELS]
    for row in doc.select("table tr"):
        row_label = normalize_label(row.get_text(" ", strip=True))
        if not any(w in row_label for w in wanted):
            continue
        cells = row.select("td")
        if cells:
            last = clean_text(cells[-1].get_text(" ", strip=True))
            if last:
                return last
    return ""


def _contact(doc: ListingDocument) -> str:
    name = doc.text("[data-cy='broker-name']", ".broker-name", ".brokerName", ".realtor-name")
    phone = doc.text("[data-cy='broker-phone']", "a[href^='tel:']")
    return " - ".join(p for p in (name, phone) if p)


CENTRIS_RULES: Dict[str, List[Rule]] = {
    "price": [
        Rule("dom.price", _dom_price),
        Rule("meta.price", _meta_price),
        Rule("jsonld.price", lambda d: jsonld_price(_ld(d))),
        Rule("scan.price", lambda d: d.scan_text(PRICE_PHRASES, MONEY_PATTERN), best_effort=True),
    ],
    "bedroom_count": [
        Rule("teaser.beds", _teaser_bedrooms),
        Rule("carac.beds", lambda d: _carac(d, BEDROOM_LABELS)),
        Rule("dom.cac", lambda d: d.text(".cac")),
        Rule("jsonld.beds", lambda d: quantitative_value((_ld(d) or {}).get("numberOfBedrooms"))),
    ],
    "bathroom_count": [
        Rule("teaser.baths", _teaser_bathrooms),
        Rule("carac.baths", lambda d: _carac(d, BATHROOM_LABELS)),
        Rule("dom.sdb", lambda d: d.text(".sdb")),
        Rule("jsonld.baths", lambda d: quantitative_value((_ld(d) or {}).get("numberOfBathroomsTotal"))),
    ],
    "floor_levels": [
        Rule("carac.levels", lambda d: _carac(d, LEVEL_LABELS)),
    ],
    "living_area": [
        Rule("carac.net_area", lambda d: _carac(d, NET_AREA_LABELS)),
        Rule("carac.area", lambda d: _carac(d, AREA_LABELS, exact_only=True)),
    ],
    "condo_fee": [
        Rule("table.fees", _fee_table_row),
        Rule("carac.fees", lambda d: _carac(d, FEE_LABELS)),
        Rule("scan.fees", lambda d: d.scan_text(FEE_PHRASES, FEE_PATTERN), best_effort=True),
    ],
    "address": [
        Rule("dom.address", lambda d: d.text("[itemprop='address']", "[data-cy='address']")),
        Rule("jsonld.address", lambda d: jsonld_address(_ld(d))),
    ],
    "contact": [
        Rule("dom.broker", _contact),
    ],
}


def parse_centris_html(url: str, html: str, *, fee_threshold: float = ANNUAL_FEE_THRESHOLD) -> ListingRecord:
    doc = ListingDocument(html)
    matches = extract_fields(CENTRIS_RULES, doc)
    log_provenance(url, matches)
    return record_from_matches(url, SourceSite.CENTRIS, matches, fee_threshold=fee_threshold)
