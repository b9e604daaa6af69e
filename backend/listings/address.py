import re

from backend.py_models.listing import UNAVAILABLE
from backend.listings.normalize import clean_text

MAX_ADDRESS_WORDS = 18

# Civic addresses on both sites, in French or English.
_street_word = re.compile(
    r"\b(?:rue|av(?:enue)?|boulevard|boul|bd|chemin|ch|route|rang|place|mont[ée]e|"
    r"all[ée]e|impasse|c[ôo]te|croissant|terrasse|promenade|"
    r"street|st|road|rd|ave|blvd|drive|dr|lane|ln|court|ct|way|crescent|cres|"
    r"circle|terrace|highway|hwy|parkway|pkwy)\b",
    re.I,
)

_marketing = re.compile(
    r"\b(?:take a look|discover|d[ée]couvrez|invites you|for sale|[àa] vendre|"
    r"commission[- ]?free|sans commission|don'?t miss|opportunit(?:y|[ée]))\b",
    re.I,
)


def looks_like_real_address(text) -> bool:
    """Heuristic: does ``text`` read like a postal address rather than page copy?"""
    t = clean_text(text)
    if not t:
        return False
    if "!" in t or "?" in t:
        return False
    # two sentence-ending periods -> marketing prose
    if len(re.findall(r"\.(?:\s|$)", t)) >= 2:
        return False
    if not re.search(r"\d", t):
        return False
    if len(t.split()) > MAX_ADDRESS_WORDS:
        return False
    if _marketing.search(t):
        return False
    return bool(_street_word.search(t))


def sanitize_address_or_blank(text) -> str:
    t = clean_text(text)
    return t if looks_like_real_address(t) else ""


def resolve_address(scraped, hint="") -> str:
    """Scraped address when it validates, else the caller's hint, else the sentinel."""
    return sanitize_address_or_blank(scraped) or clean_text(hint) or UNAVAILABLE
