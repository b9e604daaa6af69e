"""Pure string -> canonical value helpers shared by every site parser."""

import math
import re
from typing import Optional

from backend.py_models.listing import UNAVAILABLE

ANNUAL_FEE_THRESHOLD = 1200.0

PLACEHOLDERS = {"", "N/A", "NA", "-", "—", "–", UNAVAILABLE.upper(), "NONE", "NULL"}

# --- money ------------------------------------------------------------------
# "$579,000" · "$ 1 250.50" · "579 000 $" (French placement)
_money_prefix = re.compile(r"\$\s*\d[\d\s,]*(?:\.\d{1,2})?")
_money_suffix = re.compile(r"\d[\d\s,]*(?:[.,]\d{2})?\s*\$")

_monthly = re.compile(r"\bmonth(?:ly)?\b|\bmois\b|\bmensuel", re.I)
_yearly = re.compile(r"\byear(?:ly)?\b|\bannual(?:ly)?\b|/\s*an\b|\bpar an\b|\bann[ée]e\b|\bannuel", re.I)

# --- area -------------------------------------------------------------------
_sqft = re.compile(
    r"(\d[\d,.\s]*?)\s*(?:sq\.?\s*ft\.?|sqft|square\s+feet|pi²|pi2|pc)(?![\w²])",
    re.I,
)
_count = re.compile(r"\d+(?:[.,]\d+)?|½")


def clean_text(s) -> str:
    if s is None:
        return ""
    return re.sub(r"\s+", " ", str(s)).strip()


def is_placeholder(s) -> bool:
    return clean_text(s).upper() in PLACEHOLDERS


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def to_money_amount(text) -> Optional[float]:
    """Strip everything but digits and periods; ``None`` when nothing numeric is left.

    Empty and placeholder strings are ``None``, never zero.
    """
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text) if math.isfinite(text) else None
    digits = re.sub(r"[^0-9.]", "", str(text))
    if not digits.strip("."):
        return None
    try:
        n = float(digits)
    except ValueError:
        return None
    return n if math.isfinite(n) else None


def format_currency(amount) -> str:
    """Whole-dollar CAD rendering, ``$579,000``. Sentinel for null or non-finite input."""
    if amount is None or isinstance(amount, bool):
        return UNAVAILABLE
    try:
        n = float(amount)
    except (TypeError, ValueError):
        return UNAVAILABLE
    if not math.isfinite(n) or n < 0:
        return UNAVAILABLE
    return f"${_round_half_up(n):,}"


def extract_money_from_text(s) -> str:
    """Return the first money-looking fragment of ``s`` (``""`` if none)."""
    t = clean_text(s)
    if not t:
        return ""
    m = _money_prefix.search(t) or _money_suffix.search(t)
    if not m:
        return ""
    frag = clean_text(m.group(0))
    # a bare "$5" style match is too short to be a price or a fee
    if sum(ch.isdigit() for ch in frag) < 2:
        return ""
    return frag


def money_text_to_display(s) -> str:
    """Money fragment in ``s`` re-rendered canonically, or the sentinel."""
    frag = extract_money_from_text(s) or clean_text(s)
    if frag.endswith("$"):
        # French layout puts cents after a comma
        frag = re.sub(r",(\d{2})\s*\$$", r".\1", frag)
    n = to_money_amount(frag)
    return format_currency(n) if n is not None and n > 0 else UNAVAILABLE


def _fee_amount(t: str) -> Optional[float]:
    frag = extract_money_from_text(t)
    if frag:
        return to_money_amount(re.sub(r",(\d{2})\s*\$$", r".\1", frag))
    return to_money_amount(t)


def _as_monthly(yearly_amount: float) -> str:
    return f"{format_currency(yearly_amount / 12)} / month"


def normalize_fee_to_monthly(raw, threshold: float = ANNUAL_FEE_THRESHOLD) -> str:
    """Express a condo fee as ``$X / month``.

    Already-monthly text is returned unchanged, yearly text is divided by 12,
    and a bare amount at or above ``threshold`` is assumed to be yearly.
    Idempotent: its own output is always returned unchanged.
    """
    t = clean_text(raw)
    if is_placeholder(t):
        return UNAVAILABLE
    if _monthly.search(t):
        return t
    if _yearly.search(t):
        n = _fee_amount(t)
        return _as_monthly(n) if n is not None else t
    n = _fee_amount(t)
    if n is not None and n >= threshold:
        return _as_monthly(n)
    return t


def normalize_area(raw) -> Optional[str]:
    """Rewrite ``912 sqft`` as ``912 ft²``; ``ft²``/``m²`` text passes through."""
    t = clean_text(raw)
    if not t or is_placeholder(t):
        return None
    return _sqft.sub(lambda m: f"{m.group(1).strip()} ft²", t)


def parse_count(text) -> Optional[float]:
    """Room counts such as ``3``, ``2 + 1``, ``1 ½`` or ``2.5``.

    Parts joined by ``+`` are summed (Centris writes above-ground + basement
    bedrooms that way).
    """
    if text is None:
        return None
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text) if math.isfinite(text) and text >= 0 else None
    t = clean_text(text)
    if not t:
        return None
    tokens = _count.findall(t)
    if not tokens:
        return None
    if "+" not in t and "½" not in t:
        tokens = tokens[:1]
    total = 0.0
    for tok in tokens:
        total += 0.5 if tok == "½" else float(tok.replace(",", "."))
    return total
