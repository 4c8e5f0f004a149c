"""
Text normalization used by membership matching and OCR payment checks.

All functions here are pure and total: bad input gives an empty/zero/None
result, never an exception.
"""

import re
import unicodedata
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from urllib.parse import unquote, urlsplit

AMOUNT_CEILING = 200000

_UNICODE_SPACES = re.compile(r"[\u00A0\u2000-\u200A\u202F]")
_NUMBER = r"[+-]?\d{1,3}(?:[ .]\d{3})*(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"
_MONEY_RE = re.compile(rf"({_NUMBER})\s*(?:kr|sek)\b", re.IGNORECASE)
_SPLIT_LINE_RE = re.compile(r"([+-]?\d+(?:[.,]\d{1,2})?)\s*[\r\n]+\s*(?:kr|sek)\b", re.IGNORECASE)
_KEYWORD_RE = re.compile(rf"(?:amount|summa|belopp|paid|betalt)[^\d]{{0,15}}({_NUMBER})", re.IGNORECASE)
_STORAGE_URL_PREFIX = re.compile(r"^/storage/v1/object/(?:public|sign|authenticated)/")


def normalize_name(name) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace"""
    text = unicodedata.normalize("NFD", str(name or "").lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_amount(raw) -> int:
    """
    Parse a currency string such as "1 234,50 kr", "1.234" or "150kr" into
    whole SEK, rounding half up. Unparsable input yields 0.
    """
    s = re.sub(r"[^\d.,]", "", _UNICODE_SPACES.sub("", str(raw if raw is not None else "")))
    if not s:
        return 0

    if "," in s and "." in s:
        # Whichever separator comes last is the decimal mark
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    else:
        s = re.sub(r"[.,](?=\d{3}\b)", "", s)
        s = s.replace(",", ".", 1)

    try:
        # quantize fails past the decimal context precision (long digit runs)
        return int(Decimal(s).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0


def _plausible(value: int) -> bool:
    return 0 < value < AMOUNT_CEILING


def extract_amount(text) -> Optional[int]:
    """
    Find the paid amount in free OCR text.

    Amounts followed by "kr"/"sek" win, and of those the largest (receipts
    tend to show subtotals before the total). Then a number on its own line
    followed by the currency on the next; then a number near a keyword such
    as "belopp" or "paid".
    """
    cleaned = _UNICODE_SPACES.sub(" ", str(text or ""))

    candidates = [normalize_amount(m.group(1)) for m in _MONEY_RE.finditer(cleaned)]
    candidates = [v for v in candidates if _plausible(v)]
    if candidates:
        return max(candidates)

    for m in _SPLIT_LINE_RE.finditer(cleaned):
        value = normalize_amount(m.group(1))
        if _plausible(value):
            return value

    near = _KEYWORD_RE.search(cleaned)
    if near:
        value = normalize_amount(near.group(1))
        if _plausible(value):
            return value
    return None


def to_storage_key(url_or_key, public_files_path: str = "/files") -> str:
    """Reduce a public/signed URL or a raw key to the canonical blob key"""
    value = str(url_or_key or "").strip()
    if not re.match(r"^https?://", value, re.IGNORECASE):
        return value.split("?", 1)[0].lstrip("/")

    path = urlsplit(value).path
    files_prefix = public_files_path.rstrip("/") + "/"
    if _STORAGE_URL_PREFIX.match(path):
        path = _STORAGE_URL_PREFIX.sub("", path)
    elif path.startswith(files_prefix):
        path = path[len(files_prefix):]
    return unquote(path).lstrip("/")
