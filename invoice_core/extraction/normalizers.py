"""Canonical forms for extracted values.

Dates normalize to ISO ``YYYY-MM-DD`` and amounts to a plain two-decimal
string such as ``1234.50``. A value that cannot be normalized yields
``None``; the raw text is kept on the candidate either way.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%m/%d/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
]

_CURRENCY_CHARS = re.compile(r"[$€£¥,\s]|USD|EUR|GBP", re.IGNORECASE)
_AMOUNT_SHAPE = re.compile(r"^-?\d+(?:\.\d{1,2})?$")
_CENTS = Decimal("0.01")


def parse_date(value: str) -> date | None:
    """Parse a date in any supported format."""
    text = re.sub(r"\s+", " ", value.strip().rstrip(".,"))
    text = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: str) -> str | None:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def parse_amount(value: str) -> Decimal | None:
    """Parse a monetary amount, tolerating currency symbols and separators.

    Args:
        value: Raw text such as ``$1,234.5`` or ``(12.00)``.

    Returns:
        The amount quantized to cents, or ``None`` if the text is not a
        well-formed amount.
    """
    text = value.strip()
    negative = text.startswith("(") and text.endswith(")")
    text = _CURRENCY_CHARS.sub("", text.strip("()"))
    if not _AMOUNT_SHAPE.match(text):
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if negative:
        amount = -amount
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def normalize_amount(value: str) -> str | None:
    amount = parse_amount(value)
    return f"{amount:.2f}" if amount is not None else None


def normalize_text(value: str) -> str | None:
    text = re.sub(r"\s+", " ", value).strip(" :;,")
    return text or None


def normalize_identifier(value: str) -> str | None:
    text = value.strip().strip(":#.,;").upper()
    return text or None


NORMALIZERS = {
    "date": normalize_date,
    "amount": normalize_amount,
    "identifier": normalize_identifier,
    "text": normalize_text,
}


def normalize(kind: str, value: str) -> str | None:
    """Normalize a raw value for a field kind; unknown kinds pass through."""
    normalizer = NORMALIZERS.get(kind)
    if normalizer is None:
        return value.strip() or None
    return normalizer(value)
