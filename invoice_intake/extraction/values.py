"""Locale-aware parsing of amounts and dates as printed on invoices.

Argentine invoices print ``1.234,56`` while many vendors and the OCR
service itself use ``1,234.56``; both must produce the same decimal.
Dates are day-first unless written ISO style.
"""

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENTS = Decimal("0.01")

_NUMERIC_RE = re.compile(r"-?\(?[\d.,]*\d[\d.,]*\)?")

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})(?:\b|T)")
_DAY_FIRST_RE = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b")
_DAY_MONTH_NAME_RE = re.compile(
    r"\b(\d{1,2})(?:\s+de)?[\s\-/.]+([A-Za-zÁÉÍÓÚáéíóú]{3,})\.?(?:\s+de(?:l)?)?[\s\-/.,]+(\d{4}|\d{2})\b"
)
_MONTH_NAME_DAY_RE = re.compile(r"\b([A-Za-z]{3,})\.?\s+(\d{1,2}),?\s+(\d{4})\b")

MONTHS: dict[str, int] = {
    "jan": 1, "ene": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4, "abr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8, "ago": 8,
    "sep": 9, "set": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12, "dic": 12,
}


def parse_amount(text: str | None) -> Decimal | None:
    """Parse a printed amount into a two-decimal ``Decimal``.

    The right-most of ``,`` and ``.`` is the decimal separator when both
    appear. A lone separator followed by exactly three digits is treated
    as a thousands separator, so ``$ 1.000`` is one thousand.

    Args:
        text: Raw text such as ``"$ 1.234,56"`` or ``"USD 1,234.56"``.

    Returns:
        The amount rounded to cents, or ``None`` when no number is found.
    """
    if not text:
        return None
    match = _NUMERIC_RE.search(text.replace(" ", ""))
    if not match:
        return None
    token = match.group(0)
    negative = token.startswith("-") or (token.startswith("(") and token.endswith(")"))
    token = token.strip("-()").strip(".,")

    if "," in token and "." in token:
        decimal_sep = "," if token.rfind(",") > token.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        token = token.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in token or "." in token:
        sep = "," if "," in token else "."
        head, _, tail = token.rpartition(sep)
        if token.count(sep) > 1 or len(tail) == 3:
            token = token.replace(sep, "")
        else:
            token = f"{head}.{tail}"

    try:
        amount = Decimal(token)
    except InvalidOperation:
        return None
    if negative:
        amount = -amount
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def parse_date(text: str | None) -> date | None:
    """Parse a printed date into a calendar date.

    Accepts ``YYYY-MM-DD`` (optionally followed by a time), day-first
    numeric dates separated by ``/``, ``-`` or ``.`` with two- or
    four-digit years, and dates with English or Spanish month names.

    Returns:
        The date, or ``None`` when nothing valid is found.
    """
    if not text:
        return None

    match = _ISO_DATE_RE.search(text)
    if match:
        parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    match = _DAY_FIRST_RE.search(text)
    if match:
        day, month, year = match.groups()
        parsed = _safe_date(_expand_year(year), int(month), int(day))
        if parsed:
            return parsed

    match = _DAY_MONTH_NAME_RE.search(text)
    if match:
        month = _month_number(match.group(2))
        if month:
            parsed = _safe_date(_expand_year(match.group(3)), month, int(match.group(1)))
            if parsed:
                return parsed

    match = _MONTH_NAME_DAY_RE.search(text)
    if match:
        month = _month_number(match.group(1))
        if month:
            return _safe_date(int(match.group(3)), month, int(match.group(2)))

    return None


def _month_number(name: str) -> int | None:
    return MONTHS.get(name[:3].lower())


def _expand_year(year: str) -> int:
    value = int(year)
    if len(year) == 2:
        return 2000 + value if value < 70 else 1900 + value
    return value


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None
