"""Filename conventions of the scanner drop folder.

Scanners write ``{tenantPrefix}_{YYYYMMDD}_{HHMMSS}.pdf``; the prefix
routes the file to a tenant and the date orders it in storage when the
document itself carries no readable issue date.
"""

import re
from datetime import date

_PREFIX_RE = re.compile(r"^([A-Za-z0-9-]+)_")
_DATE_TOKEN_RE = re.compile(r"_(\d{4})(\d{2})(\d{2})(?:_|\.|$)")

PDF_SUFFIX = ".pdf"


def extract_prefix(filename: str) -> str | None:
    """Return the text before the first underscore, or ``None``.

    >>> extract_prefix("acme_20251226_231633.pdf")
    'acme'
    """
    match = _PREFIX_RE.match(filename)
    return match.group(1) if match else None


def extract_date(filename: str) -> date | None:
    """Parse the ``YYYYMMDD`` token embedded in a filename.

    Args:
        filename: Base filename, e.g. ``acme_20251226_231633.pdf``.

    Returns:
        The calendar date, or ``None`` when no valid token is present.
    """
    for match in _DATE_TOKEN_RE.finditer(filename):
        year, month, day = (int(g) for g in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return None


def is_candidate(filename: str) -> bool:
    """Whether a directory entry should be considered for intake."""
    return not filename.startswith(".") and filename.lower().endswith(PDF_SUFFIX)


def duplicate_name(filename: str) -> str:
    """Name used to park a file whose content was already queued."""
    return f"DUPLICATE_{filename}"
