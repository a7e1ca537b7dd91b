"""Object key layout inside a tenant bucket."""

from datetime import date
from posixpath import splitext


def dated_key(storage_key_prefix: str, day: date, filename: str) -> str:
    """``{prefix}/{YYYY}/{MM}/{DD}/{filename}``, without a leading slash
    when the tenant has no prefix.

    >>> dated_key("acme", date(2026, 1, 1), "acme_20260101_090000.pdf")
    'acme/2026/01/01/acme_20260101_090000.pdf'
    """
    parts = [storage_key_prefix.strip("/")] if storage_key_prefix.strip("/") else []
    parts += [f"{day.year:04d}", f"{day.month:02d}", f"{day.day:02d}", filename]
    return "/".join(parts)


def inbox_key(inbox_prefix: str, storage_key_prefix: str, day: date, filename: str) -> str:
    """Key an uploaded file waits under until it has been OCR'd."""
    return _join(inbox_prefix, dated_key(storage_key_prefix, day, filename))


def ocr_response_key(final_key: str) -> str:
    """Key of the raw OCR response stored next to the final document."""
    stem, _ = splitext(final_key)
    return f"{stem}_ocr.json"


def error_key(error_prefix: str, storage_key_prefix: str, kind: str, filename: str) -> str:
    """Key a file is parked under when it cannot be processed.

    ``kind`` is ``failed`` or ``unsupported``. The tenant prefix keeps
    parked files of tenants sharing a bucket apart.

    >>> error_key("error/", "acme", "failed", "a.pdf")
    'error/acme/failed_a.pdf'
    """
    return _join(error_prefix, _join(storage_key_prefix, f"{kind}_{filename}"))


def basename(key: str) -> str:
    return key.rsplit("/", 1)[-1]


def _join(prefix: str, rest: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/{rest}" if prefix else rest
