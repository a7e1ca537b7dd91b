"""Shared test fixtures for the intake worker test suite."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from invoice_intake.db.session import build_engine, build_session_factory, init_db
from invoice_intake.observability.sink import ProcessingLogSink
from invoice_intake.storage.object_store import StoredObject
from invoice_intake.tenants.resolver import TenantResolver
from invoice_intake.utils.config import DatabaseConfig

ACME_TENANT_ID = "tenant-acme"
ACME_TAX_ID = "30-71215244-9"


class InMemoryObjectStore:
    """Object store double keeping objects in a dict.

    ``failures`` maps an operation name (``put``, ``get``, ``move``,
    ``delete``, ``list_keys``) to an exception raised on every call.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.content_types: dict[tuple[str, str], str] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str, str]] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def list_keys(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        self._maybe_fail("list_keys")
        return [
            StoredObject(key=key, size=len(data))
            for (b, key), data in sorted(self.objects.items())
            if b == bucket and key.startswith(prefix)
        ]

    def get(self, bucket: str, key: str) -> bytes:
        self._maybe_fail("get")
        self.calls.append(("get", bucket, key))
        return self.objects[(bucket, key)]

    def put(
        self, bucket: str, key: str, body: bytes, content_type: str = "application/octet-stream"
    ) -> None:
        self._maybe_fail("put")
        self.calls.append(("put", bucket, key))
        self.objects[(bucket, key)] = body
        self.content_types[(bucket, key)] = content_type

    def move(self, bucket: str, source_key: str, destination_key: str) -> None:
        self._maybe_fail("move")
        self.calls.append(("move", bucket, source_key))
        self.objects[(bucket, destination_key)] = self.objects.pop((bucket, source_key))

    def delete(self, bucket: str, key: str) -> None:
        self._maybe_fail("delete")
        self.calls.append(("delete", bucket, key))
        self.objects.pop((bucket, key), None)

    def keys(self, bucket: str) -> list[str]:
        return sorted(key for b, key in self.objects if b == bucket)


@pytest.fixture
def session_factory(tmp_path: Path):
    """Session factory over a fresh SQLite database file."""
    engine = build_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'intake.db'}"))
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def prefix_map_path(tmp_path: Path) -> Path:
    """Prefix map with one tenant, ``acme``."""
    path = tmp_path / "prefix-map.json"
    path.write_text(
        json.dumps(
            {
                "acme": {
                    "tenantId": ACME_TENANT_ID,
                    "taxId": ACME_TAX_ID,
                    "bucket": "acme-bucket",
                    "storageKeyPrefix": "acme",
                }
            }
        )
    )
    return path


@pytest.fixture
def resolver(prefix_map_path: Path) -> TenantResolver:
    return TenantResolver(prefix_map_path)


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def sink(session_factory) -> ProcessingLogSink:
    return ProcessingLogSink(session_factory, flush_size=50, flush_interval_seconds=5.0)


@pytest.fixture
def pdf_bytes() -> bytes:
    """Fake PDF content above the minimum upload size."""
    return b"%PDF-1.4\n" + b"0" * 2048 + b"\n%%EOF\n"


@pytest.fixture
def make_expense_response() -> Callable[..., dict[str, Any]]:
    """Factory for AnalyzeExpense responses.

    Fields are ``(type, text, confidence)`` tuples; an optional fourth
    element gives the field's group types, e.g. ``["VENDOR"]``.
    """

    def _make(fields: list[tuple], lines: list[str] | None = None) -> dict[str, Any]:
        summary = []
        for field in fields:
            field_type, text, confidence = field[:3]
            entry: dict[str, Any] = {
                "Type": {"Text": field_type, "Confidence": 99.0},
                "ValueDetection": {"Text": text, "Confidence": confidence},
                "PageNumber": 1,
            }
            if len(field) > 3:
                entry["GroupProperties"] = [{"Types": field[3], "Id": "g1"}]
            summary.append(entry)
        blocks = [
            {"BlockType": "LINE", "Text": line, "Confidence": 99.0}
            for line in (lines or [])
        ]
        return {
            "DocumentMetadata": {"Pages": 1},
            "ExpenseDocuments": [
                {
                    "ExpenseIndex": 1,
                    "SummaryFields": summary,
                    "LineItemGroups": [],
                    "Blocks": blocks,
                }
            ],
        }

    return _make
