"""Shared test fixtures for techkpi-ingest tests.

Provides mock backends that satisfy the ObjectStorage and RegionProvider
protocols, an in-memory SQLite ingest store seeded with a rubric and
settings, and helpers that build Ontrac-style .xlsx exports with openpyxl.
"""

from __future__ import annotations

import io
from datetime import datetime, timezone

import openpyxl
import pytest

from techkpi_ingest.backends.sqlite import SQLiteIngestStore
from techkpi_ingest.config import ONTRAC_EXPECTED_HEADERS, IngestConfig
from techkpi_ingest.models import StoredObject, UploadFile

REGIONS = ["Keystone", "Beltway", "Big South", "Florida", "Freedom", "New England"]


# ---------------------------------------------------------------------------
# Workbook helpers
# ---------------------------------------------------------------------------


def make_tech_row(tech_id: str, name: str = "Jane Doe", **metrics: object) -> list[object]:
    """Build one data row in expected-header order.

    Keyword arguments override metrics by header name with spaces, ``%`` and
    ``/`` replaced, e.g. ``total_jobs=40`` or ``tnps_rate="85.0%"``.
    """
    defaults: dict[str, object] = {
        "TechId": tech_id,
        "TechName": name,
        "Supervisor": "Sam Lead",
        "Total Jobs": 40,
        "tNPS Rate": "85.0%",
        "Total FTR/Contact Jobs": 30,
        "FTR%": "92.5%",
        "ToolUsage": "88%",
    }
    aliases = {
        "total_jobs": "Total Jobs",
        "tnps_rate": "tNPS Rate",
        "ftr_contact_jobs": "Total FTR/Contact Jobs",
        "ftr_pct": "FTR%",
        "tool_usage": "ToolUsage",
    }
    for key, value in metrics.items():
        defaults[aliases.get(key, key)] = value
    return [defaults.get(header, 1) for header in ONTRAC_EXPECTED_HEADERS]


def make_workbook_bytes(
    title: str = "Keystone Tech KPI Report",
    rows: list[list[object]] | None = None,
    headers: list[str] | None = None,
    sheet_name: str = "Report",
    leading_sheets: list[str] | None = None,
    footer: bool = True,
) -> bytes:
    """Build an Ontrac-style .xlsx: title on row 1, header on row 2, data from row 3."""
    wb = openpyxl.Workbook()
    first = wb.active
    names = list(leading_sheets or []) + [sheet_name]
    first.title = names[0]
    for extra in names[1:]:
        wb.create_sheet(extra)

    for name in leading_sheets or []:
        ws = wb[name]
        ws.append(["Notes"])
        ws.append(["Something", "Else"])

    ws = wb[sheet_name]
    ws.append([title])
    ws.append(list(headers if headers is not None else ONTRAC_EXPECTED_HEADERS))
    for row in rows if rows is not None else [make_tech_row("T100"), make_tech_row("T200", "John Roe")]:
        ws.append(row)
    if footer:
        ws.append([])
        ws.append(["GRAND TOTAL", None, None, 80])

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def xlsx_upload(filename: str, **kwargs: object) -> UploadFile:
    return UploadFile(filename=filename, data=make_workbook_bytes(**kwargs))


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_config() -> IngestConfig:
    """Return an IngestConfig with all defaults."""
    return IngestConfig()


# ---------------------------------------------------------------------------
# Mock Backends
# ---------------------------------------------------------------------------


class MockObjectStorage:
    """In-memory object storage satisfying ``ObjectStorage`` protocol.

    Objects live in a dict keyed by path.  Any path containing one of the
    substrings in ``fail_put_on`` raises ``RuntimeError`` on ``put``.
    """

    def __init__(self, bucket: str = "ingest-ontrac-raw-v1") -> None:
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}
        self.fail_put_on: list[str] = []

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        if any(marker in path for marker in self.fail_put_on):
            raise RuntimeError(f"simulated write failure for {path}")
        self.objects[path] = data
        self.content_types[path] = content_type

    def get(self, path: str) -> bytes:
        if path not in self.objects:
            raise FileNotFoundError(path)
        return self.objects[path]

    def list(self, prefix: str, limit: int | None = None) -> list[StoredObject]:
        base = prefix.rstrip("/") + "/"
        children = sorted(
            (path[len(base):], len(data))
            for path, data in self.objects.items()
            if path.startswith(base) and "/" not in path[len(base):]
        )
        objects = [StoredObject(name=name, size=size) for name, size in children]
        return objects[:limit] if limit is not None else objects

    def delete(self, path: str) -> bool:
        return self.objects.pop(path, None) is not None


class MockRegionProvider:
    """Region provider returning a fixed list, or raising when ``error`` is set."""

    def __init__(self, regions: list[str] | None = None, error: Exception | None = None) -> None:
        self.regions = list(REGIONS if regions is None else regions)
        self.error = error
        self.calls = 0

    def authoritative_regions(self) -> list[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.regions)


@pytest.fixture()
def storage() -> MockObjectStorage:
    return MockObjectStorage()


@pytest.fixture()
def region_provider() -> MockRegionProvider:
    return MockRegionProvider()


@pytest.fixture()
def store():
    """In-memory SQLite store with no rules."""
    db = SQLiteIngestStore(":memory:")
    yield db
    db.close()


def seed_rules(db: SQLiteIngestStore, anchor: str = "2025-01-21", notes: str = "base") -> int:
    """Add an active rubric version with tNPS bands plus one settings snapshot."""
    version = db.add_rubric_version(
        scope="global",
        source_system="ontrac",
        fiscal_month_anchor=anchor,
        notes=notes,
        thresholds=[
            {"metric_name": "tnps_rate", "band": "exceed", "min_value": 90.0},
            {"metric_name": "tnps_rate", "band": "meet", "min_value": 80.0, "max_value": 90.0, "inclusive_max": False},
            {"metric_name": "tnps_rate", "band": "needs_improvement", "min_value": 70.0, "max_value": 80.0, "inclusive_max": False},
            {"metric_name": "tnps_rate", "band": "unacceptable", "max_value": 70.0, "inclusive_max": False},
            {"metric_name": "tnps_rate", "band": "no_data"},
        ],
    )
    return version.id


@pytest.fixture()
def seeded_store(store: SQLiteIngestStore) -> SQLiteIngestStore:
    """SQLite store with a rubric effective from 2025-01-21 and one settings row."""
    seed_rules(store)
    store.record_settings(
        "global",
        "ontrac",
        {"reportable_metric": "Total FTR/Contact Jobs"},
        updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    return store


# ---------------------------------------------------------------------------
# Session-scoped file generators
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def keystone_xlsx() -> bytes:
    """Two technicians, Keystone title, grand-total footer."""
    return make_workbook_bytes()


@pytest.fixture(scope="session")
def wrong_header_xlsx() -> bytes:
    """A workbook whose row 2 is not the Ontrac header."""
    return make_workbook_bytes(
        title="Beltway Tech KPI Report",
        headers=["Tech", "Name", "Jobs"],
        rows=[["T1", "A", 3]],
    )


@pytest.fixture(scope="session")
def ontrac_tmp_xlsx(tmp_path_factory) -> str:
    """Path to an Ontrac export on disk."""
    path = tmp_path_factory.mktemp("xlsx") / "Keystone.xlsx"
    path.write_bytes(make_workbook_bytes())
    return str(path)
