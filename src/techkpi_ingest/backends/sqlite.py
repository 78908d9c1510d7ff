"""SQLite backend for the IngestStore protocol.

Provides a concrete implementation backed by Python's built-in ``sqlite3``
module.  Suitable for local / single-node deployments and testing.

Writes are serialized with a lock and each mutating call runs in its own
transaction.  Uniqueness of ``batches.upload_set_id`` and
``batch_pins.batch_id`` is enforced by the schema.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from techkpi_ingest.models import (
    Batch,
    BatchPin,
    BatchStatus,
    RawRow,
    ReportSettings,
    RubricBand,
    RubricThreshold,
    RubricVersion,
)

logger = logging.getLogger("techkpi_ingest")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS batches (
    batch_id TEXT PRIMARY KEY,
    upload_set_id TEXT NOT NULL UNIQUE,
    source_system TEXT NOT NULL,
    fiscal_month_anchor TEXT NOT NULL,
    status TEXT NOT NULL,
    region TEXT,
    storage_bucket TEXT,
    storage_prefix TEXT,
    manifest_path TEXT,
    note TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS raw_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id TEXT NOT NULL,
    source_file TEXT NOT NULL,
    sheet_name TEXT NOT NULL,
    row_num INTEGER NOT NULL,
    tech_id TEXT NOT NULL,
    region TEXT,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_raw_rows_batch ON raw_rows (batch_id);
CREATE INDEX IF NOT EXISTS idx_raw_rows_region ON raw_rows (region);
CREATE TABLE IF NOT EXISTS rubric_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,
    source_system TEXT NOT NULL,
    fiscal_month_anchor TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    committed_at TEXT NOT NULL,
    committed_by TEXT,
    notes TEXT
);
CREATE TABLE IF NOT EXISTS rubric_thresholds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rubric_version_id INTEGER NOT NULL REFERENCES rubric_versions (id),
    metric_name TEXT NOT NULL,
    band TEXT NOT NULL,
    min_value REAL,
    max_value REAL,
    inclusive_min INTEGER NOT NULL DEFAULT 1,
    inclusive_max INTEGER NOT NULL DEFAULT 1,
    color_token TEXT,
    report_label TEXT,
    format TEXT
);
CREATE TABLE IF NOT EXISTS report_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,
    source_system TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    settings_json TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS batch_pins (
    batch_id TEXT PRIMARY KEY,
    scope TEXT NOT NULL,
    source_system TEXT NOT NULL,
    fiscal_month_anchor TEXT NOT NULL,
    rubric_version_id INTEGER NOT NULL,
    settings_pinned_at TEXT NOT NULL,
    pinned_at TEXT NOT NULL
);
"""

_BATCH_UPDATABLE = {
    "status",
    "region",
    "storage_bucket",
    "storage_prefix",
    "manifest_path",
    "note",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    """Render a timestamp as sortable ISO text, assuming UTC for naive values."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class SQLiteIngestStore:
    """SQLite-backed ingest store.

    Satisfies :class:`~techkpi_ingest.protocols.IngestStore` via structural
    subtyping (no inheritance required).

    Parameters
    ----------
    db_path:
        Filesystem path or ``":memory:"`` for an in-memory database.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise ConnectionError(
                f"Failed to open SQLite database at {db_path}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def upsert_batch(
        self,
        upload_set_id: str,
        source_system: str,
        fiscal_month_anchor: str,
        status: str,
    ) -> Batch:
        """Insert or update the batch keyed by ``upload_set_id``.

        An existing batch keeps its ``batch_id`` and ``created_at``; its
        source system, fiscal month, status and ``updated_at`` are replaced.
        """
        now = _ts(_utcnow())
        self._write(
            "INSERT INTO batches (batch_id, upload_set_id, source_system, "
            "fiscal_month_anchor, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (upload_set_id) DO UPDATE SET "
            "source_system = excluded.source_system, "
            "fiscal_month_anchor = excluded.fiscal_month_anchor, "
            "status = excluded.status, updated_at = excluded.updated_at",
            (
                str(uuid.uuid4()),
                upload_set_id,
                source_system,
                fiscal_month_anchor,
                BatchStatus(status).value,
                now,
                now,
            ),
            what=f"upsert batch for upload set '{upload_set_id}'",
        )
        batch = self.get_batch(upload_set_id)
        if batch is None:
            raise RuntimeError(f"Batch for upload set '{upload_set_id}' vanished after upsert")
        return batch

    def get_batch(self, upload_set_id: str) -> Batch | None:
        row = self._fetchone(
            "SELECT * FROM batches WHERE upload_set_id = ?", (upload_set_id,)
        )
        return _to_batch(row) if row else None

    def get_batch_by_id(self, batch_id: str) -> Batch | None:
        row = self._fetchone("SELECT * FROM batches WHERE batch_id = ?", (batch_id,))
        return _to_batch(row) if row else None

    def update_batch(self, batch_id: str, **fields: object) -> Batch:
        """Update the given columns of a batch.

        Raises
        ------
        ValueError
            If a field is not an updatable batch column.
        RuntimeError
            If the batch does not exist or the update fails.
        """
        unknown = set(fields) - _BATCH_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update batch fields: {sorted(unknown)}")

        values: dict[str, Any] = {}
        for key, value in fields.items():
            values[key] = value.value if isinstance(value, BatchStatus) else value
        values["updated_at"] = _ts(_utcnow())

        assignments = ", ".join(f"{key} = ?" for key in values)
        count = self._write(
            f"UPDATE batches SET {assignments} WHERE batch_id = ?",
            (*values.values(), batch_id),
            what=f"update batch '{batch_id}'",
        )
        if count == 0:
            raise RuntimeError(f"Batch '{batch_id}' not found")
        batch = self.get_batch_by_id(batch_id)
        assert batch is not None
        return batch

    def list_batches(
        self,
        fiscal_month_anchor: str,
        source_system: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[Batch]:
        sql = "SELECT * FROM batches WHERE fiscal_month_anchor = ?"
        params: list[Any] = [fiscal_month_anchor]
        if source_system is not None:
            sql += " AND source_system = ?"
            params.append(source_system)
        if statuses:
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(BatchStatus(s).value for s in statuses)
        sql += " ORDER BY created_at, batch_id"
        return [_to_batch(row) for row in self._fetchall(sql, params)]

    # ------------------------------------------------------------------
    # Raw rows
    # ------------------------------------------------------------------

    def insert_raw_rows(self, rows: list[RawRow]) -> int:
        """Insert rows in one transaction. Returns count inserted."""
        if not rows:
            return 0
        params = [
            (
                r.batch_id,
                r.source_file,
                r.sheet_name,
                r.row_num,
                r.tech_id,
                r.region,
                json.dumps(r.payload),
            )
            for r in rows
        ]
        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(
                        "INSERT INTO raw_rows (batch_id, source_file, sheet_name, "
                        "row_num, tech_id, region, payload) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        params,
                    )
            except sqlite3.Error as exc:
                raise RuntimeError(f"Failed to insert {len(rows)} raw rows: {exc}") from exc
        return len(rows)

    def select_raw_rows(
        self,
        batch_ids: list[str] | None = None,
        region: str | None = None,
    ) -> list[RawRow]:
        sql = "SELECT * FROM raw_rows WHERE 1 = 1"
        params: list[Any] = []
        if batch_ids is not None:
            if not batch_ids:
                return []
            sql += f" AND batch_id IN ({', '.join('?' for _ in batch_ids)})"
            params.extend(batch_ids)
        if region is not None:
            sql += " AND region = ?"
            params.append(region)
        sql += " ORDER BY id"
        return [_to_raw_row(row) for row in self._fetchall(sql, params)]

    def count_raw_rows(self, batch_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM raw_rows WHERE batch_id = ?", (batch_id,)
        )
        return int(row["n"]) if row else 0

    def delete_raw_rows(self, batch_id: str) -> int:
        return self._write(
            "DELETE FROM raw_rows WHERE batch_id = ?",
            (batch_id,),
            what=f"delete raw rows of batch '{batch_id}'",
        )

    def delete_superseded_rows(
        self,
        region: str,
        fiscal_month_anchor: str,
        source_system: str,
        keep_batch_id: str,
    ) -> int:
        """Delete rows for the region/month/source that belong to other batches."""
        return self._write(
            "DELETE FROM raw_rows WHERE region = ? AND batch_id != ? AND batch_id IN "
            "(SELECT batch_id FROM batches WHERE fiscal_month_anchor = ? "
            "AND source_system = ?)",
            (region, keep_batch_id, fiscal_month_anchor, source_system),
            what=f"delete superseded rows for {region}/{fiscal_month_anchor}",
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def list_rubric_versions(
        self,
        scope: str,
        source_system: str,
        as_of: str | None = None,
        active_only: bool = True,
    ) -> list[RubricVersion]:
        """Return rubric versions newest first.

        Ordered by ``fiscal_month_anchor`` descending, then ``committed_at``
        descending, then ``id`` descending.
        """
        sql = "SELECT * FROM rubric_versions WHERE scope = ? AND source_system = ?"
        params: list[Any] = [scope, source_system]
        if as_of is not None:
            sql += " AND fiscal_month_anchor <= ?"
            params.append(as_of)
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY fiscal_month_anchor DESC, committed_at DESC, id DESC"
        return [_to_rubric_version(row) for row in self._fetchall(sql, params)]

    def get_rubric_version(self, rubric_version_id: int) -> RubricVersion | None:
        row = self._fetchone(
            "SELECT * FROM rubric_versions WHERE id = ?", (rubric_version_id,)
        )
        return _to_rubric_version(row) if row else None

    def get_rubric_thresholds(self, rubric_version_id: int) -> list[RubricThreshold]:
        rows = self._fetchall(
            "SELECT * FROM rubric_thresholds WHERE rubric_version_id = ? "
            "ORDER BY metric_name, id",
            (rubric_version_id,),
        )
        return [_to_threshold(row) for row in rows]

    def latest_settings(self, scope: str, source_system: str) -> ReportSettings | None:
        row = self._fetchone(
            "SELECT * FROM report_settings WHERE scope = ? AND source_system = ? "
            "ORDER BY updated_at DESC, id DESC LIMIT 1",
            (scope, source_system),
        )
        return _to_settings(row) if row else None

    def get_settings_at(
        self, scope: str, source_system: str, updated_at: datetime
    ) -> ReportSettings | None:
        row = self._fetchone(
            "SELECT * FROM report_settings WHERE scope = ? AND source_system = ? "
            "AND updated_at = ? ORDER BY id DESC LIMIT 1",
            (scope, source_system, _ts(updated_at)),
        )
        return _to_settings(row) if row else None

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    def upsert_pin(self, pin: BatchPin) -> BatchPin:
        self._write(
            "INSERT INTO batch_pins (batch_id, scope, source_system, fiscal_month_anchor, "
            "rubric_version_id, settings_pinned_at, pinned_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (batch_id) DO UPDATE SET "
            "scope = excluded.scope, source_system = excluded.source_system, "
            "fiscal_month_anchor = excluded.fiscal_month_anchor, "
            "rubric_version_id = excluded.rubric_version_id, "
            "settings_pinned_at = excluded.settings_pinned_at, "
            "pinned_at = excluded.pinned_at",
            (
                pin.batch_id,
                pin.scope,
                pin.source_system,
                pin.fiscal_month_anchor,
                pin.rubric_version_id,
                _ts(pin.settings_pinned_at),
                _ts(pin.pinned_at),
            ),
            what=f"upsert pin for batch '{pin.batch_id}'",
        )
        return pin

    def get_pin(self, batch_id: str) -> BatchPin | None:
        row = self._fetchone("SELECT * FROM batch_pins WHERE batch_id = ?", (batch_id,))
        return BatchPin(**dict(row)) if row else None

    def delete_pin(self, batch_id: str) -> int:
        return self._write(
            "DELETE FROM batch_pins WHERE batch_id = ?",
            (batch_id,),
            what=f"delete pin of batch '{batch_id}'",
        )

    # ------------------------------------------------------------------
    # Seeding (rubric administration lives outside this package)
    # ------------------------------------------------------------------

    def add_rubric_version(
        self,
        scope: str,
        source_system: str,
        fiscal_month_anchor: str,
        thresholds: list[dict[str, Any]] | None = None,
        active: bool = True,
        committed_at: datetime | None = None,
        committed_by: str | None = None,
        notes: str | None = None,
    ) -> RubricVersion:
        """Insert a rubric version and its threshold bands in one transaction.

        Each threshold dict takes the :class:`RubricThreshold` fields except
        ``rubric_version_id``.
        """
        committed = committed_at or _utcnow()
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "INSERT INTO rubric_versions (scope, source_system, "
                        "fiscal_month_anchor, active, committed_at, committed_by, notes) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            scope,
                            source_system,
                            fiscal_month_anchor,
                            int(active),
                            _ts(committed),
                            committed_by,
                            notes,
                        ),
                    )
                    version_id = cursor.lastrowid
                    for fields in thresholds or []:
                        t = RubricThreshold(rubric_version_id=version_id, **fields)
                        self._conn.execute(
                            "INSERT INTO rubric_thresholds (rubric_version_id, metric_name, "
                            "band, min_value, max_value, inclusive_min, inclusive_max, "
                            "color_token, report_label, format) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                version_id,
                                t.metric_name,
                                t.band.value,
                                t.min_value,
                                t.max_value,
                                int(t.inclusive_min),
                                int(t.inclusive_max),
                                t.color_token,
                                t.report_label,
                                t.format,
                            ),
                        )
            except sqlite3.Error as exc:
                raise RuntimeError(f"Failed to add rubric version: {exc}") from exc

        version = self.get_rubric_version(version_id)  # type: ignore[arg-type]
        assert version is not None
        return version

    def record_settings(
        self,
        scope: str,
        source_system: str,
        values: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> ReportSettings:
        """Append a new settings snapshot. Existing snapshots are never rewritten."""
        stamp = updated_at or _utcnow()
        self._write(
            "INSERT INTO report_settings (scope, source_system, updated_at, settings_json) "
            "VALUES (?, ?, ?, ?)",
            (scope, source_system, _ts(stamp), json.dumps(values)),
            what="record settings",
        )
        return ReportSettings(
            scope=scope, source_system=source_system, updated_at=stamp, values=values
        )

    # ------------------------------------------------------------------
    # Resource management
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._conn.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _write(self, sql: str, params: tuple | list, what: str) -> int:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise RuntimeError(f"Failed to {what}: {exc}") from exc
        return cursor.rowcount

    def _fetchone(self, sql: str, params: tuple | list) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise RuntimeError(f"Query failed: {exc}") from exc

    def _fetchall(self, sql: str, params: tuple | list) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise RuntimeError(f"Query failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _to_batch(row: sqlite3.Row) -> Batch:
    return Batch(**dict(row))


def _to_raw_row(row: sqlite3.Row) -> RawRow:
    data = dict(row)
    data.pop("id", None)
    data["payload"] = json.loads(data["payload"])
    return RawRow(**data)


def _to_rubric_version(row: sqlite3.Row) -> RubricVersion:
    data = dict(row)
    data["active"] = bool(data["active"])
    return RubricVersion(**data)


def _to_threshold(row: sqlite3.Row) -> RubricThreshold:
    data = dict(row)
    data.pop("id", None)
    data["band"] = RubricBand(data["band"])
    data["inclusive_min"] = bool(data["inclusive_min"])
    data["inclusive_max"] = bool(data["inclusive_max"])
    return RubricThreshold(**data)


def _to_settings(row: sqlite3.Row) -> ReportSettings:
    return ReportSettings(
        scope=row["scope"],
        source_system=row["source_system"],
        updated_at=row["updated_at"],
        values=json.loads(row["settings_json"]),
    )
