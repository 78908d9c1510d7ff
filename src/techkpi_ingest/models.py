"""Pydantic data models, enumerations, and stage results for techkpi-ingest.

This module defines the persisted entities (upload sets, batches, raw rows,
rubric versions, settings and pins), the storage listing record, and the typed
result objects returned by every pipeline stage.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from techkpi_ingest.errors import IngestError


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BatchStatus(str, Enum):
    """Lifecycle state of a batch.

    Status moves forward only (uploading -> committing -> committed /
    committed_with_errors / failed); Undo is the one transition that resets a
    batch back to ``uploading``.
    """

    UPLOADING = "uploading"
    COMMITTING = "committing"
    COMMITTED = "committed"
    COMMITTED_WITH_ERRORS = "committed_with_errors"
    FAILED = "failed"


class GateOutcome(str, Enum):
    """Decision of the validation gate."""

    GREEN = "green"
    WARN = "warn"
    FAIL = "fail"


class StepState(str, Enum):
    """Display state of one pipeline step."""

    IDLE = "idle"
    RUNNING = "running"
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


class UndoScope(str, Enum):
    """What an undo removes.

    ``commit`` rewinds the database only; ``commit_artifacts`` also removes the
    JSONL and manifest objects written by the commit.  Upload artifacts are
    never removed.
    """

    COMMIT = "commit"
    COMMIT_ARTIFACTS = "commit_artifacts"


class RubricBand(str, Enum):
    """Performance band a metric value falls into."""

    EXCEED = "exceed"
    MEET = "meet"
    NEEDS_IMPROVEMENT = "needs_improvement"
    UNACCEPTABLE = "unacceptable"
    NO_DATA = "no_data"


class FileKind(str, Enum):
    """File type detected from the object name."""

    XLSX = "xlsx"
    CSV = "csv"
    UNSUPPORTED = "unsupported"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StoredObject(BaseModel):
    """One entry of an object-storage listing (direct child of a prefix)."""

    name: str
    size: int = 0


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class UploadSet(BaseModel):
    """Files submitted together in one upload call."""

    upload_set_id: str
    source_system: str
    fiscal_ref_date: str
    fiscal_month_anchor: str
    bucket: str
    prefix: str


class Batch(BaseModel):
    """The committed-or-committing unit of ingested data, one per upload set."""

    batch_id: str
    upload_set_id: str
    source_system: str
    fiscal_month_anchor: str
    status: BatchStatus = BatchStatus.UPLOADING
    region: str | None = None
    storage_bucket: str | None = None
    storage_prefix: str | None = None
    manifest_path: str | None = None
    note: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RawRow(BaseModel):
    """One extracted data row, stored verbatim as an ordered payload."""

    batch_id: str
    source_file: str
    sheet_name: str
    row_num: int
    tech_id: str
    region: str | None = None
    payload: dict[str, str]


class RubricVersion(BaseModel):
    """A set of scoring thresholds effective from a fiscal month onward."""

    id: int
    scope: str
    source_system: str
    fiscal_month_anchor: str
    active: bool = True
    committed_at: datetime
    committed_by: str | None = None
    notes: str | None = None


class RubricThreshold(BaseModel):
    """One band of one metric within a rubric version."""

    rubric_version_id: int
    metric_name: str
    band: RubricBand
    min_value: float | None = None
    max_value: float | None = None
    inclusive_min: bool = True
    inclusive_max: bool = True
    color_token: str | None = None
    report_label: str | None = None
    format: str | None = None


class EffectiveRubric(BaseModel):
    """A rubric version together with its threshold bands."""

    version: RubricVersion
    thresholds: list[RubricThreshold] = Field(default_factory=list)


class ReportSettings(BaseModel):
    """An append-only snapshot of report settings."""

    scope: str
    source_system: str
    updated_at: datetime
    values: dict[str, Any] = Field(default_factory=dict)


class BatchPin(BaseModel):
    """Durable binding of a batch to the rubric and settings in force at commit."""

    batch_id: str
    scope: str
    source_system: str
    fiscal_month_anchor: str
    rubric_version_id: int
    settings_pinned_at: datetime
    pinned_at: datetime


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class UploadFile(BaseModel):
    """A file handed to the upload stage."""

    filename: str
    data: bytes
    content_type: str | None = None


class UploadFileResult(BaseModel):
    """Outcome of storing one uploaded file."""

    ok: bool
    original_filename: str
    content_type: str | None = None
    bytes: int = 0
    storage_path: str | None = None
    error: str | None = None


class UploadCounts(BaseModel):
    received: int = 0
    uploaded_ok: int = 0
    failed: int = 0


class UploadResult(BaseModel):
    """Typed output of the upload stage."""

    upload_set: UploadSet
    files: list[UploadFileResult] = Field(default_factory=list)
    counts: UploadCounts = Field(default_factory=UploadCounts)

    @property
    def upload_set_id(self) -> str:
        return self.upload_set.upload_set_id

    @property
    def fiscal_month_anchor(self) -> str:
        return self.upload_set.fiscal_month_anchor


class FileDiagnostics(BaseModel):
    """Per-file diagnostics produced by the parse stage."""

    name: str
    path: str
    kind: FileKind
    ok: bool = False
    sheet_count: int = 0
    sheet_names: list[str] = Field(default_factory=list)
    matched_sheet: str | None = None
    header_match: bool = False
    expected_fingerprint: str | None = None
    found_fingerprint: str | None = None
    row1_text: str | None = None
    headers: list[str] = Field(default_factory=list)
    data_rows_estimate: int = 0
    detected_region: str | None = None
    error: IngestError | None = None


class ParseCounts(BaseModel):
    listed: int = 0
    parsed_ok: int = 0
    failed: int = 0


class ParseResult(BaseModel):
    """Typed output of the parse stage."""

    upload_set_id: str
    fiscal_month_anchor: str
    prefix: str
    files: list[FileDiagnostics] = Field(default_factory=list)
    counts: ParseCounts = Field(default_factory=ParseCounts)


class GateFileCheck(BaseModel):
    """Gate verdict for one file."""

    name: str
    region: str | None = None
    region_ok: bool = False
    header_ok: bool = False


class GateResult(BaseModel):
    """Typed output of the validation gate."""

    outcome: GateOutcome
    files: list[GateFileCheck] = Field(default_factory=list)
    header_failures: list[str] = Field(default_factory=list)
    region_mismatches: list[str] = Field(default_factory=list)
    errors: list[IngestError] = Field(default_factory=list)

    @property
    def green(self) -> bool:
        return self.outcome == GateOutcome.GREEN


class CommitFileResult(BaseModel):
    """Outcome of parsing and extracting one file at commit time."""

    name: str
    ok: bool
    sheet_name: str | None = None
    rows: int = 0
    region: str | None = None
    artifact_path: str | None = None
    error: str | None = None
    warning: str | None = None
    expected_fingerprint: str | None = None
    found_fingerprint: str | None = None


class ManifestCounts(BaseModel):
    listed: int = 0
    committed_ok: int = 0
    failed: int = 0
    total_rows: int = 0


class CommitManifest(BaseModel):
    """The storage-resident audit record written by every commit."""

    ok: bool
    source_system: str
    upload_set_id: str
    batch_id: str
    fiscal_month_anchor: str
    source_prefix: str
    commit_prefix: str
    counts: ManifestCounts
    files: list[CommitFileResult] = Field(default_factory=list)
    created_at: datetime


class CommitResult(BaseModel):
    """Typed output of the commit stage."""

    ok: bool
    batch_id: str
    upload_set_id: str
    status: BatchStatus
    rows: int = 0
    failed: int = 0
    commit_prefix: str
    manifest: str | None = None
    files: list[CommitFileResult] = Field(default_factory=list)
    housekeeping_deleted: int = 0
    pin: BatchPin | None = None


class UndoResult(BaseModel):
    """Typed output of the undo stage."""

    batch_id: str
    upload_set_id: str
    scope: UndoScope
    deleted_raw_rows: int = 0
    deleted_pins: int = 0
    removed_storage_objects: int = 0
    commit_prefix: str


class PipelineRun(BaseModel):
    """State of one end-to-end pipeline run."""

    source_system: str
    steps: dict[str, StepState] = Field(
        default_factory=lambda: {
            "upload": StepState.IDLE,
            "parse": StepState.IDLE,
            "validate": StepState.IDLE,
            "commit": StepState.IDLE,
        }
    )
    regions: list[str] = Field(default_factory=list)
    upload: UploadResult | None = None
    parse: ParseResult | None = None
    gate: GateResult | None = None
    commit: CommitResult | None = None
    errors: list[IngestError] = Field(default_factory=list)
