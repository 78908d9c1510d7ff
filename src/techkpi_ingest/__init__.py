"""techkpi-ingest -- field-technician KPI spreadsheet ingestion.

Public API exports for configuration, errors, models, backend protocols, the
pipeline stages, the ``IngestPipeline`` orchestrator and the read-only
``ScorecardReader``.
"""

from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestError, IngestException
from techkpi_ingest.fingerprint import header_fingerprint, normalize_header
from techkpi_ingest.fiscal import fiscal_month_anchor
from techkpi_ingest.models import (
    Batch,
    BatchPin,
    BatchStatus,
    CommitManifest,
    CommitResult,
    EffectiveRubric,
    FileDiagnostics,
    GateOutcome,
    GateResult,
    ParseResult,
    PipelineRun,
    RawRow,
    ReportSettings,
    RubricBand,
    RubricThreshold,
    RubricVersion,
    StepState,
    StoredObject,
    UndoResult,
    UndoScope,
    UploadFile,
    UploadResult,
    UploadSet,
)
from techkpi_ingest.pipeline import IngestPipeline, create_default_pipeline
from techkpi_ingest.protocols import IngestStore, ObjectStorage, RegionProvider
from techkpi_ingest.regions import RegionIndex, detect_region, normalize_for_match
from techkpi_ingest.reporting import ScorecardReader, to_number
from techkpi_ingest.rules import effective_rubric, effective_settings, pinned_rubric, pinned_settings
from techkpi_ingest.stages import CommitStage, ParseStage, UndoStage, UploadStage, evaluate_gate

__all__ = [
    # Config
    "IngestConfig",
    # Errors
    "ErrorCode",
    "IngestError",
    "IngestException",
    # Enums
    "BatchStatus",
    "GateOutcome",
    "RubricBand",
    "StepState",
    "UndoScope",
    # Entities
    "Batch",
    "BatchPin",
    "EffectiveRubric",
    "RawRow",
    "ReportSettings",
    "RubricThreshold",
    "RubricVersion",
    "StoredObject",
    "UploadSet",
    # Stage results
    "CommitManifest",
    "CommitResult",
    "FileDiagnostics",
    "GateResult",
    "ParseResult",
    "PipelineRun",
    "UndoResult",
    "UploadFile",
    "UploadResult",
    # Protocols
    "IngestStore",
    "ObjectStorage",
    "RegionProvider",
    # Matching
    "RegionIndex",
    "detect_region",
    "fiscal_month_anchor",
    "header_fingerprint",
    "normalize_for_match",
    "normalize_header",
    # Rules
    "effective_rubric",
    "effective_settings",
    "pinned_rubric",
    "pinned_settings",
    # Stages
    "CommitStage",
    "ParseStage",
    "UndoStage",
    "UploadStage",
    "evaluate_gate",
    # Orchestration and reporting
    "IngestPipeline",
    "ScorecardReader",
    "create_default_pipeline",
    "to_number",
]
