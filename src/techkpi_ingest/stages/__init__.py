"""Pipeline stages: upload, parse, validation gate, commit and undo."""

from techkpi_ingest.stages.commit import CommitStage
from techkpi_ingest.stages.parse import ParseStage
from techkpi_ingest.stages.undo import UndoStage
from techkpi_ingest.stages.upload import UploadStage
from techkpi_ingest.stages.validation import evaluate_gate

__all__ = [
    "CommitStage",
    "ParseStage",
    "UndoStage",
    "UploadStage",
    "evaluate_gate",
]
