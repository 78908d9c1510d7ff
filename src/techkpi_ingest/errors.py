"""Normalized error codes and structured error model for the techkpi-ingest pipeline.

``ErrorCode`` lists every error and warning a stage can report.
``IngestError`` is the Pydantic data structure carried in per-file results;
``IngestException`` wraps it so that stages can ``raise`` it for failures that
abort the whole operation (input, configuration, transactional).
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Normalized error codes for the techkpi-ingest pipeline.

    Codes prefixed with ``E_`` are errors; codes prefixed with ``W_`` are
    non-fatal warnings.  Values equal their names so they are stable strings
    suitable for logs and operator screens.
    """

    # Configuration errors
    E_CONFIG_MISSING = "E_CONFIG_MISSING"

    # Input validation errors
    E_INPUT_MISSING_FIELD = "E_INPUT_MISSING_FIELD"
    E_INPUT_INVALID_DATE = "E_INPUT_INVALID_DATE"
    E_INPUT_NO_FILES = "E_INPUT_NO_FILES"
    E_INPUT_INVALID_SCOPE = "E_INPUT_INVALID_SCOPE"

    # Structural file errors (per file)
    E_FILE_UNSUPPORTED_TYPE = "E_FILE_UNSUPPORTED_TYPE"
    E_FILE_HEADER_MISMATCH = "E_FILE_HEADER_MISMATCH"
    E_FILE_UNREADABLE = "E_FILE_UNREADABLE"
    E_FILE_DOWNLOAD_FAILED = "E_FILE_DOWNLOAD_FAILED"

    # Gate / ambiguity errors
    E_REGIONS_UNAVAILABLE = "E_REGIONS_UNAVAILABLE"
    E_GATE_HEADER_MISMATCH = "E_GATE_HEADER_MISMATCH"
    E_GATE_NOT_GREEN = "E_GATE_NOT_GREEN"

    # Storage errors
    E_STORAGE_LIST = "E_STORAGE_LIST"
    E_STORAGE_EMPTY = "E_STORAGE_EMPTY"

    # Transactional errors
    E_BATCH_RESOLVE = "E_BATCH_RESOLVE"
    E_BATCH_NOT_FOUND = "E_BATCH_NOT_FOUND"
    E_DB_INSERT = "E_DB_INSERT"
    E_DB_DELETE = "E_DB_DELETE"
    E_DB_UPDATE = "E_DB_UPDATE"
    E_PIN_RUBRIC_MISSING = "E_PIN_RUBRIC_MISSING"
    E_PIN_SETTINGS_MISSING = "E_PIN_SETTINGS_MISSING"
    E_PIN_WRITE = "E_PIN_WRITE"

    # Warnings (non-fatal)
    W_REGION_NOT_FOUND = "W_REGION_NOT_FOUND"
    W_ARTIFACT_WRITE = "W_ARTIFACT_WRITE"
    W_UPLOAD_FILE_FAILED = "W_UPLOAD_FILE_FAILED"
    W_ROWS_WITHOUT_REGION = "W_ROWS_WITHOUT_REGION"


class IngestError(BaseModel):
    """Structured error with code, message, and context.

    Each error carries an ``ErrorCode``, a human-readable message, and
    optional context about which stage and which file produced it.
    """

    code: ErrorCode
    message: str
    stage: str | None = None
    file_name: str | None = None
    recoverable: bool = False


class IngestException(Exception):
    """Raisable exception wrapping an :class:`IngestError` data model.

    The structured error is available as ``.error``; the convenience
    properties delegate to it.
    """

    def __init__(self, **kwargs: object) -> None:
        self.error = IngestError(**kwargs)  # type: ignore[arg-type]
        super().__init__(self.error.message)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def stage(self) -> str | None:
        return self.error.stage

    @property
    def recoverable(self) -> bool:
        return self.error.recoverable
