"""Parse stage: read-only preview of an upload set.

Lists every object under the upload prefix and reports, per file, which
worksheet matched the expected header row, both fingerprints, the row-1
title, an estimated data-row count and the region named in the title.  Files
are diagnosed independently; one unreadable file never stops the others.
"""

from __future__ import annotations

import logging

from techkpi_ingest import layout
from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestError, IngestException
from techkpi_ingest.extractor import extract_workbook, preview_csv
from techkpi_ingest.fingerprint import header_fingerprint
from techkpi_ingest.fiscal import require_anchor
from techkpi_ingest.models import FileDiagnostics, FileKind, ParseCounts, ParseResult
from techkpi_ingest.protocols import ObjectStorage
from techkpi_ingest.regions import RegionIndex, detect_region

logger = logging.getLogger("techkpi_ingest")

STAGE = "parse"


def file_kind(name: str) -> FileKind:
    ext = layout.extension(name)
    if ext == ".xlsx":
        return FileKind.XLSX
    if ext == ".csv":
        return FileKind.CSV
    return FileKind.UNSUPPORTED


class ParseStage:
    """Diagnoses the files of an upload set without writing anything.

    Parameters
    ----------
    storage:
        Object storage holding the uploads.
    config:
        Pipeline configuration. Uses defaults when *None*.
    """

    def __init__(self, storage: ObjectStorage, config: IngestConfig | None = None) -> None:
        self._storage = storage
        self._config = config or IngestConfig()

    def parse(
        self,
        upload_set_id: str,
        fiscal_month_anchor: str,
        source_system: str | None = None,
        regions: list[str] | None = None,
    ) -> ParseResult:
        """Return per-file diagnostics for an upload set.

        *regions* is the authoritative region list; without it no region is
        detected.

        Raises
        ------
        IngestException
            ``E_INPUT_MISSING_FIELD`` / ``E_INPUT_INVALID_DATE`` for bad input,
            ``E_STORAGE_LIST`` when the upload prefix cannot be listed.
        """
        if not upload_set_id or not upload_set_id.strip():
            raise IngestException(
                code=ErrorCode.E_INPUT_MISSING_FIELD,
                message="upload_set_id is required",
                stage=STAGE,
            )
        anchor = require_anchor(fiscal_month_anchor, stage=STAGE)
        source = source_system or self._config.source_system
        prefix = layout.upload_prefix(source, anchor, upload_set_id.strip())

        try:
            objects = self._storage.list(prefix, limit=self._config.storage_list_limit)
        except (RuntimeError, OSError) as exc:
            raise IngestException(
                code=ErrorCode.E_STORAGE_LIST,
                message=f"Failed to list {prefix}: {exc}",
                stage=STAGE,
            ) from exc

        index = RegionIndex.build(regions)
        files = [self._diagnose(obj.name, layout.join(prefix, obj.name), index) for obj in objects]
        parsed_ok = sum(1 for f in files if f.ok)
        counts = ParseCounts(listed=len(files), parsed_ok=parsed_ok, failed=len(files) - parsed_ok)

        logger.info(
            "Parsed upload set %s: %d listed, %d ok, %d failed",
            upload_set_id,
            counts.listed,
            counts.parsed_ok,
            counts.failed,
        )
        return ParseResult(
            upload_set_id=upload_set_id,
            fiscal_month_anchor=anchor,
            prefix=prefix,
            files=files,
            counts=counts,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _diagnose(self, name: str, path: str, index: RegionIndex | None) -> FileDiagnostics:
        expected = header_fingerprint(self._config.expected_headers)
        diag = FileDiagnostics(
            name=name,
            path=path,
            kind=file_kind(name),
            expected_fingerprint=expected,
        )

        if diag.kind == FileKind.UNSUPPORTED:
            diag.error = self._error(
                ErrorCode.E_FILE_UNSUPPORTED_TYPE, f"Unsupported file type: {name}", name
            )
            return diag

        try:
            data = self._storage.get(path)
        except (FileNotFoundError, RuntimeError, OSError) as exc:
            diag.error = self._error(
                ErrorCode.E_FILE_DOWNLOAD_FAILED, f"Failed to download {name}: {exc}", name
            )
            return diag

        if diag.kind == FileKind.XLSX:
            self._diagnose_xlsx(diag, data, index)
        else:
            self._diagnose_csv(diag, data, index)

        if diag.error is None and not diag.header_match:
            diag.error = self._error(
                ErrorCode.E_FILE_HEADER_MISMATCH, "header fingerprint mismatch", name
            )
        diag.ok = diag.error is None
        return diag

    def _diagnose_xlsx(
        self, diag: FileDiagnostics, data: bytes, index: RegionIndex | None
    ) -> None:
        try:
            match, rows = extract_workbook(data, self._config, index)
        except Exception as exc:
            logger.warning("Unreadable workbook %s: %s", diag.name, exc)
            diag.error = self._error(
                ErrorCode.E_FILE_UNREADABLE, f"Unreadable workbook: {exc}", diag.name
            )
            return

        diag.sheet_count = len(match.sheet_names)
        diag.sheet_names = match.sheet_names
        diag.matched_sheet = match.matched_sheet
        diag.header_match = match.matched
        diag.found_fingerprint = match.found_fingerprint
        diag.row1_text = match.row1_text
        diag.headers = match.headers
        diag.data_rows_estimate = len(rows)
        diag.detected_region = detect_region(match.row1_text, index)

    def _diagnose_csv(
        self, diag: FileDiagnostics, data: bytes, index: RegionIndex | None
    ) -> None:
        preview = preview_csv(data, self._config)
        diag.sheet_count = 1
        diag.sheet_names = [diag.name]
        diag.found_fingerprint = preview.found_fingerprint
        diag.header_match = preview.found_fingerprint == diag.expected_fingerprint
        diag.matched_sheet = diag.name if diag.header_match else None
        diag.row1_text = preview.row1_text
        diag.headers = preview.headers
        diag.data_rows_estimate = preview.data_rows_estimate
        diag.detected_region = detect_region(preview.row1_text, index)

    @staticmethod
    def _error(code: ErrorCode, message: str, name: str) -> IngestError:
        return IngestError(code=code, message=message, stage=STAGE, file_name=name)
