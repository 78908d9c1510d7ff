"""Upload stage: store a set of spreadsheet files under a fresh upload set.

Only ``.csv`` and ``.xlsx`` files are accepted; anything else is dropped
silently.  Each accepted file is written to
``{source_system}/{anchor}/{upload_set_id}/{filename}``.  A failed write is
reported on that file and does not fail the call.  This stage never touches
the relational store.
"""

from __future__ import annotations

import logging
import uuid

from techkpi_ingest import layout
from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestException
from techkpi_ingest.fiscal import fiscal_month_anchor, parse_iso_date, today_utc
from techkpi_ingest.models import (
    UploadCounts,
    UploadFile,
    UploadFileResult,
    UploadResult,
    UploadSet,
)
from techkpi_ingest.protocols import ObjectStorage

logger = logging.getLogger("techkpi_ingest")

STAGE = "upload"


class UploadStage:
    """Writes uploaded files to object storage.

    Parameters
    ----------
    storage:
        Object storage for the raw uploads.
    config:
        Pipeline configuration. Uses defaults when *None*.
    """

    def __init__(self, storage: ObjectStorage, config: IngestConfig | None = None) -> None:
        self._storage = storage
        self._config = config or IngestConfig()

    def upload(
        self,
        files: list[UploadFile],
        source_system: str | None = None,
        fiscal_ref_date: str | None = None,
    ) -> UploadResult:
        """Store *files* under a new upload set.

        Raises
        ------
        IngestException
            ``E_INPUT_MISSING_FIELD`` for a blank source system,
            ``E_INPUT_INVALID_DATE`` for a malformed reference date and
            ``E_INPUT_NO_FILES`` when no csv/xlsx file was supplied.  All are
            raised before anything is written.
        """
        source = (source_system if source_system is not None else self._config.source_system)
        source = source.strip()
        if not source:
            raise IngestException(
                code=ErrorCode.E_INPUT_MISSING_FIELD,
                message="source_system is required",
                stage=STAGE,
            )

        if fiscal_ref_date and fiscal_ref_date.strip():
            ref_date = parse_iso_date(fiscal_ref_date, stage=STAGE)
        else:
            ref_date = today_utc()
        anchor = fiscal_month_anchor(ref_date)

        accepted = [
            f
            for f in files
            if layout.extension(f.filename) in self._config.allowed_extensions
        ]
        if not accepted:
            raise IngestException(
                code=ErrorCode.E_INPUT_NO_FILES,
                message="No .csv or .xlsx files were supplied",
                stage=STAGE,
            )

        upload_set_id = str(uuid.uuid4())
        prefix = layout.upload_prefix(source, anchor, upload_set_id)
        upload_set = UploadSet(
            upload_set_id=upload_set_id,
            source_system=source,
            fiscal_ref_date=ref_date.isoformat(),
            fiscal_month_anchor=anchor,
            bucket=self._storage.bucket,
            prefix=prefix,
        )

        results = [self._store_one(f, prefix) for f in accepted]
        ok = sum(1 for r in results if r.ok)
        counts = UploadCounts(received=len(accepted), uploaded_ok=ok, failed=len(results) - ok)

        logger.info(
            "Upload set %s: %d/%d files stored under %s",
            upload_set_id,
            ok,
            len(accepted),
            prefix,
        )
        return UploadResult(upload_set=upload_set, files=results, counts=counts)

    def _store_one(self, upload: UploadFile, prefix: str) -> UploadFileResult:
        name = layout.basename(upload.filename)
        content_type = upload.content_type or layout.content_type_for(name)
        result = UploadFileResult(
            ok=False,
            original_filename=name,
            content_type=content_type,
            bytes=len(upload.data),
        )
        if not name:
            result.error = "Empty file name"
            return result

        path = layout.join(prefix, name)
        try:
            self._storage.put(path, upload.data, content_type)
        except (RuntimeError, OSError, ValueError) as exc:
            logger.warning(
                "%s: failed to store %s: %s", ErrorCode.W_UPLOAD_FILE_FAILED.value, name, exc
            )
            result.error = str(exc)
            return result

        result.ok = True
        result.storage_path = path
        return result
