"""Undo stage: rewind a committed upload set to its pre-commit state.

Deletes the batch's rows and pin and resets the batch to ``uploading``.  The
batch row and the uploaded files stay, so the upload set can be committed
again.  Scope ``commit_artifacts`` additionally removes the JSONL files and
manifest the commit wrote.
"""

from __future__ import annotations

import logging

from techkpi_ingest import layout
from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestException
from techkpi_ingest.fiscal import require_anchor
from techkpi_ingest.models import BatchStatus, UndoResult, UndoScope
from techkpi_ingest.protocols import IngestStore, ObjectStorage

logger = logging.getLogger("techkpi_ingest")

STAGE = "undo"


class UndoStage:
    """Reverses a commit.

    Parameters
    ----------
    storage:
        Object storage holding the commit artifacts.
    store:
        Relational store for batches, rows and pins.
    config:
        Pipeline configuration. Uses defaults when *None*.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        store: IngestStore,
        config: IngestConfig | None = None,
    ) -> None:
        self._storage = storage
        self._store = store
        self._config = config or IngestConfig()

    def undo(
        self,
        upload_set_id: str,
        fiscal_month_anchor: str,
        scope: str = UndoScope.COMMIT.value,
    ) -> UndoResult:
        """Undo the commit of an upload set.

        Undoing twice is harmless: the second call reports zero counts.

        Raises
        ------
        IngestException
            ``E_INPUT_INVALID_SCOPE`` for an unknown scope,
            ``E_BATCH_NOT_FOUND`` when the upload set was never committed,
            ``E_INPUT_INVALID_DATE`` when the anchor is not a day-21 date or
            is not the month the batch is recorded under, and
            ``E_DB_DELETE`` / ``E_DB_UPDATE`` on store failures.
        """
        try:
            undo_scope = UndoScope(scope)
        except ValueError as exc:
            raise IngestException(
                code=ErrorCode.E_INPUT_INVALID_SCOPE,
                message=f"Unknown undo scope {scope!r}",
                stage=STAGE,
            ) from exc
        if not upload_set_id or not upload_set_id.strip():
            raise IngestException(
                code=ErrorCode.E_INPUT_MISSING_FIELD,
                message="upload_set_id is required",
                stage=STAGE,
            )
        upload_set_id = upload_set_id.strip()
        anchor = require_anchor(fiscal_month_anchor, stage=STAGE)

        batch = self._store.get_batch(upload_set_id)
        if batch is None:
            raise IngestException(
                code=ErrorCode.E_BATCH_NOT_FOUND,
                message=f"No batch found for upload set {upload_set_id}",
                stage=STAGE,
            )

        if batch.fiscal_month_anchor != anchor:
            raise IngestException(
                code=ErrorCode.E_INPUT_INVALID_DATE,
                message=(
                    f"Upload set {upload_set_id} is committed under "
                    f"{batch.fiscal_month_anchor}, not {anchor}"
                ),
                stage=STAGE,
            )

        commit_prefix = layout.commit_prefix(
            batch.source_system, batch.fiscal_month_anchor, upload_set_id
        )

        try:
            deleted_rows = self._store.delete_raw_rows(batch.batch_id)
            deleted_pins = self._store.delete_pin(batch.batch_id)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_DB_DELETE,
                message=f"Failed to undo batch {batch.batch_id}: {exc}",
                stage=STAGE,
            ) from exc

        fields: dict[str, object] = {
            "status": BatchStatus.UPLOADING,
            "note": f"undo ({undo_scope.value})",
        }
        if undo_scope == UndoScope.COMMIT_ARTIFACTS:
            fields["manifest_path"] = None
        try:
            self._store.update_batch(batch.batch_id, **fields)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_DB_UPDATE,
                message=f"Failed to reset batch {batch.batch_id}: {exc}",
                stage=STAGE,
            ) from exc

        removed = 0
        if undo_scope == UndoScope.COMMIT_ARTIFACTS:
            removed = self._remove_commit_artifacts(commit_prefix)

        logger.info(
            "Undid batch %s (%s): %d rows, %d pin(s), %d storage objects removed",
            batch.batch_id,
            undo_scope.value,
            deleted_rows,
            deleted_pins,
            removed,
        )
        return UndoResult(
            batch_id=batch.batch_id,
            upload_set_id=upload_set_id,
            scope=undo_scope,
            deleted_raw_rows=deleted_rows,
            deleted_pins=deleted_pins,
            removed_storage_objects=removed,
            commit_prefix=commit_prefix,
        )

    def _remove_commit_artifacts(self, commit_prefix: str) -> int:
        try:
            objects = self._storage.list(commit_prefix)
        except (RuntimeError, OSError) as exc:
            raise IngestException(
                code=ErrorCode.E_STORAGE_LIST,
                message=f"Failed to list {commit_prefix}: {exc}",
                stage=STAGE,
            ) from exc

        removed = 0
        for obj in objects:
            path = layout.join(commit_prefix, obj.name)
            try:
                if self._storage.delete(path):
                    removed += 1
            except (RuntimeError, OSError) as exc:
                logger.warning("Failed to remove commit artifact %s: %s", path, exc)
        return removed
