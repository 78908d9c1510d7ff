"""Commit stage: the transactional core of the pipeline.

Commits one upload set into the row store and binds it to the rubric and
settings in force for its fiscal month.  Steps run strictly in order and a
failing step aborts everything after it:

1. Resolve the batch (upsert on ``upload_set_id``, status ``committing``).
2. Resolve the rubric and settings to pin.  Nothing is written if either is
   missing.
3. List the uploaded files.
4. Re-check the header fingerprint of every ``.xlsx`` and extract its rows;
   write a JSONL artifact per file (best effort).
5. Delete rows left behind by an earlier attempt for this batch.
6. Insert rows in fixed-size chunks.
7. Write the manifest (best effort).
8. Delete rows of other batches for the same region and month.
9. Upsert the batch pin.
10. Mark the batch ``committed`` / ``committed_with_errors``, or ``failed``
    when files failed and no rows were inserted.

Any exception before step 10 leaves the batch ``committing``.  Re-running the
commit for the same upload set is safe: it reuses the batch and starts from a
clean slate.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from techkpi_ingest import layout
from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestException
from techkpi_ingest.extractor import ExtractedRow, extract_workbook
from techkpi_ingest.fingerprint import header_fingerprint
from techkpi_ingest.fiscal import require_anchor
from techkpi_ingest.models import (
    Batch,
    BatchPin,
    BatchStatus,
    CommitFileResult,
    CommitManifest,
    CommitResult,
    ManifestCounts,
    RawRow,
)
from techkpi_ingest.protocols import IngestStore, ObjectStorage, RegionProvider
from techkpi_ingest.regions import RegionIndex
from techkpi_ingest.rules import resolve_rules

logger = logging.getLogger("techkpi_ingest")

STAGE = "commit"


def chunked(items: list, size: int) -> list[list]:
    """Split *items* into consecutive chunks of at most *size*."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class CommitStage:
    """Commits an upload set into the ingest store.

    Parameters
    ----------
    storage:
        Object storage holding the uploads; commit artifacts are written here.
    store:
        Relational store for batches, rows, rules and pins.
    config:
        Pipeline configuration. Uses defaults when *None*.
    region_provider:
        Authoritative region source, consulted only when the configured
        commit allowlist is empty.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        store: IngestStore,
        config: IngestConfig | None = None,
        region_provider: RegionProvider | None = None,
    ) -> None:
        self._storage = storage
        self._store = store
        self._config = config or IngestConfig()
        self._region_provider = region_provider

    def commit(
        self,
        upload_set_id: str,
        fiscal_month_anchor: str,
        source_system: str | None = None,
        region: str | None = None,
    ) -> CommitResult:
        """Commit the files of an upload set.

        *region*, when given, is recorded as the batch's nominal region and
        scopes housekeeping to that region alone.  Committing without it
        clears a nominal region left by an earlier call.  An existing batch
        is moved to *fiscal_month_anchor* and *source_system*.

        Raises
        ------
        IngestException
            For input errors, missing rules, an empty upload prefix and any
            store failure.  The batch is left ``committing`` in every case
            after step 1.
        """
        # ----------------------------------------------------------
        # Step 0: Validate input
        # ----------------------------------------------------------
        if not upload_set_id or not upload_set_id.strip():
            raise IngestException(
                code=ErrorCode.E_INPUT_MISSING_FIELD,
                message="upload_set_id is required",
                stage=STAGE,
            )
        upload_set_id = upload_set_id.strip()
        anchor = require_anchor(fiscal_month_anchor, stage=STAGE)
        source = source_system or self._config.source_system
        source_prefix = layout.upload_prefix(source, anchor, upload_set_id)
        commit_prefix = layout.commit_prefix(source, anchor, upload_set_id)

        # ----------------------------------------------------------
        # Step 1: Batch identity
        # ----------------------------------------------------------
        batch = self._resolve_batch(upload_set_id, source, anchor, region)
        batch_id = batch.batch_id
        logger.info("Committing upload set %s as batch %s", upload_set_id, batch_id)

        # ----------------------------------------------------------
        # Step 2: Resolve rules to pin
        # ----------------------------------------------------------
        rubric, settings = resolve_rules(
            self._store, self._config.scope, source, anchor, stage=STAGE
        )

        # ----------------------------------------------------------
        # Step 3: File listing
        # ----------------------------------------------------------
        try:
            objects = self._storage.list(source_prefix, limit=self._config.storage_list_limit)
        except (RuntimeError, OSError) as exc:
            raise IngestException(
                code=ErrorCode.E_STORAGE_LIST,
                message=f"Failed to list {source_prefix}: {exc}",
                stage=STAGE,
            ) from exc
        if not objects:
            raise IngestException(
                code=ErrorCode.E_STORAGE_EMPTY,
                message=f"No uploaded files under {source_prefix}",
                stage=STAGE,
            )

        # ----------------------------------------------------------
        # Step 4: Per-file parse and extract
        # ----------------------------------------------------------
        index = self._commit_region_index()
        rows: list[RawRow] = []
        files: list[CommitFileResult] = []
        for obj in objects:
            result, file_rows = self._commit_file(
                obj.name, source_prefix, commit_prefix, batch_id, index
            )
            files.append(result)
            rows.extend(file_rows)

        failed = sum(1 for f in files if not f.ok)
        committed_ok = len(files) - failed
        for f in files:
            if f.warning:
                logger.warning("%s: %s", ErrorCode.W_ARTIFACT_WRITE.value, f.warning)

        # ----------------------------------------------------------
        # Step 5: Clean slate for re-entry
        # ----------------------------------------------------------
        try:
            cleared = self._store.delete_raw_rows(batch_id)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_DB_DELETE,
                message=f"Failed to clear existing rows of batch {batch_id}: {exc}",
                stage=STAGE,
            ) from exc
        if cleared:
            logger.info("Cleared %d rows from an earlier attempt of batch %s", cleared, batch_id)

        # Failed files with nothing to insert from the rest is a failed commit
        if committed_ok == 0 or (failed and not rows):
            return self._finalize_failed(
                batch, source, anchor, source_prefix, commit_prefix, files
            )

        # ----------------------------------------------------------
        # Step 6: Bulk row insert
        # ----------------------------------------------------------
        inserted = 0
        for number, chunk in enumerate(chunked(rows, self._config.insert_chunk_size), start=1):
            try:
                inserted += self._store.insert_raw_rows(chunk)
            except RuntimeError as exc:
                logger.error(
                    "Insert of chunk %d failed for batch %s after %d rows: %s",
                    number,
                    batch_id,
                    inserted,
                    exc,
                )
                raise IngestException(
                    code=ErrorCode.E_DB_INSERT,
                    message=f"Row insert failed at chunk {number}: {exc}",
                    stage=STAGE,
                ) from exc

        # ----------------------------------------------------------
        # Step 7: Manifest
        # ----------------------------------------------------------
        manifest_path = self._write_manifest(
            ok=failed == 0,
            source=source,
            upload_set_id=upload_set_id,
            batch_id=batch_id,
            anchor=anchor,
            source_prefix=source_prefix,
            commit_prefix=commit_prefix,
            files=files,
            total_rows=inserted,
        )

        # ----------------------------------------------------------
        # Step 8: Housekeeping
        # ----------------------------------------------------------
        housekeeping_deleted = self._housekeep(batch, source, anchor, rows)

        # ----------------------------------------------------------
        # Step 9: Pin rubric and settings
        # ----------------------------------------------------------
        pin = BatchPin(
            batch_id=batch_id,
            scope=self._config.scope,
            source_system=source,
            fiscal_month_anchor=anchor,
            rubric_version_id=rubric.version.id,
            settings_pinned_at=settings.updated_at,
            pinned_at=datetime.now(timezone.utc),
        )
        try:
            self._store.upsert_pin(pin)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_PIN_WRITE,
                message=f"Failed to pin batch {batch_id}: {exc}",
                stage=STAGE,
            ) from exc

        # ----------------------------------------------------------
        # Step 10: Finalize
        # ----------------------------------------------------------
        status = BatchStatus.COMMITTED if failed == 0 else BatchStatus.COMMITTED_WITH_ERRORS
        note = f"{failed} file(s) failed during commit" if failed else None
        if manifest_path is None:
            warning = "manifest write failed"
            note = f"{note}; {warning}" if note else warning
        self._update_batch(
            batch_id,
            status=status,
            storage_bucket=self._storage.bucket,
            storage_prefix=source_prefix,
            manifest_path=manifest_path,
            note=note,
        )

        logger.info(
            "Committed batch %s: %d rows, %d/%d files ok, status %s, rubric version %d",
            batch_id,
            inserted,
            committed_ok,
            len(files),
            status.value,
            rubric.version.id,
        )
        return CommitResult(
            ok=True,
            batch_id=batch_id,
            upload_set_id=upload_set_id,
            status=status,
            rows=inserted,
            failed=failed,
            commit_prefix=commit_prefix,
            manifest=manifest_path,
            files=files,
            housekeeping_deleted=housekeeping_deleted,
            pin=pin,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_batch(
        self, upload_set_id: str, source: str, anchor: str, region: str | None
    ) -> Batch:
        try:
            previous = self._store.get_batch(upload_set_id)
            batch = self._store.upsert_batch(
                upload_set_id, source, anchor, BatchStatus.COMMITTING.value
            )
            if batch.region != region:
                batch = self._store.update_batch(batch.batch_id, region=region)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_BATCH_RESOLVE,
                message=f"Failed to resolve batch for upload set {upload_set_id}: {exc}",
                stage=STAGE,
            ) from exc
        if previous is not None and (
            previous.fiscal_month_anchor != anchor or previous.source_system != source
        ):
            logger.warning(
                "Batch %s moved from %s/%s to %s/%s",
                batch.batch_id,
                previous.source_system,
                previous.fiscal_month_anchor,
                source,
                anchor,
            )
        return batch

    def _commit_region_index(self) -> RegionIndex | None:
        """Region index used to read regions from sheet titles at commit time."""
        if self._config.commit_region_allowlist:
            return RegionIndex.build(self._config.commit_region_allowlist)
        if self._region_provider is None:
            return None
        try:
            regions = self._region_provider.authoritative_regions()
        except (ConnectionError, TimeoutError) as exc:
            raise IngestException(
                code=ErrorCode.E_REGIONS_UNAVAILABLE,
                message=f"Authoritative regions unavailable: {exc}",
                stage=STAGE,
            ) from exc
        return RegionIndex.build(regions)

    def _commit_file(
        self,
        name: str,
        source_prefix: str,
        commit_prefix: str,
        batch_id: str,
        index: RegionIndex | None,
    ) -> tuple[CommitFileResult, list[RawRow]]:
        if layout.extension(name) not in self._config.commit_extensions:
            return (
                CommitFileResult(
                    name=name,
                    ok=False,
                    error=f"Commit requires {', '.join(self._config.commit_extensions)} files",
                ),
                [],
            )

        try:
            data = self._storage.get(layout.join(source_prefix, name))
        except (FileNotFoundError, RuntimeError, OSError) as exc:
            return CommitFileResult(name=name, ok=False, error=f"Download failed: {exc}"), []

        try:
            match, extracted = extract_workbook(data, self._config, index)
        except Exception as exc:
            logger.warning("Unreadable workbook %s at commit: %s", name, exc)
            return CommitFileResult(name=name, ok=False, error=f"Unreadable workbook: {exc}"), []

        if not match.matched:
            logger.warning(
                "%s: header fingerprint mismatch (found %r)",
                name,
                match.found_fingerprint,
            )
            return (
                CommitFileResult(
                    name=name,
                    ok=False,
                    error="header fingerprint mismatch",
                    expected_fingerprint=header_fingerprint(self._config.expected_headers),
                    found_fingerprint=match.found_fingerprint,
                ),
                [],
            )

        sheet_name = match.matched_sheet or ""
        rows = [self._to_raw_row(batch_id, name, sheet_name, r) for r in extracted]
        regions = sorted({r.region for r in rows if r.region})
        result = CommitFileResult(
            name=name,
            ok=True,
            sheet_name=sheet_name,
            rows=len(rows),
            region=regions[0] if len(regions) == 1 else None,
        )

        artifact_path = layout.join(commit_prefix, layout.artifact_name(name))
        body = "\n".join(json.dumps(r.model_dump()) for r in rows)
        try:
            self._storage.put(
                artifact_path,
                (body + "\n" if body else "").encode("utf-8"),
                layout.content_type_for(artifact_path),
            )
            result.artifact_path = artifact_path
        except (RuntimeError, OSError, ValueError) as exc:
            result.warning = f"JSONL artifact write failed for {name}: {exc}"

        return result, rows

    @staticmethod
    def _to_raw_row(batch_id: str, name: str, sheet_name: str, row: ExtractedRow) -> RawRow:
        return RawRow(
            batch_id=batch_id,
            source_file=name,
            sheet_name=sheet_name,
            row_num=row.row_num,
            tech_id=row.tech_id,
            region=row.region,
            payload=row.payload,
        )

    def _write_manifest(
        self,
        *,
        ok: bool,
        source: str,
        upload_set_id: str,
        batch_id: str,
        anchor: str,
        source_prefix: str,
        commit_prefix: str,
        files: list[CommitFileResult],
        total_rows: int,
    ) -> str | None:
        failed = sum(1 for f in files if not f.ok)
        manifest = CommitManifest(
            ok=ok,
            source_system=source,
            upload_set_id=upload_set_id,
            batch_id=batch_id,
            fiscal_month_anchor=anchor,
            source_prefix=source_prefix,
            commit_prefix=commit_prefix,
            counts=ManifestCounts(
                listed=len(files),
                committed_ok=len(files) - failed,
                failed=failed,
                total_rows=total_rows,
            ),
            files=files,
            created_at=datetime.now(timezone.utc),
        )
        path = layout.join(commit_prefix, self._config.manifest_name)
        try:
            self._storage.put(
                path,
                manifest.model_dump_json(indent=2).encode("utf-8"),
                layout.content_type_for(path),
            )
        except (RuntimeError, OSError, ValueError) as exc:
            logger.warning(
                "%s: manifest write failed for batch %s: %s",
                ErrorCode.W_ARTIFACT_WRITE.value,
                batch_id,
                exc,
            )
            return None
        return path

    def _housekeep(self, batch: Batch, source: str, anchor: str, rows: list[RawRow]) -> int:
        """Delete rows of other batches for each region this batch covers."""
        if batch.region:
            regions = [batch.region]
        else:
            regions = sorted({r.region for r in rows if r.region})
            unplaced = sum(1 for r in rows if not r.region)
            if unplaced:
                logger.warning(
                    "%s: %d rows of batch %s have no region and are not housekept",
                    ErrorCode.W_ROWS_WITHOUT_REGION.value,
                    unplaced,
                    batch.batch_id,
                )

        deleted = 0
        for region in regions:
            try:
                count = self._store.delete_superseded_rows(
                    region, anchor, source, batch.batch_id
                )
            except RuntimeError as exc:
                raise IngestException(
                    code=ErrorCode.E_DB_DELETE,
                    message=f"Housekeeping failed for {region}/{anchor}: {exc}",
                    stage=STAGE,
                ) from exc
            if count:
                logger.info(
                    "Housekeeping removed %d superseded rows for %s/%s", count, region, anchor
                )
            deleted += count
        return deleted

    def _finalize_failed(
        self,
        batch: Batch,
        source: str,
        anchor: str,
        source_prefix: str,
        commit_prefix: str,
        files: list[CommitFileResult],
    ) -> CommitResult:
        """Close out a commit that failed files and inserted no rows."""
        failed = sum(1 for f in files if not f.ok)
        try:
            self._store.delete_pin(batch.batch_id)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_DB_DELETE,
                message=f"Failed to clear pin of batch {batch.batch_id}: {exc}",
                stage=STAGE,
            ) from exc

        manifest_path = self._write_manifest(
            ok=False,
            source=source,
            upload_set_id=batch.upload_set_id,
            batch_id=batch.batch_id,
            anchor=anchor,
            source_prefix=source_prefix,
            commit_prefix=commit_prefix,
            files=files,
            total_rows=0,
        )
        self._update_batch(
            batch.batch_id,
            status=BatchStatus.FAILED,
            storage_bucket=self._storage.bucket,
            storage_prefix=source_prefix,
            manifest_path=manifest_path,
            note=f"{failed} file(s) failed during commit",
        )
        logger.error(
            "Commit of batch %s failed: %d/%d file(s) rejected and no rows inserted",
            batch.batch_id,
            failed,
            len(files),
        )
        return CommitResult(
            ok=False,
            batch_id=batch.batch_id,
            upload_set_id=batch.upload_set_id,
            status=BatchStatus.FAILED,
            rows=0,
            failed=failed,
            commit_prefix=commit_prefix,
            manifest=manifest_path,
            files=files,
        )

    def _update_batch(self, batch_id: str, **fields: object) -> Batch:
        try:
            return self._store.update_batch(batch_id, **fields)
        except RuntimeError as exc:
            raise IngestException(
                code=ErrorCode.E_DB_UPDATE,
                message=f"Failed to finalize batch {batch_id}: {exc}",
                stage=STAGE,
            ) from exc
