"""Backend protocols for the techkpi-ingest pipeline.

Defines the three structural-subtyping interfaces that concrete backends must
satisfy.  All protocols are ``@runtime_checkable`` so callers can optionally
verify conformance with ``isinstance`` checks.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from techkpi_ingest.models import (
        Batch,
        BatchPin,
        RawRow,
        ReportSettings,
        RubricThreshold,
        RubricVersion,
        StoredObject,
    )


@runtime_checkable
class ObjectStorage(Protocol):
    """Interface for object storage scoped to one bucket."""

    bucket: str

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        """Write *data* at *path*, replacing any existing object."""
        ...

    def get(self, path: str) -> bytes:
        """Return the bytes stored at *path*. Raises FileNotFoundError if absent."""
        ...

    def list(self, prefix: str, limit: int | None = None) -> list[StoredObject]:
        """List the direct children of *prefix*, sorted by name."""
        ...

    def delete(self, path: str) -> bool:
        """Delete the object at *path*. Returns False if it did not exist."""
        ...


@runtime_checkable
class IngestStore(Protocol):
    """Interface for the relational store holding batches, rows, rules and pins."""

    # --- Batches ---

    def upsert_batch(
        self,
        upload_set_id: str,
        source_system: str,
        fiscal_month_anchor: str,
        status: str,
    ) -> Batch:
        """Insert or update the batch keyed by *upload_set_id*; the batch_id is stable."""
        ...

    def get_batch(self, upload_set_id: str) -> Batch | None:
        """Return the batch for an upload set, or None."""
        ...

    def get_batch_by_id(self, batch_id: str) -> Batch | None:
        """Return the batch with *batch_id*, or None."""
        ...

    def update_batch(self, batch_id: str, **fields: object) -> Batch:
        """Update the given columns of a batch and return it."""
        ...

    def list_batches(
        self,
        fiscal_month_anchor: str,
        source_system: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[Batch]:
        """Return batches for a month, optionally filtered by source and status."""
        ...

    # --- Raw rows ---

    def insert_raw_rows(self, rows: list[RawRow]) -> int:
        """Insert rows and return the count inserted."""
        ...

    def select_raw_rows(
        self,
        batch_ids: list[str] | None = None,
        region: str | None = None,
    ) -> list[RawRow]:
        """Return rows filtered by batch ids and/or region, ordered by insertion."""
        ...

    def count_raw_rows(self, batch_id: str) -> int:
        """Return the number of rows stored for a batch."""
        ...

    def delete_raw_rows(self, batch_id: str) -> int:
        """Delete every row of a batch and return the count deleted."""
        ...

    def delete_superseded_rows(
        self,
        region: str,
        fiscal_month_anchor: str,
        source_system: str,
        keep_batch_id: str,
    ) -> int:
        """Delete rows for (region, month, source) belonging to any other batch."""
        ...

    # --- Rules ---

    def list_rubric_versions(
        self,
        scope: str,
        source_system: str,
        as_of: str | None = None,
        active_only: bool = True,
    ) -> list[RubricVersion]:
        """Return rubric versions with anchor <= *as_of*, newest anchor first."""
        ...

    def get_rubric_version(self, rubric_version_id: int) -> RubricVersion | None:
        """Return one rubric version by id, or None."""
        ...

    def get_rubric_thresholds(self, rubric_version_id: int) -> list[RubricThreshold]:
        """Return the threshold bands of a rubric version."""
        ...

    def latest_settings(self, scope: str, source_system: str) -> ReportSettings | None:
        """Return the most recently updated settings snapshot, or None."""
        ...

    def get_settings_at(
        self, scope: str, source_system: str, updated_at: datetime
    ) -> ReportSettings | None:
        """Return the settings snapshot recorded at exactly *updated_at*."""
        ...

    # --- Pins ---

    def upsert_pin(self, pin: BatchPin) -> BatchPin:
        """Insert or replace the pin keyed by ``pin.batch_id``."""
        ...

    def get_pin(self, batch_id: str) -> BatchPin | None:
        """Return the pin for a batch, or None."""
        ...

    def delete_pin(self, batch_id: str) -> int:
        """Delete the pin for a batch and return the count deleted (0 or 1)."""
        ...


@runtime_checkable
class RegionProvider(Protocol):
    """Interface for the authoritative region reference list."""

    def authoritative_regions(self) -> list[str]:
        """Return the region display names.

        Raises ConnectionError/TimeoutError when the source is unreachable.
        """
        ...
