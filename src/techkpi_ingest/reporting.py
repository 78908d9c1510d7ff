"""Read-only reporting over committed batches.

``ScorecardReader`` answers the questions report screens ask: which batches
are live for a month, which rows are committed for a region and month, and
how each technician scores against the rubric the batch was pinned to.
Rubric bands always come from the batch pin, never from a fresh lookup, so a
report for an old month renders the same after the rubric changes.
"""

from __future__ import annotations

import logging
import re
from typing import IO

import pandas as pd

from techkpi_ingest.config import IngestConfig
from techkpi_ingest.models import Batch, BatchStatus, EffectiveRubric, RawRow, ReportSettings
from techkpi_ingest.protocols import IngestStore
from techkpi_ingest.rules import classify_value, effective_rubric, pinned_rubric, pinned_settings

logger = logging.getLogger("techkpi_ingest")

_NUMBER_RE = re.compile(r"^[-+]?\d*\.?\d+$")
_STRIP_RE = re.compile(r"[%$,\s]")

COMMITTED_STATUSES = [BatchStatus.COMMITTED.value, BatchStatus.COMMITTED_WITH_ERRORS.value]


def to_number(text: object) -> float | None:
    """Parse a payload value as a number.

    ``%``, ``$``, ``,`` and whitespace are stripped; a value wrapped in
    parentheses is negative.  Returns None when the text is not numeric.

    >>> to_number("(12.5)")
    -12.5
    >>> to_number("85.2%")
    85.2
    """
    if text is None:
        return None
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text)
    value = str(text).strip()
    negative = False
    if value.startswith("(") and value.endswith(")"):
        negative = True
        value = value[1:-1]
    value = _STRIP_RE.sub("", value)
    if not value or not _NUMBER_RE.match(value):
        return None
    number = float(value)
    return -number if negative else number


class ScorecardReader:
    """Read-only queries over committed, pinned batches.

    Parameters
    ----------
    store:
        The ingest store to read from.
    config:
        Pipeline configuration. Uses defaults when *None*.
    """

    def __init__(self, store: IngestStore, config: IngestConfig | None = None) -> None:
        self._store = store
        self._config = config or IngestConfig()

    def committed_batches(
        self, fiscal_month_anchor: str, source_system: str | None = None
    ) -> list[Batch]:
        """Batches for a month that are committed and carry a pin."""
        batches = self._store.list_batches(
            fiscal_month_anchor,
            source_system=source_system or self._config.source_system,
            statuses=COMMITTED_STATUSES,
        )
        return [b for b in batches if self._store.get_pin(b.batch_id) is not None]

    def committed_rows(
        self,
        region: str,
        fiscal_month_anchor: str,
        source_system: str | None = None,
    ) -> list[RawRow]:
        """Rows of committed batches for a region and month."""
        batch_ids = [b.batch_id for b in self.committed_batches(fiscal_month_anchor, source_system)]
        if not batch_ids:
            return []
        return self._store.select_raw_rows(batch_ids=batch_ids, region=region)

    def pinned_rubric(self, batch_id: str) -> EffectiveRubric | None:
        """The rubric version recorded on the batch's pin."""
        return pinned_rubric(self._store, batch_id)

    def pinned_settings(self, batch_id: str) -> ReportSettings | None:
        """The settings snapshot recorded on the batch's pin."""
        return pinned_settings(self._store, batch_id)

    def reportable_metric(self, batch_id: str) -> str:
        """Header of the reportable-jobs metric for a batch.

        Read from the pinned settings snapshot; the configured default is
        used when the snapshot does not name one.
        """
        settings = self.pinned_settings(batch_id)
        if settings is not None and settings.values.get("reportable_metric"):
            return str(settings.values["reportable_metric"])
        return self._config.reportable_metric

    def rubric_as_of(
        self,
        fiscal_month_anchor: str,
        scope: str | None = None,
        source_system: str | None = None,
    ) -> EffectiveRubric | None:
        """The rubric effective for a month, for screens that preview rules."""
        return effective_rubric(
            self._store,
            scope or self._config.scope,
            source_system or self._config.source_system,
            fiscal_month_anchor,
        )

    def scorecard(
        self,
        region: str,
        fiscal_month_anchor: str,
        source_system: str | None = None,
    ) -> pd.DataFrame:
        """Per-technician rollup for a region and month.

        One row per (tech_id, batch_id).  Job counts are summed, rates are
        averaged across duplicate rows, and each metric in
        ``config.metric_columns`` gets a ``<metric>_band`` column classified
        with the batch's pinned rubric.
        """
        metrics = self._config.metric_columns
        rows = self.committed_rows(region, fiscal_month_anchor, source_system)
        band_columns = [f"{key}_band" for key in metrics]
        base_columns = ["tech_id", "batch_id", "tech_name", "supervisor", "region"]
        columns = base_columns + list(metrics) + ["ftr_contact_jobs", "is_reportable"]

        if not rows:
            return pd.DataFrame(columns=columns + band_columns)

        reportable = {
            batch_id: self.reportable_metric(batch_id)
            for batch_id in dict.fromkeys(row.batch_id for row in rows)
        }
        records = []
        for row in rows:
            record = {
                "tech_id": row.tech_id,
                "batch_id": row.batch_id,
                "tech_name": row.payload.get("TechName", ""),
                "supervisor": row.payload.get("Supervisor", ""),
                "region": row.region,
                "ftr_contact_jobs": to_number(row.payload.get(reportable[row.batch_id])),
            }
            for key, header in metrics.items():
                record[key] = to_number(row.payload.get(header))
            records.append(record)

        df = pd.DataFrame.from_records(records)
        numeric = list(metrics) + ["ftr_contact_jobs"]
        for column in numeric:
            df[column] = pd.to_numeric(df[column], errors="coerce")

        aggregations = {
            "tech_name": ("tech_name", "first"),
            "supervisor": ("supervisor", "first"),
            "region": ("region", "first"),
            "ftr_contact_jobs": ("ftr_contact_jobs", lambda s: s.sum(min_count=1)),
        }
        for key in metrics:
            if key.startswith("total_"):
                aggregations[key] = (key, lambda s: s.sum(min_count=1))
            else:
                aggregations[key] = (key, "mean")

        grouped = df.groupby(["tech_id", "batch_id"], sort=True, as_index=False).agg(
            **aggregations
        )
        grouped["is_reportable"] = grouped["ftr_contact_jobs"].fillna(0) != 0

        rubrics: dict[str, EffectiveRubric | None] = {
            batch_id: self.pinned_rubric(batch_id) for batch_id in grouped["batch_id"].unique()
        }
        for key in metrics:
            grouped[f"{key}_band"] = [
                self._band(rubrics[batch_id], key, value)
                for batch_id, value in zip(grouped["batch_id"], grouped[key])
            ]

        logger.debug(
            "Scorecard for %s/%s: %d technicians from %d batch(es)",
            region,
            fiscal_month_anchor,
            len(grouped),
            len(rubrics),
        )
        return grouped[columns + band_columns]

    @staticmethod
    def export_csv(scorecard: pd.DataFrame, target: str | IO[str] | None = None) -> str | None:
        """Write a scorecard as CSV to *target*, or return the CSV text when None."""
        return scorecard.to_csv(target, index=False)

    @staticmethod
    def _band(rubric: EffectiveRubric | None, metric: str, value: float) -> str | None:
        if rubric is None:
            return None
        number = None if pd.isna(value) else float(value)
        threshold = classify_value(number, metric, rubric.thresholds)
        return threshold.band.value if threshold is not None else None
