"""Point-in-time rubric and settings resolution.

Every lookup takes the fiscal month it is asked about as an explicit
argument.  Nothing here caches a "current" rubric: the commit stage asks
what was effective for the batch's month, and the reporting readers follow
the version recorded on the batch pin.
"""

from __future__ import annotations

import logging

from techkpi_ingest.errors import ErrorCode, IngestException
from techkpi_ingest.models import (
    EffectiveRubric,
    ReportSettings,
    RubricBand,
    RubricThreshold,
)
from techkpi_ingest.protocols import IngestStore

logger = logging.getLogger("techkpi_ingest")


def effective_rubric(
    store: IngestStore,
    scope: str,
    source_system: str,
    as_of: str,
) -> EffectiveRubric | None:
    """Return the active rubric version in force for fiscal month *as_of*.

    That is the active version with the latest ``fiscal_month_anchor`` not
    after *as_of*; ties go to the latest ``committed_at``, then highest id.
    """
    versions = store.list_rubric_versions(scope, source_system, as_of=as_of, active_only=True)
    if not versions:
        return None
    version = versions[0]
    return EffectiveRubric(
        version=version, thresholds=store.get_rubric_thresholds(version.id)
    )


def effective_settings(
    store: IngestStore, scope: str, source_system: str
) -> ReportSettings | None:
    """Return the most recently recorded settings snapshot."""
    return store.latest_settings(scope, source_system)


def resolve_rules(
    store: IngestStore,
    scope: str,
    source_system: str,
    as_of: str,
    stage: str = "commit",
) -> tuple[EffectiveRubric, ReportSettings]:
    """Resolve the rubric and settings a commit will pin.

    Raises:
        IngestException: ``E_PIN_RUBRIC_MISSING`` when no rubric is effective
            for *as_of*, ``E_PIN_SETTINGS_MISSING`` when no settings exist.
    """
    rubric = effective_rubric(store, scope, source_system, as_of)
    if rubric is None:
        raise IngestException(
            code=ErrorCode.E_PIN_RUBRIC_MISSING,
            message=(
                f"No active rubric version for scope={scope} "
                f"source_system={source_system} effective on or before {as_of}"
            ),
            stage=stage,
        )

    settings = effective_settings(store, scope, source_system)
    if settings is None:
        raise IngestException(
            code=ErrorCode.E_PIN_SETTINGS_MISSING,
            message=f"No report settings for scope={scope} source_system={source_system}",
            stage=stage,
        )

    logger.debug(
        "Resolved rubric version %d (anchor %s) and settings %s for %s",
        rubric.version.id,
        rubric.version.fiscal_month_anchor,
        settings.updated_at.isoformat(),
        as_of,
    )
    return rubric, settings


def pinned_rubric(store: IngestStore, batch_id: str) -> EffectiveRubric | None:
    """Return the rubric recorded on a batch's pin, or None if it is not pinned."""
    pin = store.get_pin(batch_id)
    if pin is None:
        return None
    version = store.get_rubric_version(pin.rubric_version_id)
    if version is None:
        logger.error(
            "Batch %s is pinned to missing rubric version %d",
            batch_id,
            pin.rubric_version_id,
        )
        return None
    return EffectiveRubric(
        version=version, thresholds=store.get_rubric_thresholds(version.id)
    )


def pinned_settings(store: IngestStore, batch_id: str) -> ReportSettings | None:
    """Return the settings snapshot recorded on a batch's pin, or None if unpinned."""
    pin = store.get_pin(batch_id)
    if pin is None:
        return None
    settings = store.get_settings_at(pin.scope, pin.source_system, pin.settings_pinned_at)
    if settings is None:
        logger.error(
            "Batch %s is pinned to missing settings snapshot %s",
            batch_id,
            pin.settings_pinned_at.isoformat(),
        )
    return settings


# ---------------------------------------------------------------------------
# Band classification
# ---------------------------------------------------------------------------


def _in_range(value: float, threshold: RubricThreshold) -> bool:
    if threshold.min_value is not None:
        if threshold.inclusive_min and value < threshold.min_value:
            return False
        if not threshold.inclusive_min and value <= threshold.min_value:
            return False
    if threshold.max_value is not None:
        if threshold.inclusive_max and value > threshold.max_value:
            return False
        if not threshold.inclusive_max and value >= threshold.max_value:
            return False
    return True


def classify_value(
    value: float | None,
    metric_name: str,
    thresholds: list[RubricThreshold],
) -> RubricThreshold | None:
    """Return the threshold band *value* falls into for *metric_name*.

    Missing values map to the metric's ``no_data`` band when one is defined.
    Bands are tried in order: exceed, meet, needs_improvement, unacceptable.
    """
    bands = [t for t in thresholds if t.metric_name == metric_name]
    if value is None:
        return next((t for t in bands if t.band == RubricBand.NO_DATA), None)

    order = [
        RubricBand.EXCEED,
        RubricBand.MEET,
        RubricBand.NEEDS_IMPROVEMENT,
        RubricBand.UNACCEPTABLE,
    ]
    for band in order:
        for threshold in bands:
            if threshold.band == band and _in_range(value, threshold):
                return threshold
    return None
