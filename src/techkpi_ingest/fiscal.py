"""Fiscal calendar helpers.

Fiscal months close on the 21st.  A reference date on or before the 21st
belongs to the month anchored on the 21st of the same calendar month; a date
from the 22nd onward belongs to the next month's anchor.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

from techkpi_ingest.errors import ErrorCode, IngestException

ANCHOR_DAY = 21

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_iso_date(value: str, stage: str = "input") -> date:
    """Parse a strict ``YYYY-MM-DD`` string.

    Raises:
        IngestException: ``E_INPUT_INVALID_DATE`` if the text is not a valid
            ISO calendar date.
    """
    text = (value or "").strip()
    if not _ISO_DATE_RE.match(text):
        raise IngestException(
            code=ErrorCode.E_INPUT_INVALID_DATE,
            message=f"Expected a YYYY-MM-DD date, got {value!r}",
            stage=stage,
        )
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise IngestException(
            code=ErrorCode.E_INPUT_INVALID_DATE,
            message=f"Invalid calendar date {value!r}: {exc}",
            stage=stage,
        ) from exc


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def fiscal_month_anchor(ref: date | str) -> str:
    """Return the fiscal month anchor (``YYYY-MM-21``) for a reference date.

    >>> fiscal_month_anchor("2025-12-21")
    '2025-12-21'
    >>> fiscal_month_anchor("2025-12-22")
    '2026-01-21'
    """
    ref_date = parse_iso_date(ref) if isinstance(ref, str) else ref

    year, month = ref_date.year, ref_date.month
    if ref_date.day > ANCHOR_DAY:
        month += 1
        if month == 13:
            month = 1
            year += 1
    return date(year, month, ANCHOR_DAY).isoformat()


def require_anchor(value: str, stage: str) -> str:
    """Validate that *value* is a fiscal month anchor and return it normalized.

    Raises:
        IngestException: ``E_INPUT_INVALID_DATE`` if *value* is not an ISO
            date falling on the anchor day.
    """
    anchor = parse_iso_date(value, stage=stage)
    if anchor.day != ANCHOR_DAY:
        raise IngestException(
            code=ErrorCode.E_INPUT_INVALID_DATE,
            message=f"Fiscal month anchor must fall on day {ANCHOR_DAY}, got {value!r}",
            stage=stage,
        )
    return anchor.isoformat()
