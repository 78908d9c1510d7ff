"""Header fingerprinting and worksheet matching.

A fingerprint is the order-sensitive signature of a header row: every header
is trimmed, lowercased and whitespace-collapsed, then joined with ``|``.  Two
header rows match only when their fingerprints are identical.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from pydantic import BaseModel

if TYPE_CHECKING:
    from openpyxl.workbook.workbook import Workbook

SEPARATOR = "|"

_WS_RE = re.compile(r"\s+")


class SheetMatch(BaseModel):
    """Result of searching a workbook for the expected header row."""

    sheet_names: list[str]
    matched_sheet: str | None = None
    expected_fingerprint: str
    found_fingerprint: str
    headers: list[str]
    header_columns: list[int] = []
    row1_text: str = ""

    @property
    def matched(self) -> bool:
        return self.matched_sheet is not None


def normalize_header(text: object) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    if text is None:
        return ""
    return _WS_RE.sub(" ", str(text).strip().lower())


def header_fingerprint(headers: list[str]) -> str:
    """Return the fingerprint of an ordered header list."""
    return SEPARATOR.join(normalize_header(h) for h in headers)


def fingerprints_match(left: list[str], right: list[str]) -> bool:
    return header_fingerprint(left) == header_fingerprint(right)


def header_row_texts(values: tuple | list) -> list[str]:
    """Return the non-empty trimmed texts of a header row, in order."""
    return [text for _, text in header_cells(values)]


def header_cells(values: tuple | list) -> list[tuple[int, str]]:
    """Return ``(column_index, text)`` for each non-empty cell of a row."""
    cells = []
    for index, value in enumerate(values):
        if value is None:
            continue
        text = str(value).strip()
        if text:
            cells.append((index, text))
    return cells


def row_text(values: tuple | list) -> str:
    """Join the non-empty cells of a row with single spaces."""
    return " ".join(header_row_texts(values))


def find_matching_sheet(
    workbook: Workbook,
    expected_headers: list[str],
    header_row: int = 2,
    title_row: int = 1,
) -> SheetMatch:
    """Return the first worksheet whose header row matches *expected_headers*.

    When no sheet matches, ``matched_sheet`` is None and the reported found
    fingerprint, headers and title text come from the first worksheet.
    """
    expected = header_fingerprint(expected_headers)
    sheet_names = list(workbook.sheetnames)

    first: SheetMatch | None = None
    for name in sheet_names:
        ws = workbook[name]
        cells = header_cells(_row_values(ws, header_row))
        headers = [text for _, text in cells]
        found = header_fingerprint(headers)
        candidate = SheetMatch(
            sheet_names=sheet_names,
            expected_fingerprint=expected,
            found_fingerprint=found,
            headers=headers,
            header_columns=[index for index, _ in cells],
            row1_text=row_text(_row_values(ws, title_row)),
        )
        if found == expected:
            candidate.matched_sheet = name
            return candidate
        if first is None:
            first = candidate

    if first is None:
        return SheetMatch(
            sheet_names=sheet_names,
            expected_fingerprint=expected,
            found_fingerprint="",
            headers=[],
        )
    return first


def _row_values(ws, row_number: int) -> tuple:
    for row in ws.iter_rows(min_row=row_number, max_row=row_number, values_only=True):
        return row
    return ()
