"""Spreadsheet row extraction.

Turns a matched worksheet into :class:`ExtractedRow` records.  Every data row
below the header becomes an ordered payload keyed by the expected header
names, aligned by column position with the matched header row.  Blank rows,
footer/summary rows and rows without a technician id are skipped.

Also provides the CSV preview used by the parse stage, which reads the same
layout (title on row 1, header on row 2, data from row 3) from delimited text.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime, time

import openpyxl
from pydantic import BaseModel

from techkpi_ingest.config import IngestConfig
from techkpi_ingest.fingerprint import (
    SheetMatch,
    find_matching_sheet,
    header_cells,
    header_fingerprint,
    row_text,
)
from techkpi_ingest.regions import RegionIndex, detect_region

logger = logging.getLogger("techkpi_ingest")


class ExtractedRow(BaseModel):
    """A data row pulled from a worksheet, before it is bound to a batch."""

    row_num: int
    tech_id: str
    region: str | None = None
    payload: dict[str, str]


class CsvPreview(BaseModel):
    """Header and row-count preview of a CSV export."""

    row1_text: str = ""
    headers: list[str] = []
    found_fingerprint: str = ""
    data_rows_estimate: int = 0


# ---------------------------------------------------------------------------
# Cell and row helpers
# ---------------------------------------------------------------------------


def cell_text(value: object) -> str:
    """Render a cell value as trimmed text.

    Integral floats lose their ``.0``, booleans become ``TRUE``/``FALSE``,
    dates are rendered in ISO form and NUL characters are removed.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            text = str(int(value))
        else:
            text = repr(value)
    elif isinstance(value, datetime):
        if value.time() == time(0, 0):
            text = value.date().isoformat()
        else:
            text = value.isoformat()
    elif isinstance(value, (date, time)):
        text = value.isoformat()
    else:
        text = str(value)
    return text.replace("\x00", "").strip()


def is_footer(signature: str, keywords: list[str]) -> bool:
    """True if the row signature contains any footer keyword (case-insensitive)."""
    lowered = signature.lower()
    return any(keyword in lowered for keyword in keywords)


def is_csv_data_line(line: str, keywords: list[str], min_cells: int = 3) -> bool:
    """Decide whether one line of a CSV export is a data row.

    A line is data when it is not blank, has at least *min_cells* non-empty
    comma-delimited cells, and does not look like a footer.

    >>> is_csv_data_line("GRAND TOTAL,,,1000", ["grand total"])
    False
    """
    cells = [c.strip() for c in next(csv.reader([line]), [])]
    non_empty = [c for c in cells if c]
    if len(non_empty) < min_cells:
        return False
    return not is_footer(" ".join(non_empty), keywords)


def find_tech_id(payload: dict[str, str], variants: list[str]) -> str:
    for key in variants:
        value = payload.get(key)
        if value:
            return value
    return ""


# ---------------------------------------------------------------------------
# Workbook extraction
# ---------------------------------------------------------------------------


def load_workbook(data: bytes) -> openpyxl.Workbook:
    """Open an ``.xlsx`` payload read-only with cached formula values."""
    return openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)


def extract_rows(
    worksheet,
    match: SheetMatch,
    config: IngestConfig,
    region_index: RegionIndex | None = None,
) -> list[ExtractedRow]:
    """Extract data rows from a worksheet whose header row matched.

    The row region comes from the worksheet title (row 1) when it names an
    authoritative region, otherwise from the ``Region`` payload field.
    """
    expected = config.expected_headers
    columns = match.header_columns or list(range(len(expected)))
    title_region = detect_region(match.row1_text, region_index)

    rows: list[ExtractedRow] = []
    skipped = 0
    for row_num, values in enumerate(
        worksheet.iter_rows(min_row=config.data_start_row, values_only=True),
        start=config.data_start_row,
    ):
        texts = [cell_text(v) for v in values]
        signature = " ".join(t for t in texts if t)
        if not signature or is_footer(signature, config.footer_keywords):
            skipped += 1
            continue

        payload: dict[str, str] = {}
        for header, column in zip(expected, columns):
            payload[header] = texts[column] if column < len(texts) else ""

        tech_id = find_tech_id(payload, config.tech_id_headers)
        if not tech_id:
            skipped += 1
            continue

        region = title_region or payload.get(config.region_field) or None
        rows.append(
            ExtractedRow(row_num=row_num, tech_id=tech_id, region=region, payload=payload)
        )

    logger.debug(
        "Extracted %d rows from sheet '%s' (%d skipped)",
        len(rows),
        worksheet.title,
        skipped,
    )
    return rows


def extract_workbook(
    data: bytes,
    config: IngestConfig,
    region_index: RegionIndex | None = None,
) -> tuple[SheetMatch, list[ExtractedRow]]:
    """Find the matching worksheet in an ``.xlsx`` payload and extract its rows.

    Returns the sheet match and the rows; the row list is empty when no
    worksheet header matched.  Errors opening the workbook propagate.
    """
    workbook = load_workbook(data)
    try:
        match = find_matching_sheet(
            workbook,
            config.expected_headers,
            header_row=config.header_row,
            title_row=config.title_row,
        )
        if not match.matched:
            return match, []
        rows = extract_rows(workbook[match.matched_sheet], match, config, region_index)
        return match, rows
    finally:
        workbook.close()


# ---------------------------------------------------------------------------
# CSV preview
# ---------------------------------------------------------------------------


def preview_csv(data: bytes, config: IngestConfig) -> CsvPreview:
    """Read title, header and an estimated data-row count from CSV bytes."""
    text = data.decode("utf-8-sig", errors="replace").replace("\x00", "")
    lines = text.splitlines()

    def _line(number: int) -> str:
        return lines[number - 1] if len(lines) >= number else ""

    title_cells = next(csv.reader([_line(config.title_row)]), [])
    raw_header = next(csv.reader([_line(config.header_row)]), [])
    headers = [h for _, h in header_cells(raw_header)]

    estimate = sum(
        1
        for line in lines[config.data_start_row - 1:]
        if is_csv_data_line(line, config.footer_keywords, config.csv_min_data_cells)
    )
    return CsvPreview(
        row1_text=row_text(title_cells),
        headers=headers,
        found_fingerprint=header_fingerprint(headers),
        data_rows_estimate=estimate,
    )
