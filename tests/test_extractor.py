"""Tests for row extraction and the CSV preview."""

from __future__ import annotations

from datetime import datetime

import pytest

from conftest import REGIONS, make_tech_row, make_workbook_bytes
from techkpi_ingest.config import ONTRAC_EXPECTED_HEADERS, IngestConfig
from techkpi_ingest.extractor import (
    cell_text,
    extract_workbook,
    is_csv_data_line,
    is_footer,
    preview_csv,
)
from techkpi_ingest.regions import RegionIndex


@pytest.mark.unit
class TestCellText:
    def test_none_is_empty(self) -> None:
        assert cell_text(None) == ""

    def test_integral_float_drops_decimal(self) -> None:
        assert cell_text(42.0) == "42"

    def test_fraction_kept(self) -> None:
        assert cell_text(0.925) == "0.925"

    def test_booleans(self) -> None:
        assert cell_text(True) == "TRUE"
        assert cell_text(False) == "FALSE"

    def test_dates_iso(self) -> None:
        assert cell_text(datetime(2025, 1, 21)) == "2025-01-21"

    def test_nul_removed_and_trimmed(self) -> None:
        assert cell_text("  ab\x00c ") == "abc"


@pytest.mark.unit
class TestFooterHeuristics:
    def test_grand_total_csv_line_excluded(self, sample_config: IngestConfig) -> None:
        assert not is_csv_data_line("GRAND TOTAL,,,1000", sample_config.footer_keywords)

    def test_tech_csv_line_retained(self, sample_config: IngestConfig) -> None:
        assert is_csv_data_line("12345,Jane Doe,Region X,42", sample_config.footer_keywords)

    def test_sparse_csv_line_excluded(self, sample_config: IngestConfig) -> None:
        assert not is_csv_data_line("12345,,,42", sample_config.footer_keywords)

    @pytest.mark.parametrize(
        "signature",
        ["Grand Total 1000", "SUBTOTAL 4", "Report Total", "End of Report", "Page 2 of 3", "Summary"],
    )
    def test_footer_keywords(self, signature: str, sample_config: IngestConfig) -> None:
        assert is_footer(signature, sample_config.footer_keywords)


@pytest.mark.unit
class TestExtractWorkbook:
    def test_rows_extracted_and_footer_skipped(self, sample_config: IngestConfig) -> None:
        data = make_workbook_bytes()
        match, rows = extract_workbook(data, sample_config, RegionIndex.build(REGIONS))
        assert match.matched
        assert [r.tech_id for r in rows] == ["T100", "T200"]
        assert [r.row_num for r in rows] == [3, 4]

    def test_payload_is_ordered_by_expected_headers(self, sample_config: IngestConfig) -> None:
        _, rows = extract_workbook(make_workbook_bytes(), sample_config)
        payload = rows[0].payload
        assert list(payload) == ONTRAC_EXPECTED_HEADERS
        assert payload["TechName"] == "Jane Doe"
        assert payload["Total Jobs"] == "40"
        assert payload["tNPS Rate"] == "85.0%"

    def test_accounting_negative_kept_as_text(self, sample_config: IngestConfig) -> None:
        data = make_workbook_bytes(rows=[make_tech_row("T1", tnps_rate="(12.5)")])
        _, rows = extract_workbook(data, sample_config)
        assert rows[0].payload["tNPS Rate"] == "(12.5)"

    def test_rows_without_tech_id_dropped(self, sample_config: IngestConfig) -> None:
        data = make_workbook_bytes(rows=[make_tech_row(""), make_tech_row("T9")])
        _, rows = extract_workbook(data, sample_config)
        assert [r.tech_id for r in rows] == ["T9"]

    def test_region_from_title(self, sample_config: IngestConfig) -> None:
        data = make_workbook_bytes(title="Big South Weekly KPI")
        _, rows = extract_workbook(data, sample_config, RegionIndex.build(REGIONS))
        assert {r.region for r in rows} == {"Big South"}

    def test_region_none_without_index(self, sample_config: IngestConfig) -> None:
        _, rows = extract_workbook(make_workbook_bytes(), sample_config, None)
        assert all(r.region is None for r in rows)

    def test_region_falls_back_to_payload_field(self) -> None:
        headers = ONTRAC_EXPECTED_HEADERS[:3] + ["Region"]
        config = IngestConfig(expected_headers=headers)
        data = make_workbook_bytes(
            title="Untitled",
            headers=headers,
            rows=[["T1", "Jane", "Sam", "Florida"]],
            footer=False,
        )
        _, rows = extract_workbook(data, config, RegionIndex.build(REGIONS))
        assert rows[0].region == "Florida"

    def test_mismatched_header_yields_no_rows(self, sample_config: IngestConfig) -> None:
        data = make_workbook_bytes(headers=["A", "B", "C"], rows=[["1", "2", "3"]])
        match, rows = extract_workbook(data, sample_config)
        assert not match.matched
        assert rows == []


@pytest.mark.unit
class TestPreviewCsv:
    def test_preview_reads_title_header_and_rows(self, sample_config: IngestConfig) -> None:
        header = ",".join(ONTRAC_EXPECTED_HEADERS)
        text = "\n".join(
            [
                "Florida Tech KPI",
                header,
                "12345,Jane Doe,Region X,42",
                "23456,John Roe,Region X,40",
                "",
                "GRAND TOTAL,,,1000",
            ]
        )
        preview = preview_csv(text.encode("utf-8"), sample_config)
        assert preview.row1_text == "Florida Tech KPI"
        assert preview.headers == ONTRAC_EXPECTED_HEADERS
        assert preview.data_rows_estimate == 2

    def test_preview_of_empty_file(self, sample_config: IngestConfig) -> None:
        preview = preview_csv(b"", sample_config)
        assert preview.headers == []
        assert preview.data_rows_estimate == 0
