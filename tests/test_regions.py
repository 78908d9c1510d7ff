"""Tests for region normalization and detection."""

from __future__ import annotations

import pytest

from conftest import REGIONS
from techkpi_ingest.regions import RegionIndex, detect_region, normalize_for_match


@pytest.mark.unit
class TestNormalizeForMatch:
    def test_strips_extension_and_punctuation(self) -> None:
        assert normalize_for_match("big_south-report.xlsx") == "BIG SOUTH REPORT"

    def test_collapses_runs(self) -> None:
        assert normalize_for_match("  New---England  ") == "NEW ENGLAND"

    def test_empty(self) -> None:
        assert normalize_for_match(None) == ""
        assert normalize_for_match("") == ""


@pytest.mark.unit
class TestRegionIndex:
    def test_detects_region_in_filename(self) -> None:
        index = RegionIndex.build(REGIONS)
        assert index.detect("ontrac_big_south_2025-01.xlsx") == "Big South"

    def test_detects_region_in_title(self) -> None:
        index = RegionIndex.build(REGIONS)
        assert index.detect("New England Tech KPI Report") == "New England"

    def test_first_match_in_list_order_wins(self) -> None:
        index = RegionIndex.build(["Freedom", "Florida"])
        assert index.detect("Florida Freedom combined.xlsx") == "Freedom"

    def test_no_match_returns_none(self) -> None:
        index = RegionIndex.build(REGIONS)
        assert index.detect("Midwest.xlsx") is None

    def test_first_display_form_kept(self) -> None:
        index = RegionIndex.build(["Big South", "BIG-SOUTH"])
        assert index.names == ["Big South"]
        assert index.canonical("big south") == "Big South"

    def test_empty_list_builds_no_index(self) -> None:
        assert RegionIndex.build([]) is None
        assert RegionIndex.build(None) is None
        assert RegionIndex.build(["  ", "---"]) is None

    def test_detect_without_index_never_guesses(self) -> None:
        assert detect_region("Keystone.xlsx", None) is None

    def test_membership(self) -> None:
        index = RegionIndex.build(REGIONS)
        assert "keystone" in index
        assert "Ohio" not in index
