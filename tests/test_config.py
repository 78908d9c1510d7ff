"""Tests for IngestConfig and the error model."""

from __future__ import annotations

import json
import pathlib

import pytest
from pydantic import ValidationError

import techkpi_ingest
from techkpi_ingest.config import ONTRAC_EXPECTED_HEADERS, IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestError, IngestException


@pytest.mark.unit
class TestIngestConfig:
    def test_defaults(self, sample_config: IngestConfig) -> None:
        assert sample_config.source_system == "ontrac"
        assert sample_config.bucket == "ingest-ontrac-raw-v1"
        assert sample_config.expected_headers == ONTRAC_EXPECTED_HEADERS
        assert len(sample_config.expected_headers) == 34
        assert sample_config.insert_chunk_size == 500
        assert sample_config.commit_extensions == [".xlsx"]

    def test_defaults_not_shared(self) -> None:
        a = IngestConfig()
        a.expected_headers.append("Extra")
        assert IngestConfig().expected_headers == ONTRAC_EXPECTED_HEADERS

    def test_extensions_normalized(self) -> None:
        config = IngestConfig(allowed_extensions=["XLSX", ".Csv"])
        assert config.allowed_extensions == [".xlsx", ".csv"]

    def test_empty_headers_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IngestConfig(expected_headers=["  "])

    def test_chunk_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            IngestConfig(insert_chunk_size=0)

    def test_from_yaml(self, tmp_path) -> None:
        path = tmp_path / "ingest.yaml"
        path.write_text("source_system: ontrac\ninsert_chunk_size: 50\nregions:\n  - Keystone\n")
        config = IngestConfig.from_file(str(path))
        assert config.insert_chunk_size == 50
        assert config.regions == ["Keystone"]
        assert config.scope == "global"

    def test_from_json(self, tmp_path) -> None:
        path = tmp_path / "ingest.json"
        path.write_text(json.dumps({"bucket": "other-bucket"}))
        assert IngestConfig.from_file(str(path)).bucket == "other-bucket"

    def test_empty_yaml_gives_defaults(self, tmp_path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert IngestConfig.from_file(str(path)) == IngestConfig()

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            IngestConfig.from_file(str(tmp_path / "nope.yaml"))

    def test_unknown_extension(self, tmp_path) -> None:
        path = tmp_path / "ingest.toml"
        path.write_text("x = 1")
        with pytest.raises(ValueError, match="Unsupported config file extension"):
            IngestConfig.from_file(str(path))


@pytest.mark.unit
class TestErrors:
    def test_codes_are_stable_strings(self) -> None:
        for code in ErrorCode:
            assert code.value == code.name
            assert code.name[:2] in ("E_", "W_")

    def test_exception_wraps_error(self) -> None:
        exc = IngestException(
            code=ErrorCode.E_DB_INSERT, message="boom", stage="commit", recoverable=False
        )
        assert isinstance(exc.error, IngestError)
        assert exc.code == ErrorCode.E_DB_INSERT
        assert exc.message == "boom"
        assert exc.stage == "commit"
        assert not exc.recoverable
        assert str(exc) == "boom"

    def test_error_serializes_code_value(self) -> None:
        error = IngestError(code=ErrorCode.W_REGION_NOT_FOUND, message="m", recoverable=True)
        assert error.model_dump(mode="json")["code"] == "W_REGION_NOT_FOUND"

    def test_total_member_count(self) -> None:
        """22 E_ codes and 4 W_ codes."""
        assert len([c for c in ErrorCode if c.name.startswith("E_")]) == 22
        assert len([c for c in ErrorCode if c.name.startswith("W_")]) == 4

    def test_every_code_is_reported_somewhere(self) -> None:
        package = pathlib.Path(techkpi_ingest.__file__).parent
        source = "\n".join(
            path.read_text(encoding="utf-8")
            for path in package.rglob("*.py")
            if path.name != "errors.py"
        )
        unused = [code.name for code in ErrorCode if f"ErrorCode.{code.name}" not in source]
        assert unused == []
