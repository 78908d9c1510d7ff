"""Configuration model for the techkpi-ingest pipeline.

Provides ``IngestConfig`` with all tunable parameters and sensible defaults
for the Ontrac technician KPI export.  Supports loading overrides from YAML or
JSON files via the ``from_file()`` classmethod.
"""

from __future__ import annotations

import json
import pathlib

import yaml
from pydantic import BaseModel, Field, field_validator

# Raw header names exactly as they appear on row 2 of the Ontrac export.
ONTRAC_EXPECTED_HEADERS: list[str] = [
    "TechId",
    "TechName",
    "Supervisor",
    "Total Jobs",
    "Installs",
    "TCs",
    "SROs",
    "TUResult",
    "TUEligibleJobs",
    "ToolUsage",
    "Promoters",
    "Detractors",
    "tNPS Surveys",
    "tNPS Rate",
    "FTRFailJobs",
    "Total FTR/Contact Jobs",
    "FTR%",
    "48Hr Contact Orders",
    "48Hr Contact Rate%",
    "PHT Jobs",
    "PHT Pure Pass",
    "PHT Fails",
    "PHT RTM",
    "PHT Pass%",
    "PHT Pure Pass%",
    "TotalAppts",
    "TotalMetAppts",
    "MetRate",
    "Rework Count",
    "Rework Rate%",
    "SOI Count",
    "SOI Rate%",
    "Repeat Count",
    "Repeat Rate%",
]

DEFAULT_COMMIT_REGIONS: list[str] = [
    "Keystone",
    "Beltway",
    "Big South",
    "Florida",
    "Freedom",
    "New England",
]

DEFAULT_FOOTER_KEYWORDS: list[str] = [
    "grand total",
    "subtotal",
    "sub total",
    "totals",
    "total",
    "summary",
    "end of report",
    "report total",
    "page ",
]


class IngestConfig(BaseModel):
    """All tunable parameters with sensible defaults.

    Override individual values via constructor kwargs or load a complete
    config from a file with ``IngestConfig.from_file(path)``.
    """

    # --- Identity ---
    source_system: str = "ontrac"
    scope: str = "global"
    bucket: str = "ingest-ontrac-raw-v1"

    # --- Spreadsheet layout ---
    title_row: int = 1
    header_row: int = 2
    data_start_row: int = 3
    expected_headers: list[str] = Field(
        default_factory=lambda: list(ONTRAC_EXPECTED_HEADERS)
    )
    tech_id_headers: list[str] = Field(
        default_factory=lambda: ["TechId", "TechID", "tech_id"]
    )
    region_field: str = "Region"
    footer_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FOOTER_KEYWORDS)
    )
    csv_min_data_cells: int = 3
    allowed_extensions: list[str] = Field(default_factory=lambda: [".csv", ".xlsx"])
    commit_extensions: list[str] = Field(default_factory=lambda: [".xlsx"])

    # --- Commit ---
    insert_chunk_size: int = Field(default=500, ge=1)
    storage_list_limit: int = Field(default=500, ge=1)
    commit_region_allowlist: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COMMIT_REGIONS),
        description=(
            "Regions recognised in row-1 titles at commit time. When empty, "
            "the authoritative region provider list is used instead."
        ),
    )
    manifest_name: str = "manifest.json"

    # --- Backends ---
    storage_root: str | None = None
    database_path: str | None = None
    regions_url: str | None = None
    regions: list[str] = []
    backend_timeout_seconds: float = 30.0
    backend_max_retries: int = 2
    backend_backoff_base: float = 1.0

    # --- Reporting ---
    reportable_metric: str = "Total FTR/Contact Jobs"
    metric_columns: dict[str, str] = Field(
        default_factory=lambda: {
            "total_jobs": "Total Jobs",
            "tnps_rate": "tNPS Rate",
            "ftr_pct": "FTR%",
            "tool_usage_pct": "ToolUsage",
        }
    )

    @field_validator("expected_headers")
    @classmethod
    def _headers_not_empty(cls, value: list[str]) -> list[str]:
        if not [h for h in value if h.strip()]:
            raise ValueError("expected_headers must contain at least one header")
        return value

    @field_validator("allowed_extensions", "commit_extensions")
    @classmethod
    def _lower_extensions(cls, value: list[str]) -> list[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in value]

    @classmethod
    def from_file(cls, path: str) -> IngestConfig:
        """Load configuration from a YAML or JSON file.

        File format is detected by extension: ``.yaml`` / ``.yml`` for YAML,
        ``.json`` for JSON.  Any keys present in the file override the
        corresponding defaults; keys not present retain their defaults.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError: If the file extension is not recognized.
        """
        file_path = pathlib.Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        suffix = file_path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            with open(file_path) as fh:
                data = yaml.safe_load(fh)
        elif suffix == ".json":
            with open(file_path) as fh:
                data = json.load(fh)
        else:
            raise ValueError(
                f"Unsupported config file extension '{suffix}'. "
                "Use .yaml, .yml, or .json."
            )

        if data is None:
            data = {}

        return cls(**data)
