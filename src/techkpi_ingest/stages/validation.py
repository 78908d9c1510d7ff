"""Validation gate: go/no-go decision over parse output.

Pure function of the parse result and the authoritative region list.

- Any file whose header did not match fails the gate outright.
- Otherwise any file whose region cannot be resolved against the
  authoritative list turns the gate to WARN: nothing is committed
  automatically and an operator has to decide.
- Otherwise the gate is GREEN.

An empty or missing region list, or an upload with no files, fails the gate.
"""

from __future__ import annotations

import logging

from techkpi_ingest.errors import ErrorCode, IngestError
from techkpi_ingest.models import GateFileCheck, GateOutcome, GateResult, ParseResult
from techkpi_ingest.regions import RegionIndex

logger = logging.getLogger("techkpi_ingest")

STAGE = "validate"


def evaluate_gate(parse_result: ParseResult, regions: list[str] | None) -> GateResult:
    """Decide whether an upload set may be committed automatically."""
    index = RegionIndex.build(regions)
    if index is None:
        logger.error("Validation gate failed: authoritative region list unavailable")
        return GateResult(
            outcome=GateOutcome.FAIL,
            errors=[
                IngestError(
                    code=ErrorCode.E_REGIONS_UNAVAILABLE,
                    message="Authoritative region list is empty or unavailable",
                    stage=STAGE,
                )
            ],
        )

    if not parse_result.files:
        logger.error("Validation gate failed: no files in upload set %s", parse_result.upload_set_id)
        return GateResult(
            outcome=GateOutcome.FAIL,
            errors=[
                IngestError(
                    code=ErrorCode.E_INPUT_NO_FILES,
                    message="No files found for this upload set",
                    stage=STAGE,
                )
            ],
        )

    checks: list[GateFileCheck] = []
    for diag in parse_result.files:
        region = index.canonical(diag.detected_region) or index.detect(diag.name)
        checks.append(
            GateFileCheck(
                name=diag.name,
                region=region,
                region_ok=region is not None,
                header_ok=diag.header_match,
            )
        )

    header_failures = [c.name for c in checks if not c.header_ok]
    region_mismatches = [c.name for c in checks if not c.region_ok]

    if header_failures:
        logger.error(
            "Validation gate failed: header mismatch in %s", ", ".join(header_failures)
        )
        return GateResult(
            outcome=GateOutcome.FAIL,
            files=checks,
            header_failures=header_failures,
            region_mismatches=region_mismatches,
            errors=[
                IngestError(
                    code=ErrorCode.E_GATE_HEADER_MISMATCH,
                    message="header fingerprint mismatch",
                    stage=STAGE,
                    file_name=name,
                )
                for name in header_failures
            ],
        )

    if region_mismatches:
        logger.warning(
            "Validation gate warning: region not resolved for %s", ", ".join(region_mismatches)
        )
        return GateResult(
            outcome=GateOutcome.WARN,
            files=checks,
            region_mismatches=region_mismatches,
            errors=[
                IngestError(
                    code=ErrorCode.W_REGION_NOT_FOUND,
                    message="Region could not be resolved against the authoritative list",
                    stage=STAGE,
                    file_name=name,
                    recoverable=True,
                )
                for name in region_mismatches
            ],
        )

    logger.info("Validation gate green for %d file(s)", len(checks))
    return GateResult(outcome=GateOutcome.GREEN, files=checks)
