"""IngestPipeline -- orchestrator and public API for techkpi-ingest.

Drives an upload set through the full flow:

1. Load the authoritative region list (refuse to start without one).
2. Upload the files.
3. Parse every uploaded file.
4. Run the validation gate.
5. Commit, only when the gate is green.

Each step's state is tracked on a :class:`PipelineRun` so an operator screen
can show where a run stopped.  A WARN gate stops before commit; the operator
may then call :meth:`IngestPipeline.commit_reviewed` after reviewing the
region mismatches.  :meth:`IngestPipeline.undo_last_commit` rewinds a run's
commit.
"""

from __future__ import annotations

import logging

from techkpi_ingest.config import IngestConfig
from techkpi_ingest.errors import ErrorCode, IngestException
from techkpi_ingest.models import (
    BatchStatus,
    CommitResult,
    GateOutcome,
    PipelineRun,
    StepState,
    UndoResult,
    UndoScope,
    UploadFile,
)
from techkpi_ingest.protocols import IngestStore, ObjectStorage, RegionProvider
from techkpi_ingest.stages import CommitStage, ParseStage, UndoStage, UploadStage, evaluate_gate

logger = logging.getLogger("techkpi_ingest")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class IngestPipeline:
    """Orchestrator that drives upload, parse, validation and commit.

    Parameters
    ----------
    storage:
        Object storage for uploads and commit artifacts.
    store:
        Relational store for batches, rows, rules and pins.
    region_provider:
        Source of the authoritative region list.
    config:
        Pipeline configuration. Uses defaults when *None*.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        store: IngestStore,
        region_provider: RegionProvider,
        config: IngestConfig | None = None,
    ) -> None:
        self._config = config or IngestConfig()
        self._region_provider = region_provider
        self._upload = UploadStage(storage, self._config)
        self._parse = ParseStage(storage, self._config)
        self._commit = CommitStage(storage, store, self._config, region_provider)
        self._undo = UndoStage(storage, store, self._config)

    @property
    def config(self) -> IngestConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_regions(self) -> list[str]:
        """Return the authoritative region list.

        Raises
        ------
        IngestException
            ``E_REGIONS_UNAVAILABLE`` when the provider errors or returns an
            empty list.  An empty list never means "no restrictions".
        """
        try:
            regions = self._region_provider.authoritative_regions()
        except (ConnectionError, TimeoutError) as exc:
            raise IngestException(
                code=ErrorCode.E_REGIONS_UNAVAILABLE,
                message=f"Authoritative regions unavailable: {exc}",
                stage="regions",
            ) from exc
        if not regions:
            raise IngestException(
                code=ErrorCode.E_REGIONS_UNAVAILABLE,
                message="Authoritative region list is empty",
                stage="regions",
            )
        return regions

    def process_batch(
        self,
        files: list[UploadFile],
        fiscal_ref_date: str | None = None,
        source_system: str | None = None,
    ) -> PipelineRun:
        """Run upload, parse, validation and (when green) commit.

        Stage failures are recorded on the returned run rather than raised.
        """
        source = source_system or self._config.source_system
        run = PipelineRun(source_system=source)

        # ----------------------------------------------------------
        # Step 1: Authoritative regions
        # ----------------------------------------------------------
        try:
            run.regions = self.load_regions()
        except IngestException as exc:
            logger.error("Refusing to start: %s", exc.message)
            run.errors.append(exc.error)
            return run

        # ----------------------------------------------------------
        # Step 2: Upload
        # ----------------------------------------------------------
        upload = self._run_step(
            run, "upload", lambda: self._upload.upload(files, source, fiscal_ref_date)
        )
        if upload is None:
            return run
        run.upload = upload
        if upload.counts.uploaded_ok == 0:
            run.steps["upload"] = StepState.FAIL
            return run
        run.steps["upload"] = StepState.OK if upload.counts.failed == 0 else StepState.WARN

        # ----------------------------------------------------------
        # Step 3: Parse
        # ----------------------------------------------------------
        parsed = self._run_step(
            run,
            "parse",
            lambda: self._parse.parse(
                upload.upload_set_id, upload.fiscal_month_anchor, source, run.regions
            ),
        )
        if parsed is None:
            return run
        run.parse = parsed
        run.steps["parse"] = StepState.OK if parsed.counts.failed == 0 else StepState.WARN

        # ----------------------------------------------------------
        # Step 4: Validation gate
        # ----------------------------------------------------------
        run.steps["validate"] = StepState.RUNNING
        gate = evaluate_gate(parsed, run.regions)
        run.gate = gate
        run.errors.extend(gate.errors)
        if gate.outcome == GateOutcome.FAIL:
            run.steps["validate"] = StepState.FAIL
            return run
        if gate.outcome == GateOutcome.WARN:
            run.steps["validate"] = StepState.WARN
            return run
        run.steps["validate"] = StepState.OK

        # ----------------------------------------------------------
        # Step 5: Commit
        # ----------------------------------------------------------
        self._commit_run(run)
        return run

    def commit_reviewed(self, run: PipelineRun, region: str | None = None) -> PipelineRun:
        """Commit a run whose gate stopped on WARN, after operator review.

        Raises
        ------
        IngestException
            ``E_GATE_NOT_GREEN`` if the run has no gate result or its gate
            failed on headers; header failures can never be overridden.
        """
        if run.upload is None or run.gate is None or run.gate.outcome == GateOutcome.FAIL:
            raise IngestException(
                code=ErrorCode.E_GATE_NOT_GREEN,
                message="Run cannot be committed: validation gate missing or failed",
                stage="commit",
            )
        logger.warning(
            "Committing upload set %s after operator review of %d region mismatch(es)",
            run.upload.upload_set_id,
            len(run.gate.region_mismatches),
        )
        self._commit_run(run, region=region)
        return run

    def undo_last_commit(
        self, run: PipelineRun, scope: str = UndoScope.COMMIT.value
    ) -> UndoResult:
        """Undo the commit of *run* and reset its commit step to idle."""
        if run.upload is None:
            raise IngestException(
                code=ErrorCode.E_INPUT_MISSING_FIELD,
                message="Run has no upload set to undo",
                stage="undo",
            )
        result = self._undo.undo(
            run.upload.upload_set_id, run.upload.fiscal_month_anchor, scope
        )
        run.steps["commit"] = StepState.IDLE
        run.commit = None
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _commit_run(self, run: PipelineRun, region: str | None = None) -> CommitResult | None:
        assert run.upload is not None
        upload = run.upload
        result = self._run_step(
            run,
            "commit",
            lambda: self._commit.commit(
                upload.upload_set_id, upload.fiscal_month_anchor, run.source_system, region
            ),
        )
        if result is None:
            return None
        run.commit = result
        run.steps["commit"] = {
            BatchStatus.COMMITTED: StepState.OK,
            BatchStatus.COMMITTED_WITH_ERRORS: StepState.WARN,
        }.get(result.status, StepState.FAIL)
        return result

    @staticmethod
    def _run_step(run: PipelineRun, step: str, action):
        """Run *action* with *step* marked running; mark it failed if it raises."""
        run.steps[step] = StepState.RUNNING
        try:
            return action()
        except IngestException as exc:
            logger.error("Step %s failed: [%s] %s", step, exc.code.value, exc.message)
            run.steps[step] = StepState.FAIL
            run.errors.append(exc.error)
            return None
        except Exception:
            run.steps[step] = StepState.FAIL
            raise


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_default_pipeline(**overrides) -> IngestPipeline:
    """Create an IngestPipeline with filesystem, SQLite and region backends.

    All defaults can be overridden via keyword arguments:

    - ``storage``: ObjectStorage (default: FileSystemObjectStorage at
      ``config.storage_root``)
    - ``store``: IngestStore (default: SQLiteIngestStore at
      ``config.database_path``)
    - ``region_provider``: RegionProvider (default: HttpRegionProvider when
      ``config.regions_url`` is set, else StaticRegionProvider over
      ``config.regions``)
    - ``config``: IngestConfig (default: IngestConfig())

    Any other keyword arguments are passed to IngestConfig.

    Raises
    ------
    IngestException
        ``E_CONFIG_MISSING`` when a default backend is needed but its
        setting is absent.
    """
    from techkpi_ingest.backends import (
        FileSystemObjectStorage,
        HttpRegionProvider,
        SQLiteIngestStore,
        StaticRegionProvider,
    )

    # Separate known pipeline kwargs from config overrides
    pipeline_keys = {"storage", "store", "region_provider", "config"}
    pipeline_kwargs = {k: v for k, v in overrides.items() if k in pipeline_keys}
    config_kwargs = {k: v for k, v in overrides.items() if k not in pipeline_keys}

    config = pipeline_kwargs.pop("config", None)
    if config is None:
        config = IngestConfig(**config_kwargs)

    storage = pipeline_kwargs.pop("storage", None)
    if storage is None:
        if not config.storage_root:
            raise _missing("storage_root")
        storage = FileSystemObjectStorage(config.storage_root, bucket=config.bucket)

    store = pipeline_kwargs.pop("store", None)
    if store is None:
        if not config.database_path:
            raise _missing("database_path")
        store = SQLiteIngestStore(config.database_path)

    region_provider = pipeline_kwargs.pop("region_provider", None)
    if region_provider is None:
        if config.regions_url:
            region_provider = HttpRegionProvider(config.regions_url, config=config)
        elif config.regions:
            region_provider = StaticRegionProvider(config.regions)
        else:
            raise _missing("regions_url or regions")

    return IngestPipeline(
        storage=storage,
        store=store,
        region_provider=region_provider,
        config=config,
    )


def _missing(setting: str) -> IngestException:
    return IngestException(
        code=ErrorCode.E_CONFIG_MISSING,
        message=f"Configuration setting '{setting}' is required for the default backends",
        stage="config",
    )
