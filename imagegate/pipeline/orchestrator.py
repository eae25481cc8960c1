"""
Pipeline Orchestrator - Composes and runs pipeline stages.

Features:
- Dependency resolution (validates ``required_stages`` graph)
- Fail-fast execution: after the first failure only ``always_run`` stages
  whose preconditions hold are attempted
- Conditional execution (``should_run`` checks)
- Wall-clock deadline for the whole run
- Credentials dropped when the run ends, whatever the outcome
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .protocol import PipelineContext, PipelineStage, StageResult

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_GATE = 1
EXIT_FAILURE = 2


@dataclass
class PipelineRun:
    """Outcome of one orchestrated run.

    The first failed stage decides the run's ``failure_kind`` and exit code:
    0 when every stage succeeded, 1 when the threshold gate blocked the
    image, 2 for any other failure.
    """

    context: PipelineContext
    results: List[StageResult] = field(default_factory=list)

    @property
    def failure(self) -> Optional[StageResult]:
        for result in self.results:
            if not result.success:
                return result
        return None

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def failed_stage(self) -> Optional[str]:
        failure = self.failure
        return failure.stage_name if failure else None

    @property
    def failure_kind(self) -> Optional[str]:
        failure = self.failure
        if failure is None:
            return None
        return failure.failure_kind or "error"

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return EXIT_OK
        if self.failure_kind == "gate":
            return EXIT_GATE
        return EXIT_FAILURE

    def result_for(self, stage_name: str) -> Optional[StageResult]:
        for result in self.results:
            if result.stage_name == stage_name:
                return result
        return None


class PipelineOrchestrator:
    """Compose and execute pipeline stages in step order.

    Parameters
    ----------
    stages : list[PipelineStage]
        Stages to run.  Automatically sorted by ``step_number``.
    config : dict
        Flat configuration dict (from ``config_loader.build_unified_config``).
    thresholds : SeverityThresholds | None
        Validated thresholds for the run.
    deadline : float | None
        ``time.monotonic()`` value bounding the run.  When ``None`` it is
        derived from ``timeout_minutes`` when the run starts.

    Example
    -------
    ::

        pipeline = PipelineOrchestrator(
            stages=build_default_stages(collaborators),
            config=config,
            thresholds=build_thresholds(config),
        )
        run = pipeline.run("/path/to/repo")
        sys.exit(run.exit_code)
    """

    def __init__(
        self,
        stages: List[PipelineStage],
        config: Dict[str, Any],
        thresholds=None,
        deadline: Optional[float] = None,
    ):
        self.stages = sorted(stages, key=lambda s: s.step_number)
        self.config = config
        self.thresholds = thresholds
        self.deadline = deadline
        self._validate_dependencies()

    def _validate_dependencies(self) -> None:
        """Verify that all ``required_stages`` references are satisfiable.

        Raises
        ------
        ValueError
            If a stage declares a dependency on a stage not in the pipeline.
        """
        stage_names = {s.name for s in self.stages}
        for stage in self.stages:
            for dep in stage.required_stages:
                if dep not in stage_names:
                    raise ValueError(
                        f"Stage '{stage.name}' requires '{dep}' which is "
                        f"not registered in the pipeline.  Available: "
                        f"{sorted(stage_names)}"
                    )

    def _build_context(self, workspace: str) -> PipelineContext:
        """Build the initial ``PipelineContext`` from config."""
        deadline = self.deadline
        if deadline is None:
            minutes = self.config.get("timeout_minutes")
            if minutes:
                deadline = time.monotonic() + float(minutes) * 60
        return PipelineContext(
            config=self.config,
            workspace=workspace,
            thresholds=self.thresholds,
            commit_sha=str(self.config.get("commit_sha") or ""),
            deadline=deadline,
        )

    def run(
        self,
        workspace: str = ".",
        ctx: Optional[PipelineContext] = None,
    ) -> PipelineRun:
        """Execute the full pipeline.

        Parameters
        ----------
        workspace : str
            Filesystem path of the repository being built.
        ctx : PipelineContext | None
            Optional pre-built context.  If ``None``, one is created via
            ``_build_context``.

        Returns
        -------
        PipelineRun
            The final context and the result of every stage, attempted or
            skipped.
        """
        if ctx is None:
            ctx = self._build_context(workspace)

        run = PipelineRun(context=ctx)
        succeeded_stages: set[str] = set()
        first_failure: Optional[StageResult] = None
        timed_out = False
        pipeline_start = time.time()

        logger.info(
            "Pipeline starting with %d stages for %s",
            len(self.stages),
            ctx.workspace,
        )

        try:
            for stage in self.stages:
                # -- Deadline --
                if timed_out:
                    run.results.append(self._skipped(stage, "Run timed out"))
                    continue
                if ctx.deadline_passed():
                    timed_out = True
                    message = f"Run deadline passed before {stage.display_name}"
                    logger.error(message)
                    ctx.errors.append(message)
                    result = StageResult(
                        success=False,
                        stage_name=stage.name,
                        error=message,
                        failure_kind="timeout",
                        skipped=True,
                        skip_reason="Deadline passed",
                    )
                    run.results.append(result)
                    first_failure = first_failure or result
                    continue

                # -- Fail-fast --
                if first_failure is not None and not stage.always_run:
                    run.results.append(
                        self._skipped(stage, f"Earlier failure in {first_failure.stage_name}")
                    )
                    logger.info(
                        "Skipping %s after earlier failure", stage.display_name
                    )
                    continue

                # -- Check dependencies --
                unmet = [
                    dep for dep in stage.required_stages
                    if dep not in succeeded_stages
                ]
                if unmet:
                    run.results.append(
                        self._skipped(stage, f"Unmet dependencies: {unmet}")
                    )
                    logger.warning(
                        "Skipping %s: unmet deps %s", stage.display_name, unmet
                    )
                    continue

                # -- Check preconditions --
                try:
                    should_run = stage.should_run(ctx)
                except Exception as exc:
                    result = StageResult(
                        success=False,
                        stage_name=stage.name,
                        error=f"should_run check failed: {exc}",
                        failure_kind="error",
                    )
                    run.results.append(result)
                    ctx.errors.append(f"{stage.display_name}: {result.error}")
                    first_failure = first_failure or result
                    logger.error(
                        "%s: should_run raised %s", stage.display_name, exc
                    )
                    continue

                if not should_run:
                    run.results.append(
                        StageResult(
                            success=True,
                            stage_name=stage.name,
                            skipped=True,
                            skip_reason="Preconditions not met (should_run=False)",
                        )
                    )
                    logger.info(
                        "Skipping %s: should_run returned False",
                        stage.display_name,
                    )
                    continue

                # -- Execute --
                stage_start = time.time()
                logger.info("Starting %s ...", stage.display_name)

                result = stage.execute(ctx)
                result.duration_seconds = time.time() - stage_start
                ctx.stage_timings[stage.name] = result.duration_seconds
                run.results.append(result)

                if result.success:
                    succeeded_stages.add(stage.name)
                    logger.info(
                        "Completed %s in %.1fs",
                        stage.display_name,
                        result.duration_seconds,
                    )
                    continue

                logger.warning(
                    "Stage %s reported failure (%s): %s",
                    stage.display_name,
                    result.failure_kind,
                    result.error,
                )
                ctx.errors.append(f"{stage.display_name}: {result.error}")
                first_failure = first_failure or result
                if result.failure_kind == "timeout":
                    timed_out = True
                try:
                    stage.rollback(ctx)
                except Exception as rb_exc:
                    logger.warning(
                        "Rollback for %s failed: %s",
                        stage.display_name,
                        rb_exc,
                    )
        finally:
            ctx.credentials.clear()
            ctx.registry_session = None

        # -- Finalize --
        pipeline_duration = time.time() - pipeline_start
        ctx.stage_timings["_total"] = pipeline_duration

        if run.succeeded:
            logger.info(
                "Pipeline completed in %.1fs: %d stages run",
                pipeline_duration,
                len([r for r in run.results if not r.skipped]),
            )
        else:
            logger.error(
                "Pipeline failed in %.1fs at %s (%s), exit code %d",
                pipeline_duration,
                run.failed_stage,
                run.failure_kind,
                run.exit_code,
            )

        return run

    @staticmethod
    def _skipped(stage: PipelineStage, reason: str) -> StageResult:
        return StageResult(
            success=False,
            stage_name=stage.name,
            skipped=True,
            skip_reason=reason,
        )
