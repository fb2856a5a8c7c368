"""Stage scheduler.

Walks a PipelinePlan stage by stage. All jobs of a stage are started
concurrently and the stage is only judged once every one of them has
reached a terminal state. A failed stage or a cancellation turns every
remaining job into a skipped result; nothing is ever left out of the
PipelineResult.
"""

import asyncio
import logging
import uuid
from contextlib import nullcontext
from datetime import datetime
from typing import Optional

from pipeline_orchestrator.config import Settings, get_settings
from pipeline_orchestrator.core.artifacts import ArtifactManager, output_ref_for
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import (
    FailureReason,
    JobResult,
    JobSpec,
    JobState,
    PipelinePlan,
    PipelineResult,
    StageResult,
    StageSpec,
)
from pipeline_orchestrator.core.executor import JobExecutor, LocalProcessExecutor

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """Generate a sortable, unique run id."""
    return f"{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class SchedulerListener:
    """Observer of scheduler progress. All hooks are optional no-ops.

    The *_started hooks fire only for stages and jobs that actually run.
    Skipped stages and jobs report through stage_finished and job_finished
    alone, with every job result in the Skipped state.
    """

    def stage_started(self, stage: StageSpec) -> None:
        pass

    def job_started(self, job: JobSpec) -> None:
        pass

    def job_finished(self, result: JobResult) -> None:
        pass

    def stage_finished(self, result: StageResult) -> None:
        pass


class StageScheduler:
    """Executes a plan's stages in order with concurrent jobs per stage."""

    def __init__(
        self,
        executor: JobExecutor,
        settings: Optional[Settings] = None,
        listener: Optional[SchedulerListener] = None,
        artifacts: Optional[ArtifactManager] = None,
    ):
        self.executor = executor
        self.settings = settings or get_settings()
        self.listener = listener or SchedulerListener()
        self.artifacts = artifacts

    async def run(
        self,
        plan: PipelinePlan,
        token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> PipelineResult:
        """Run every stage of the plan and return the aggregated result.

        Args:
            plan: Validated plan to execute
            token: Cancellation token shared by all jobs of the run
            run_id: Identifier for this run (generated if omitted)

        Returns:
            PipelineResult with one StageResult per plan stage
        """
        token = token or CancellationToken()
        run_id = run_id or new_run_id()
        result = PipelineResult(run_id=run_id, plan_name=plan.name)
        logger.info(f"Run {run_id}: starting pipeline '{plan.name}' ({len(plan.stages)} stages)")

        blocked: Optional[FailureReason] = None
        for stage in plan.stages:
            if blocked is None and token.cancelled:
                blocked = FailureReason.CANCELLED

            if blocked is not None:
                logger.info(f"Run {run_id}: skipping stage '{stage.name}' ({blocked.value})")
                stage_result = StageResult(
                    name=stage.name,
                    jobs=tuple(self._skipped(run_id, job, blocked) for job in stage.jobs),
                )
            else:
                self._notify("stage_started", stage)
                stage_result = await self._run_stage(run_id, stage, token)
                if token.cancelled:
                    blocked = FailureReason.CANCELLED
                elif stage_result.failed:
                    logger.warning(f"Run {run_id}: stage '{stage.name}' failed")
                    blocked = FailureReason.UPSTREAM_FAILED

            result.stages.append(stage_result)
            self._notify("stage_finished", stage_result)

        result.cancelled = any(
            job.reason == FailureReason.CANCELLED for job in result.iter_jobs()
        )
        result.finished_at = datetime.now()
        logger.info(f"Run {run_id}: pipeline '{plan.name}' {result.verdict.value}")
        return result

    async def _run_stage(
        self, run_id: str, stage: StageSpec, token: CancellationToken
    ) -> StageResult:
        """Start all jobs of a stage and wait for every one to finish."""
        limit = self.settings.max_parallel_jobs
        slots = asyncio.Semaphore(limit) if limit else None

        tasks = [
            asyncio.create_task(
                self._run_job(run_id, job, token, slots), name=f"{stage.name}/{job.name}"
            )
            for job in stage.jobs
        ]
        try:
            results = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return StageResult(name=stage.name, jobs=tuple(results))

    async def _run_job(
        self,
        run_id: str,
        job: JobSpec,
        token: CancellationToken,
        slots: Optional[asyncio.Semaphore],
    ) -> JobResult:
        async with slots or nullcontext():
            if token.cancelled:
                return self._skipped(run_id, job, FailureReason.CANCELLED)

            self._notify("job_started", job)
            try:
                result = await self.executor.execute(job, token, run_id)
            except Exception as e:
                logger.exception(f"Executor crashed while running {job.stage}/{job.name}")
                result = JobResult(
                    stage=job.stage,
                    job=job.name,
                    state=JobState.FAILED,
                    allow_failure=job.allow_failure,
                    reason=FailureReason.LAUNCH_FAILED,
                    detail=f"executor error: {e}",
                    finished_at=datetime.now(),
                )

        result = result.model_copy(update={"output_ref": self._persist(run_id, result)})
        self._notify("job_finished", result)
        return result

    def _skipped(self, run_id: str, job: JobSpec, reason: FailureReason) -> JobResult:
        result = JobResult(
            stage=job.stage,
            job=job.name,
            state=JobState.SKIPPED,
            allow_failure=job.allow_failure,
            reason=reason,
            output_ref=output_ref_for(run_id, job.stage, job.name),
        )
        self._notify("job_finished", result)
        return result

    def _persist(self, run_id: str, result: JobResult) -> str:
        if self.artifacts is None:
            return output_ref_for(run_id, result.stage, result.job)
        try:
            return self.artifacts.save_job_output(run_id, result)
        except OSError as e:
            logger.warning(f"Failed to save output of {result.stage}/{result.job}: {e}")
            return output_ref_for(run_id, result.stage, result.job)

    def _notify(self, hook: str, *args) -> None:
        try:
            getattr(self.listener, hook)(*args)
        except Exception:
            logger.exception(f"Scheduler listener failed in {hook}")


def run_pipeline(
    plan: PipelinePlan,
    executor: Optional[JobExecutor] = None,
    settings: Optional[Settings] = None,
    listener: Optional[SchedulerListener] = None,
    artifacts: Optional[ArtifactManager] = None,
    run_id: Optional[str] = None,
) -> PipelineResult:
    """Run a plan to completion from synchronous code.

    Args:
        plan: Validated plan to execute
        executor: Job backend (defaults to local subprocesses)
        settings: Orchestrator settings
        listener: Progress observer
        artifacts: Where to persist job logs, if anywhere
        run_id: Identifier for this run

    Returns:
        The PipelineResult of the run
    """
    settings = settings or get_settings()
    scheduler = StageScheduler(
        executor or LocalProcessExecutor(settings),
        settings=settings,
        listener=listener,
        artifacts=artifacts,
    )
    return asyncio.run(scheduler.run(plan, run_id=run_id))
