"""Job executors.

The scheduler only talks to the JobExecutor interface, so jobs can run as
local subprocesses (LocalProcessExecutor) or on any other backend that
honours the same contract.
"""

import asyncio
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pipeline_orchestrator.config import Settings, get_settings
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import (
    CapturedOutput,
    FailureReason,
    JobResult,
    JobSpec,
    JobState,
)
from pipeline_orchestrator.core.errors import ExecutionError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class JobExecutor(ABC):
    """Runs a single job to a terminal state."""

    @abstractmethod
    async def execute(self, job: JobSpec, token: CancellationToken, run_id: str) -> JobResult:
        """Run the job and return its result.

        Implementations must not raise for job-level failures: nonzero
        exits, timeouts, launch errors and cancellation are all reported
        through the returned JobResult.
        """


class LocalProcessExecutor(JobExecutor):
    """Run jobs as shell commands in a new process group on this machine.

    stdout and stderr are captured separately, each up to
    ``Settings.output_limit_bytes``; anything beyond the cap is drained and
    counted but not kept, and the result is marked truncated.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def execute(self, job: JobSpec, token: CancellationToken, run_id: str) -> JobResult:
        started_at = datetime.now()
        start = time.monotonic()

        try:
            process = await self._launch(job, run_id)
        except ExecutionError as e:
            logger.warning(f"Job {job.stage}/{job.name} could not be launched: {e}")
            return JobResult(
                stage=job.stage,
                job=job.name,
                state=JobState.FAILED,
                allow_failure=job.allow_failure,
                reason=e.reason,
                detail=str(e),
                duration=time.monotonic() - start,
                started_at=started_at,
                finished_at=datetime.now(),
            )

        logger.info(f"Job {job.stage}/{job.name} started (pid {process.pid})")

        limit = self.settings.output_limit_bytes
        stdout_task = asyncio.create_task(_read_capped(process.stdout, limit))
        stderr_task = asyncio.create_task(_read_capped(process.stderr, limit))
        exit_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(token.wait())

        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task},
                timeout=job.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The awaiting task is being torn down; never leave the group running
            await self._terminate(process)
            for task in (stdout_task, stderr_task, exit_task):
                task.cancel()
            await asyncio.gather(stdout_task, stderr_task, exit_task, return_exceptions=True)
            raise
        finally:
            cancel_task.cancel()

        reason: Optional[FailureReason] = None
        detail = ""
        if exit_task in done:
            exit_code = exit_task.result()
            if exit_code == 0:
                state = JobState.SUCCEEDED
            else:
                state = JobState.FAILED
                reason = FailureReason.EXIT_CODE
                if exit_code < 0:
                    detail = f"terminated by signal {-exit_code}"
        elif cancel_task in done:
            logger.warning(f"Job {job.stage}/{job.name} aborted: {token.reason}")
            await self._terminate(process)
            exit_code = process.returncode
            state = JobState.FAILED
            reason = FailureReason.CANCELLED
            detail = f"aborted: {token.reason}"
        else:
            logger.warning(f"Job {job.stage}/{job.name} timed out after {job.timeout}s")
            await self._terminate(process)
            exit_code = process.returncode
            state = JobState.TIMED_OUT
            reason = FailureReason.TIMEOUT
            detail = f"timed out after {job.timeout:g}s"

        stdout, stderr = await self._collect_output(process, stdout_task, stderr_task)

        result = JobResult(
            stage=job.stage,
            job=job.name,
            state=state,
            allow_failure=job.allow_failure,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - start,
            started_at=started_at,
            finished_at=datetime.now(),
            reason=reason,
            detail=detail,
        )
        logger.info(
            f"Job {job.stage}/{job.name} finished: {state.label} "
            f"(exit {exit_code}, {result.duration:.2f}s)"
        )
        return result

    def build_environment(self, job: JobSpec, run_id: str) -> dict[str, str]:
        """Environment for a job: inherited env < CI variables < job variables."""
        if self.settings.inherit_environment:
            env = dict(os.environ)
        else:
            env = {"PATH": os.environ.get("PATH", os.defpath)}

        env.update({
            "CI": "true",
            "CI_PIPELINE_ID": run_id,
            "CI_JOB_NAME": job.name,
            "CI_JOB_STAGE": job.stage,
            "CI_PROJECT_DIR": str(job.working_directory),
        })
        env.update(job.environment)
        return env

    async def _launch(self, job: JobSpec, run_id: str) -> asyncio.subprocess.Process:
        if not job.working_directory.is_dir():
            raise ExecutionError(
                f"working directory does not exist: {job.working_directory}",
                reason=FailureReason.WORKING_DIRECTORY_MISSING,
            )

        try:
            return await asyncio.create_subprocess_exec(
                self.settings.shell,
                "-c",
                job.command,
                cwd=str(job.working_directory),
                env=self.build_environment(job, run_id),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"failed to launch '{self.settings.shell}': {e.strerror or e}") from e

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the job's whole process group: SIGTERM, then SIGKILL after the grace period."""
        if process.returncode is None:
            _signal_group(process.pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.kill_grace_period)
            except asyncio.TimeoutError:
                logger.warning(f"Process group {process.pid} ignored SIGTERM, sending SIGKILL")
                _signal_group(process.pid, signal.SIGKILL)
                await process.wait()
        # Children that outlived the shell still belong to the group
        _signal_group(process.pid, signal.SIGKILL)

    async def _collect_output(
        self,
        process: asyncio.subprocess.Process,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
    ) -> tuple[CapturedOutput, CapturedOutput]:
        """Wait for both readers; pipes held open by leftover children get the group killed."""
        readers = asyncio.gather(stdout_task, stderr_task)
        try:
            stdout, stderr = await asyncio.wait_for(
                asyncio.shield(readers), timeout=self.settings.kill_grace_period
            )
        except asyncio.TimeoutError:
            logger.warning(f"Output of process group {process.pid} still open, killing group")
            _signal_group(process.pid, signal.SIGKILL)
            stdout, stderr = await readers
        return stdout, stderr


def _signal_group(pgid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> CapturedOutput:
    """Read a stream to EOF, keeping at most ``limit`` bytes."""
    kept = bytearray()
    total = 0
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        room = limit - len(kept)
        if room > 0:
            kept.extend(chunk[:room])

    text = kept.decode("utf-8", errors="replace")
    truncated = total > limit
    if truncated:
        text += f"\n[output truncated: {total - limit} bytes omitted]"
    return CapturedOutput(text=text, total_bytes=total, truncated=truncated)
