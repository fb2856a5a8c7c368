"""Contract definitions (Pydantic models) for pipeline plans and run results.

This module defines the data passed between the orchestrator components:
- Loader: produces an immutable PipelinePlan (stages -> jobs, services)
- Executor: produces one JobResult per job
- Scheduler: assembles StageResults into a PipelineResult
- Reporter: flattens a PipelineResult into a RunSummary
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Shared Types
# =============================================================================


class JobState(str, Enum):
    """Terminal state of a job."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def label(self) -> str:
        """Display name used in summaries (Succeeded, TimedOut, ...)."""
        return "".join(part.title() for part in self.value.split("_"))


class Verdict(str, Enum):
    """Final outcome of a pipeline run."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class FailureReason(str, Enum):
    """Why a job did not succeed."""

    EXIT_CODE = "exit_code"
    TIMEOUT = "timeout"
    WORKING_DIRECTORY_MISSING = "working_directory_missing"
    LAUNCH_FAILED = "launch_failed"
    CANCELLED = "cancelled"
    UPSTREAM_FAILED = "upstream_failed"


# =============================================================================
# Plan Contracts
# =============================================================================


class ServiceSpec(BaseModel):
    """An external service jobs may declare a dependency on.

    Services are opaque to the orchestrator: it neither starts nor stops
    them. Their environment is exported into every job that uses them.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Service name referenced by jobs")
    image: Optional[str] = Field(default=None, description="Informational image reference")
    depends_on: tuple[str, ...] = Field(default=(), description="Services this one requires")
    environment: dict[str, str] = Field(
        default_factory=dict, description="Variables exported to jobs using the service"
    )


class JobSpec(BaseModel):
    """A single command to run within a stage."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Job name, unique within the plan")
    stage: str = Field(description="Name of the stage the job belongs to")
    command: str = Field(description="Opaque shell command")
    working_directory: Path = Field(description="Absolute directory the command runs in")
    environment: dict[str, str] = Field(
        default_factory=dict, description="Variables overlaid on the inherited environment"
    )
    allow_failure: bool = Field(default=False, description="Job may fail without failing its stage")
    services: tuple[str, ...] = Field(default=(), description="Declared service dependencies")
    resolved_services: tuple[str, ...] = Field(
        default=(), description="Declared services plus transitive dependencies, dependencies first"
    )
    timeout: Optional[float] = Field(default=None, gt=0, description="Timeout in seconds")


class StageSpec(BaseModel):
    """A named, ordered phase of a pipeline."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Stage name, unique within the plan")
    jobs: tuple[JobSpec, ...] = Field(description="Jobs in declared order")


class PipelinePlan(BaseModel):
    """Immutable, validated representation of a pipeline definition."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="pipeline", description="Pipeline name")
    source: Optional[Path] = Field(default=None, description="Plan file the plan was loaded from")
    stages: tuple[StageSpec, ...] = Field(description="Stages in execution order")
    services: dict[str, ServiceSpec] = Field(default_factory=dict)

    @property
    def job_count(self) -> int:
        """Total number of jobs across all stages."""
        return sum(len(stage.jobs) for stage in self.stages)

    def iter_jobs(self) -> Iterator[JobSpec]:
        """Iterate over jobs in plan order."""
        for stage in self.stages:
            yield from stage.jobs

    def get_stage(self, name: str) -> StageSpec:
        """Look up a stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)


# =============================================================================
# Result Contracts
# =============================================================================


class CapturedOutput(BaseModel):
    """Captured content of one output stream."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(default="")
    total_bytes: int = Field(default=0, description="Bytes the process actually wrote")
    truncated: bool = Field(default=False, description="True when bytes past the cap were dropped")


class JobResult(BaseModel):
    """Outcome of a single job."""

    model_config = ConfigDict(frozen=True)

    stage: str
    job: str
    state: JobState
    allow_failure: bool = False
    exit_code: Optional[int] = None
    stdout: CapturedOutput = Field(default_factory=CapturedOutput)
    stderr: CapturedOutput = Field(default_factory=CapturedOutput)
    duration: float = Field(default=0.0, description="Wall-clock seconds")
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    reason: Optional[FailureReason] = None
    detail: str = Field(default="", description="Explanation for failures without an exit code")
    output_ref: Optional[str] = Field(default=None, description="Where the full captured output lives")

    @property
    def truncated(self) -> bool:
        """True if either stream was truncated."""
        return self.stdout.truncated or self.stderr.truncated

    @property
    def blocks_stage(self) -> bool:
        """True if this result fails its stage under the allow-failure policy."""
        return not self.allow_failure and self.state != JobState.SUCCEEDED


class StageResult(BaseModel):
    """Aggregated results of a stage's jobs."""

    model_config = ConfigDict(frozen=True)

    name: str
    jobs: tuple[JobResult, ...] = ()

    @property
    def failed(self) -> bool:
        """A stage fails if any job without allow_failure did not succeed."""
        return any(result.blocks_stage for result in self.jobs)

    @property
    def skipped(self) -> bool:
        """True when no job of the stage ran."""
        return all(result.state == JobState.SKIPPED for result in self.jobs)

    @property
    def duration(self) -> float:
        """Longest job duration, since jobs run concurrently."""
        return max((result.duration for result in self.jobs), default=0.0)


class PipelineResult(BaseModel):
    """Results of a whole pipeline run, stages in declared order."""

    run_id: str
    plan_name: str
    stages: list[StageResult] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def verdict(self) -> Verdict:
        """Failed if any stage failed or the run was cut short by cancellation."""
        if self.cancelled or any(stage.failed for stage in self.stages):
            return Verdict.FAILED
        return Verdict.SUCCEEDED

    @property
    def duration(self) -> float:
        """Wall-clock seconds for the whole run."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def iter_jobs(self) -> Iterator[JobResult]:
        """Iterate over job results in plan order."""
        for stage in self.stages:
            yield from stage.jobs


# =============================================================================
# Reporter Contracts
# =============================================================================


class JobSummary(BaseModel):
    """Machine-readable line of a run summary."""

    stage: str
    job: str
    state: str = Field(description="Succeeded, Failed, TimedOut or Skipped")
    duration_ms: int
    output_ref: Optional[str] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    allow_failure: bool = False
    truncated: bool = False


class RunSummary(BaseModel):
    """Machine-readable summary of a pipeline run."""

    run_id: str
    plan: str
    verdict: Verdict
    cancelled: bool = False
    duration_ms: int = 0
    jobs: list[JobSummary] = Field(default_factory=list)

    class Config:
        """Pydantic configuration."""

        json_schema_extra = {
            "example": {
                "run_id": "20240101-120000-ab12cd",
                "plan": "web-app",
                "verdict": "Failed",
                "cancelled": False,
                "duration_ms": 1520,
                "jobs": [
                    {
                        "stage": "lint",
                        "job": "style-check",
                        "state": "Failed",
                        "duration_ms": 1500,
                        "output_ref": "20240101-120000-ab12cd/lint/style-check.log",
                        "exit_code": 1,
                        "reason": "exit_code",
                    },
                    {
                        "stage": "test",
                        "job": "unit-test",
                        "state": "Skipped",
                        "duration_ms": 0,
                        "output_ref": "20240101-120000-ab12cd/test/unit-test.log",
                        "reason": "upstream_failed",
                    },
                ],
            }
        }
