"""Core orchestration: plan loading, scheduling, execution and reporting.

Control flow:
- Loader parses a plan file into an immutable PipelinePlan
- StageScheduler walks the plan stage by stage
- A JobExecutor runs each job of a stage concurrently
- RunReporter turns the PipelineResult into summaries and renderings
"""

from pipeline_orchestrator.core.artifacts import ArtifactManager
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import (
    FailureReason,
    JobResult,
    JobSpec,
    JobState,
    PipelinePlan,
    PipelineResult,
    RunSummary,
    StageResult,
    StageSpec,
    Verdict,
)
from pipeline_orchestrator.core.errors import DefinitionError, ExecutionError, OrchestratorError
from pipeline_orchestrator.core.executor import JobExecutor, LocalProcessExecutor
from pipeline_orchestrator.core.loader import build_plan, load_plan, load_plan_text
from pipeline_orchestrator.core.reporter import RunReporter
from pipeline_orchestrator.core.scheduler import SchedulerListener, StageScheduler, run_pipeline

__all__ = [
    "ArtifactManager",
    "CancellationToken",
    "DefinitionError",
    "ExecutionError",
    "FailureReason",
    "JobExecutor",
    "JobResult",
    "JobSpec",
    "JobState",
    "LocalProcessExecutor",
    "OrchestratorError",
    "PipelinePlan",
    "PipelineResult",
    "RunReporter",
    "RunSummary",
    "SchedulerListener",
    "StageResult",
    "StageScheduler",
    "StageSpec",
    "Verdict",
    "build_plan",
    "load_plan",
    "load_plan_text",
    "run_pipeline",
]
