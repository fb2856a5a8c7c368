"""Shared test fixtures for pipeline-orchestrator."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from pipeline_orchestrator.config import Settings, get_settings
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import (
    FailureReason,
    JobResult,
    JobSpec,
    JobState,
    PipelinePlan,
    StageResult,
    StageSpec,
)
from pipeline_orchestrator.core.executor import JobExecutor
from pipeline_orchestrator.core.loader import build_plan
from pipeline_orchestrator.core.scheduler import SchedulerListener


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path, monkeypatch):
    """Keep artifacts out of the working tree and make process shutdown fast."""
    monkeypatch.setenv("PIPELINE_ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("PIPELINE_KILL_GRACE_PERIOD", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        artifacts_dir=tmp_path / "artifacts",
        kill_grace_period=1,
        persist_artifacts=False,
    )


@pytest.fixture
def write_plan(tmp_path) -> Callable[..., Path]:
    """Write a YAML plan into tmp_path and return its path."""

    def _write(text: str, name: str = "pipeline.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(text))
        return path

    return _write


@pytest.fixture
def make_plan(tmp_path, settings) -> Callable[[dict[str, Any]], PipelinePlan]:
    """Build a plan from a dict, resolving directories against tmp_path."""

    def _make(data: dict[str, Any]) -> PipelinePlan:
        return build_plan(data, base_dir=tmp_path, settings=settings)

    return _make


class RecordingListener(SchedulerListener):
    """Records scheduler events in the order they happen."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def stage_started(self, stage: StageSpec) -> None:
        self.events.append(("stage_started", stage.name))

    def job_started(self, job: JobSpec) -> None:
        self.events.append(("job_started", job.name))

    def job_finished(self, result: JobResult) -> None:
        self.events.append(("job_finished", result.job))

    def stage_finished(self, result: StageResult) -> None:
        self.events.append(("stage_finished", result.name))

    def names(self, kind: str) -> list[str]:
        return [name for event, name in self.events if event == kind]


class FakeExecutor(JobExecutor):
    """Executor returning scripted outcomes without spawning processes.

    ``outcomes`` maps job name to a JobState (default SUCCEEDED).
    """

    def __init__(self, outcomes: dict[str, JobState] | None = None):
        self.outcomes = outcomes or {}
        self.executed: list[str] = []

    async def execute(self, job: JobSpec, token: CancellationToken, run_id: str) -> JobResult:
        self.executed.append(job.name)
        state = self.outcomes.get(job.name, JobState.SUCCEEDED)
        reason = {
            JobState.FAILED: FailureReason.EXIT_CODE,
            JobState.TIMED_OUT: FailureReason.TIMEOUT,
        }.get(state)
        return JobResult(
            stage=job.stage,
            job=job.name,
            state=state,
            allow_failure=job.allow_failure,
            exit_code=1 if state == JobState.FAILED else 0 if state == JobState.SUCCEEDED else None,
            duration=0.01,
            reason=reason,
        )


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()
