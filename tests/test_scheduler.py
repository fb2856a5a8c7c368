"""Tests for stage scheduling, failure policy and cancellation."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeExecutor, RecordingListener

from pipeline_orchestrator.config import Settings
from pipeline_orchestrator.core.artifacts import ArtifactManager
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import FailureReason, JobState, Verdict
from pipeline_orchestrator.core.executor import LocalProcessExecutor
from pipeline_orchestrator.core.scheduler import StageScheduler, run_pipeline


def states(result) -> dict[str, JobState]:
    return {job.job: job.state for job in result.iter_jobs()}


class TestStagePolicy:
    """Policy checks using a scripted executor (no processes)."""

    async def test_all_jobs_succeed(self, make_plan, settings):
        plan = make_plan({
            "stages": ["build", "test", "deploy"],
            "jobs": {
                "compile": {"stage": "build", "command": "true"},
                "unit": {"stage": "test", "command": "true"},
                "lint": {"stage": "test", "command": "true"},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })

        result = await StageScheduler(FakeExecutor(), settings=settings).run(plan)

        assert result.verdict == Verdict.SUCCEEDED
        assert all(state == JobState.SUCCEEDED for state in states(result).values())
        assert [stage.name for stage in result.stages] == ["build", "test", "deploy"]
        assert result.cancelled is False
        assert result.finished_at is not None

    async def test_failed_stage_skips_later_stages(self, make_plan, settings):
        plan = make_plan({
            "stages": ["lint", "test", "deploy"],
            "jobs": {
                "style-check": {"stage": "lint", "command": "exit 1"},
                "unit-test": {"stage": "test", "command": "true"},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })
        executor = FakeExecutor({"style-check": JobState.FAILED})

        result = await StageScheduler(executor, settings=settings).run(plan)

        assert result.stages[0].failed is True
        assert states(result) == {
            "style-check": JobState.FAILED,
            "unit-test": JobState.SKIPPED,
            "ship": JobState.SKIPPED,
        }
        skipped = [job for job in result.iter_jobs() if job.state == JobState.SKIPPED]
        assert all(job.reason == FailureReason.UPSTREAM_FAILED for job in skipped)
        assert executor.executed == ["style-check"]
        assert result.verdict == Verdict.FAILED

    async def test_failing_stage_still_waits_for_siblings(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test", "deploy"],
            "jobs": {
                "broken": {"stage": "test", "command": "exit 1"},
                "healthy": {"stage": "test", "command": "true"},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })
        executor = FakeExecutor({"broken": JobState.FAILED})

        result = await StageScheduler(executor, settings=settings).run(plan)

        assert states(result)["healthy"] == JobState.SUCCEEDED
        assert states(result)["ship"] == JobState.SKIPPED

    async def test_allowed_failure_does_not_fail_stage(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test", "deploy"],
            "jobs": {
                "flaky": {"stage": "test", "command": "exit 1", "allow_failure": True},
                "unit": {"stage": "test", "command": "true"},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })
        executor = FakeExecutor({"flaky": JobState.FAILED})

        result = await StageScheduler(executor, settings=settings).run(plan)

        assert result.stages[0].failed is False
        assert states(result) == {
            "flaky": JobState.FAILED,
            "unit": JobState.SUCCEEDED,
            "ship": JobState.SUCCEEDED,
        }
        assert result.verdict == Verdict.SUCCEEDED

    async def test_timeout_fails_stage_like_failure(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test", "deploy"],
            "jobs": {
                "slow": {"stage": "test", "command": "sleep 60"},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })
        executor = FakeExecutor({"slow": JobState.TIMED_OUT})

        result = await StageScheduler(executor, settings=settings).run(plan)

        assert states(result) == {"slow": JobState.TIMED_OUT, "ship": JobState.SKIPPED}
        assert result.verdict == Verdict.FAILED

    async def test_results_keep_declared_order(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test"],
            "jobs": {name: {"stage": "test", "command": "true"} for name in ["c", "a", "b"]},
        })

        result = await StageScheduler(FakeExecutor(), settings=settings).run(plan)

        assert [job.job for job in result.stages[0].jobs] == ["c", "a", "b"]

    async def test_executor_crash_is_recorded(self, make_plan, settings):
        class CrashingExecutor(FakeExecutor):
            async def execute(self, job, token, run_id):
                raise RuntimeError("backend unavailable")

        plan = make_plan({"stages": ["test"], "jobs": {"unit": {"stage": "test", "command": "true"}}})

        result = await StageScheduler(CrashingExecutor(), settings=settings).run(plan)

        job = result.stages[0].jobs[0]
        assert job.state == JobState.FAILED
        assert job.reason == FailureReason.LAUNCH_FAILED
        assert "backend unavailable" in job.detail

    async def test_listener_errors_do_not_break_run(self, make_plan, settings):
        class BrokenListener(RecordingListener):
            def job_finished(self, result):
                raise ValueError("listener bug")

        plan = make_plan({"stages": ["test"], "jobs": {"unit": {"stage": "test", "command": "true"}}})

        result = await StageScheduler(
            FakeExecutor(), settings=settings, listener=BrokenListener()
        ).run(plan)

        assert result.verdict == Verdict.SUCCEEDED

    async def test_skipped_stage_reports_only_finished_events(self, make_plan, settings, listener):
        plan = make_plan({
            "stages": ["lint", "test"],
            "jobs": {
                "style": {"stage": "lint", "command": "exit 1"},
                "unit": {"stage": "test", "command": "true"},
            },
        })

        await StageScheduler(
            FakeExecutor({"style": JobState.FAILED}), settings=settings, listener=listener
        ).run(plan)

        assert listener.events == [
            ("stage_started", "lint"),
            ("job_started", "style"),
            ("job_finished", "style"),
            ("stage_finished", "lint"),
            ("job_finished", "unit"),
            ("stage_finished", "test"),
        ]

    async def test_output_refs_assigned_to_every_job(self, make_plan, settings):
        plan = make_plan({
            "stages": ["lint", "test"],
            "jobs": {
                "style": {"stage": "lint", "command": "exit 1"},
                "unit": {"stage": "test", "command": "true"},
            },
        })

        result = await StageScheduler(
            FakeExecutor({"style": JobState.FAILED}), settings=settings
        ).run(plan, run_id="run-7")

        refs = {job.job: job.output_ref for job in result.iter_jobs()}
        assert refs == {"style": "run-7/lint/style.log", "unit": "run-7/test/unit.log"}


class TestProcessScheduling:
    """End-to-end scheduling with real shell commands."""

    async def test_stages_run_in_order(self, make_plan, settings, listener):
        plan = make_plan({
            "stages": ["first", "second"],
            "jobs": {
                "a1": {"stage": "first", "command": "sleep 0.2"},
                "a2": {"stage": "first", "command": "sleep 0.4"},
                "b1": {"stage": "second", "command": "true"},
                "b2": {"stage": "second", "command": "true"},
            },
        })

        result = await StageScheduler(
            LocalProcessExecutor(settings), settings=settings, listener=listener
        ).run(plan)

        assert result.verdict == Verdict.SUCCEEDED
        events = listener.events
        last_first_finish = max(events.index(("job_finished", name)) for name in ["a1", "a2"])
        first_second_start = min(events.index(("job_started", name)) for name in ["b1", "b2"])
        assert last_first_finish < first_second_start

        first = {job.job: job for job in result.stages[0].jobs}
        second = {job.job: job for job in result.stages[1].jobs}
        latest_first_end = max(job.finished_at for job in first.values())
        assert all(job.started_at >= latest_first_end for job in second.values())

    async def test_jobs_in_a_stage_run_concurrently(self, make_plan, settings, tmp_path):
        # Each job waits for the other to have started; sequential execution would time out
        wait_for = "touch {me}; while [ ! -f {other} ]; do sleep 0.05; done"
        plan = make_plan({
            "stages": ["test"],
            "jobs": {
                "left": {
                    "stage": "test",
                    "command": wait_for.format(me="left.started", other="right.started"),
                    "timeout": 10,
                },
                "right": {
                    "stage": "test",
                    "command": wait_for.format(me="right.started", other="left.started"),
                    "timeout": 10,
                },
            },
        })

        result = await StageScheduler(LocalProcessExecutor(settings), settings=settings).run(plan)

        assert states(result) == {"left": JobState.SUCCEEDED, "right": JobState.SUCCEEDED}

    async def test_lint_failure_example(self, make_plan, settings, tmp_path):
        marker = tmp_path / "tests-ran"
        plan = make_plan({
            "stages": ["lint", "test"],
            "jobs": {
                "style-check": {"stage": "lint", "command": "exit 1"},
                "unit-test": {"stage": "test", "command": f"touch {marker}"},
            },
        })

        result = await StageScheduler(LocalProcessExecutor(settings), settings=settings).run(plan)

        assert result.stages[0].failed is True
        assert states(result) == {"style-check": JobState.FAILED, "unit-test": JobState.SKIPPED}
        assert result.verdict == Verdict.FAILED
        assert not marker.exists()

    async def test_real_timeout_fails_pipeline(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test", "deploy"],
            "jobs": {
                "hang": {"stage": "test", "command": "sleep 30", "timeout": 0.3},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })

        result = await StageScheduler(LocalProcessExecutor(settings), settings=settings).run(plan)

        assert states(result) == {"hang": JobState.TIMED_OUT, "ship": JobState.SKIPPED}
        assert result.verdict == Verdict.FAILED

    async def test_bounded_parallelism(self, make_plan, tmp_path):
        settings = Settings(max_parallel_jobs=1, kill_grace_period=1, persist_artifacts=False)
        plan = make_plan({
            "stages": ["test"],
            "jobs": {
                "one": {"stage": "test", "command": "mkdir lock && sleep 0.2 && rmdir lock"},
                "two": {"stage": "test", "command": "mkdir lock && sleep 0.2 && rmdir lock"},
            },
        })

        result = await StageScheduler(LocalProcessExecutor(settings), settings=settings).run(plan)

        assert states(result) == {"one": JobState.SUCCEEDED, "two": JobState.SUCCEEDED}

    async def test_artifacts_written_for_finished_jobs(self, make_plan, settings, tmp_path):
        artifacts = ArtifactManager(tmp_path / "artifacts")
        plan = make_plan({
            "stages": ["lint", "test"],
            "jobs": {
                "style": {"stage": "lint", "command": "echo bad style >&2; exit 1"},
                "unit": {"stage": "test", "command": "true"},
            },
        })

        result = await StageScheduler(
            LocalProcessExecutor(settings), settings=settings, artifacts=artifacts
        ).run(plan, run_id="run-1")

        style, unit = list(result.iter_jobs())
        log = artifacts.resolve(style.output_ref).read_text()
        assert "bad style" in log
        assert "# State: Failed" in log
        assert unit.output_ref == "run-1/test/unit.log"
        assert not artifacts.resolve(unit.output_ref).exists()

    async def test_jobs_with_similar_names_keep_separate_logs(self, make_plan, settings, tmp_path):
        artifacts = ArtifactManager(tmp_path / "artifacts")
        plan = make_plan({
            "stages": ["a"],
            "jobs": {
                "x y": {"stage": "a", "command": "echo from-space; exit 1"},
                "x_y": {"stage": "a", "command": "echo from-underscore; exit 1"},
            },
        })

        result = await StageScheduler(
            LocalProcessExecutor(settings), settings=settings, artifacts=artifacts
        ).run(plan, run_id="run-1")

        spaced, underscored = list(result.iter_jobs())
        assert spaced.output_ref != underscored.output_ref
        assert "from-space" in artifacts.resolve(spaced.output_ref).read_text()
        assert "from-underscore" in artifacts.resolve(underscored.output_ref).read_text()

    @pytest.mark.parametrize("script", [
        ["false", "true"],
        ["echo first", "exit 3", "echo never-printed"],
    ])
    async def test_failing_script_line_fails_the_job(self, make_plan, settings, script):
        plan = make_plan({
            "stages": ["test", "deploy"],
            "jobs": {
                "unit": {"stage": "test", "script": script},
                "ship": {"stage": "deploy", "command": "true"},
            },
        })

        result = await StageScheduler(LocalProcessExecutor(settings), settings=settings).run(plan)

        assert states(result) == {"unit": JobState.FAILED, "ship": JobState.SKIPPED}
        assert result.verdict == Verdict.FAILED
        assert "never-printed" not in result.stages[0].jobs[0].stdout.text

    def test_failing_script_line_through_run_pipeline(self, make_plan, settings):
        plan = make_plan({
            "stages": ["test"],
            "jobs": {"unit": {"stage": "test", "script": ["false", "true"]}},
        })

        result = run_pipeline(plan, settings=settings)

        assert states(result) == {"unit": JobState.FAILED}
        assert result.verdict == Verdict.FAILED


class TestCancellation:
    async def test_cancel_mid_run(self, make_plan, settings, tmp_path, listener):
        marker = tmp_path / "deployed"
        plan = make_plan({
            "stages": ["build", "test", "deploy"],
            "jobs": {
                "compile": {"stage": "build", "command": "true"},
                "slow-test": {"stage": "test", "command": "sleep 30"},
                "ship": {"stage": "deploy", "command": f"touch {marker}"},
            },
        })
        token = CancellationToken()
        asyncio.get_running_loop().call_later(1.0, token.cancel, "operator abort")

        result = await StageScheduler(
            LocalProcessExecutor(settings), settings=settings, listener=listener
        ).run(plan, token=token)

        by_name = {job.job: job for job in result.iter_jobs()}
        assert by_name["compile"].state == JobState.SUCCEEDED
        assert by_name["slow-test"].state == JobState.FAILED
        assert by_name["slow-test"].reason == FailureReason.CANCELLED
        assert by_name["ship"].state == JobState.SKIPPED
        assert by_name["ship"].reason == FailureReason.CANCELLED
        assert "ship" not in listener.names("job_started")
        assert not marker.exists()
        assert result.cancelled is True
        assert result.verdict == Verdict.FAILED
        assert [stage.name for stage in result.stages] == ["build", "test", "deploy"]

    async def test_unstarted_jobs_in_current_stage_are_skipped(self, make_plan, tmp_path, listener):
        settings = Settings(max_parallel_jobs=1, kill_grace_period=1, persist_artifacts=False)
        plan = make_plan({
            "stages": ["test"],
            "jobs": {
                "first": {"stage": "test", "command": "sleep 30"},
                "second": {"stage": "test", "command": "true"},
            },
        })
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.5, token.cancel)

        result = await StageScheduler(
            LocalProcessExecutor(settings), settings=settings, listener=listener
        ).run(plan, token=token)

        assert states(result) == {"first": JobState.FAILED, "second": JobState.SKIPPED}
        assert listener.names("job_started") == ["first"]

    async def test_cancel_before_start_skips_everything(self, make_plan, settings):
        plan = make_plan({
            "stages": ["build", "test"],
            "jobs": {
                "compile": {"stage": "build", "command": "true"},
                "unit": {"stage": "test", "command": "true"},
            },
        })
        token = CancellationToken()
        token.cancel()
        executor = FakeExecutor()

        result = await StageScheduler(executor, settings=settings).run(plan, token=token)

        assert executor.executed == []
        assert states(result) == {"compile": JobState.SKIPPED, "unit": JobState.SKIPPED}
        assert result.cancelled is True
        assert result.verdict == Verdict.FAILED


class TestRunPipeline:
    def test_sync_wrapper_round_trip(self, make_plan, settings):
        plan = make_plan({
            "stages": ["build", "test"],
            "jobs": {
                "compile": {"stage": "build", "command": "true"},
                "unit": {"stage": "test", "command": "echo ok"},
            },
        })

        result = run_pipeline(plan, settings=settings, run_id="sync-run")

        assert result.run_id == "sync-run"
        assert result.verdict == Verdict.SUCCEEDED
        assert all(state == JobState.SUCCEEDED for state in states(result).values())

    @pytest.mark.parametrize("failing, verdict", [
        (None, Verdict.SUCCEEDED),
        ("unit", Verdict.FAILED),
    ])
    def test_sync_wrapper_with_custom_executor(self, make_plan, settings, failing, verdict):
        plan = make_plan({
            "stages": ["test"],
            "jobs": {"unit": {"stage": "test", "command": "true"}},
        })
        outcomes = {failing: JobState.FAILED} if failing else {}

        result = run_pipeline(plan, executor=FakeExecutor(outcomes), settings=settings)

        assert result.verdict == verdict
