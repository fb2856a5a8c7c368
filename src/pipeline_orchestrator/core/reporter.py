"""Run reporting.

Turns a PipelineResult into a machine-readable RunSummary and into
human-readable renderings. Results are always reported in plan order and
skipped jobs are never dropped.
"""

from rich.markup import escape
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from pipeline_orchestrator.core.contracts import (
    JobResult,
    JobState,
    JobSummary,
    PipelinePlan,
    PipelineResult,
    RunSummary,
    Verdict,
)
from pipeline_orchestrator.core.durations import format_duration

STATE_ICONS = {
    JobState.SUCCEEDED: "✓",
    JobState.FAILED: "✗",
    JobState.TIMED_OUT: "⏱",
    JobState.SKIPPED: "-",
}

STATE_STYLES = {
    "Succeeded": "green",
    "Failed": "red",
    "TimedOut": "red",
    "Skipped": "dim",
}

OUTPUT_TAIL_LINES = 20


class RunReporter:
    """Builds summaries and renderings of a single pipeline run."""

    def __init__(self, result: PipelineResult):
        self.result = result

    def summarize(self) -> RunSummary:
        """Flatten the run into a RunSummary, one entry per job in plan order."""
        jobs = [
            JobSummary(
                stage=job.stage,
                job=job.job,
                state=job.state.label,
                duration_ms=int(round(job.duration * 1000)),
                output_ref=job.output_ref,
                exit_code=job.exit_code,
                reason=job.reason.value if job.reason else None,
                allow_failure=job.allow_failure,
                truncated=job.truncated,
            )
            for job in self.result.iter_jobs()
        ]
        return RunSummary(
            run_id=self.result.run_id,
            plan=self.result.plan_name,
            verdict=self.result.verdict,
            cancelled=self.result.cancelled,
            duration_ms=int(round(self.result.duration * 1000)),
            jobs=jobs,
        )

    def to_json(self, indent: int = 2) -> str:
        """Summary as JSON text."""
        return self.summarize().model_dump_json(indent=indent)

    def render_text(self, show_output: bool = False) -> str:
        """Plain-text report grouped by stage.

        Args:
            show_output: Append the tail of stdout/stderr for jobs that did not succeed
        """
        result = self.result
        lines = [
            f"Pipeline {result.plan_name} (run {result.run_id}): "
            f"{result.verdict.value} in {format_duration(result.duration)}",
        ]
        if result.cancelled:
            lines.append("Run was cancelled; unfinished jobs are marked Skipped.")

        name_width = max((len(job.job) for job in result.iter_jobs()), default=0)
        for stage in result.stages:
            if stage.skipped:
                status = "Skipped"
            else:
                status = "Failed" if stage.failed else "Succeeded"
            lines.append("")
            lines.append(f"Stage {stage.name}: {status}")
            for job in stage.jobs:
                lines.append("  " + _job_line(job, name_width))
                if show_output and job.state in (JobState.FAILED, JobState.TIMED_OUT):
                    lines.extend(_output_tail(job))

        return "\n".join(lines)

    def render_table(self) -> Table:
        """Rich table of the run for console output."""
        return render_summary_table(self.summarize())


def render_summary_table(summary: RunSummary) -> Table:
    """Rich table of a RunSummary (live or loaded from artifacts)."""
    style = "green" if summary.verdict == Verdict.SUCCEEDED else "red"
    table = Table(
        title=f"{escape(summary.plan)} [dim]({summary.run_id})[/dim]",
        caption=f"[{style}]{summary.verdict.value}[/{style}] in {format_duration(summary.duration_ms / 1000)}",
    )
    table.add_column("Stage", style="bold")
    table.add_column("Job")
    table.add_column("State")
    table.add_column("Duration", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("Output", style="dim")

    previous_stage = None
    for job in summary.jobs:
        state = Text(job.state, style=STATE_STYLES.get(job.state, ""))
        if job.allow_failure and job.state in ("Failed", "TimedOut"):
            state.append(" (allowed)", style="yellow")
        if job.reason and job.state == "Skipped":
            state.append(f" ({job.reason.replace('_', ' ')})", style="dim")

        table.add_row(
            escape(job.stage) if job.stage != previous_stage else "",
            escape(job.job),
            state,
            format_duration(job.duration_ms / 1000) if job.state != "Skipped" else "",
            str(job.exit_code) if job.exit_code is not None else "",
            Text((job.output_ref or "") + (" (truncated)" if job.truncated else "")),
        )
        previous_stage = job.stage

    return table


def render_plan_tree(plan: PipelinePlan) -> Tree:
    """Rich tree of stages and jobs, in execution order."""
    tree = Tree(f"[bold]{escape(plan.name)}[/bold]")
    for index, stage in enumerate(plan.stages, start=1):
        branch = tree.add(f"[cyan]{index}. {escape(stage.name)}[/cyan]")
        for job in stage.jobs:
            label = f"{escape(job.name)} [dim]$ {escape(job.command.splitlines()[0])}[/dim]"
            if job.allow_failure:
                label += " [yellow](allow failure)[/yellow]"
            if job.timeout:
                label += f" [dim]timeout {format_duration(job.timeout)}[/dim]"
            if job.resolved_services:
                label += f" [magenta]services: {', '.join(job.resolved_services)}[/magenta]"
            branch.add(label)
    return tree


def render_plan_mermaid(plan: PipelinePlan) -> str:
    """Mermaid flowchart of the plan: stages in order, services feeding their jobs."""
    lines = ["flowchart LR"]
    job_ids: dict[str, str] = {}

    for s_index, stage in enumerate(plan.stages):
        lines.append(f'    subgraph stage_{s_index}["{_mermaid_label(stage.name)}"]')
        for j_index, job in enumerate(stage.jobs):
            node_id = f"job_{s_index}_{j_index}"
            job_ids[job.name] = node_id
            label = _mermaid_label(job.name)
            if job.allow_failure:
                lines.append(f'        {node_id}(["{label}"])')
            else:
                lines.append(f'        {node_id}["{label}"]')
        lines.append("    end")

    for s_index in range(1, len(plan.stages)):
        lines.append(f"    stage_{s_index - 1} --> stage_{s_index}")

    service_ids = {name: f"svc_{i}" for i, name in enumerate(plan.services)}
    for name, service in plan.services.items():
        lines.append(f'    {service_ids[name]}[("{_mermaid_label(name)}")]')
        for dep in service.depends_on:
            lines.append(f"    {service_ids[dep]} -.-> {service_ids[name]}")
    for job in plan.iter_jobs():
        for name in job.services:
            lines.append(f"    {service_ids[name]} -.-> {job_ids[job.name]}")

    return "\n".join(lines)


def _mermaid_label(text: str) -> str:
    return text.replace('"', "#quot;")


def _job_line(job: JobResult, name_width: int) -> str:
    parts = [STATE_ICONS[job.state], job.job.ljust(name_width), job.state.label.ljust(9)]
    if job.state != JobState.SKIPPED:
        parts.append(format_duration(job.duration).rjust(7))
    if job.exit_code is not None and job.state != JobState.SUCCEEDED:
        parts.append(f"exit {job.exit_code}")
    if job.allow_failure and job.state in (JobState.FAILED, JobState.TIMED_OUT):
        parts.append("(allowed to fail)")
    if job.detail:
        parts.append(job.detail)
    elif job.state == JobState.SKIPPED and job.reason:
        parts.append(job.reason.value.replace("_", " "))
    if job.truncated:
        parts.append("[output truncated]")
    return " ".join(parts).rstrip()


def _output_tail(job: JobResult) -> list[str]:
    lines = []
    for name, captured in (("stdout", job.stdout), ("stderr", job.stderr)):
        text = captured.text.rstrip()
        if not text:
            continue
        tail = text.splitlines()[-OUTPUT_TAIL_LINES:]
        lines.append(f"    --- {name} ---")
        lines.extend(f"    {line}" for line in tail)
    return lines
