"""Main entry point for the Pipeline Orchestrator CLI."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from pipeline_orchestrator import __version__
from pipeline_orchestrator.config import Settings, get_settings
from pipeline_orchestrator.core.artifacts import ArtifactManager
from pipeline_orchestrator.core.cancellation import CancellationToken
from pipeline_orchestrator.core.contracts import (
    JobResult,
    JobSpec,
    JobState,
    PipelinePlan,
    StageResult,
    StageSpec,
    Verdict,
)
from pipeline_orchestrator.core.durations import format_duration
from pipeline_orchestrator.core.errors import DefinitionError
from pipeline_orchestrator.core.executor import LocalProcessExecutor
from pipeline_orchestrator.core.loader import load_plan
from pipeline_orchestrator.core.reporter import (
    RunReporter,
    render_plan_mermaid,
    render_plan_tree,
    render_summary_table,
)
from pipeline_orchestrator.core.scheduler import SchedulerListener, StageScheduler

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_INVALID_PLAN = 2
EXIT_INTERRUPTED = 130

console = Console()
err_console = Console(stderr=True)

PLAN_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


def configure_logging(level: str) -> None:
    """Send log records to stderr at the configured level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def print_banner(plan: PipelinePlan, settings: Settings, out: Console) -> None:
    """Print the run banner."""
    banner = Text()
    banner.append(plan.name, style="bold blue")
    banner.append(f"  {len(plan.stages)} stages, {plan.job_count} jobs\n", style="dim")
    banner.append(" → ".join(stage.name for stage in plan.stages), style="italic")
    banner.append(f"\nParallelism: {settings.parallelism_label}", style="dim")

    out.print(Panel(banner, title=f"[bold]pipeline-orchestrator[/bold] v{__version__}", border_style="blue"))


def load_or_exit(plan_file: Path, settings: Settings) -> PipelinePlan:
    """Load a plan, printing the violation and exiting on DefinitionError."""
    try:
        return load_plan(plan_file, settings=settings)
    except DefinitionError as e:
        err_console.print(f"[red]Invalid pipeline definition:[/red] {escape(str(e))}")
        sys.exit(EXIT_INVALID_PLAN)


class ConsoleListener(SchedulerListener):
    """Prints live progress as stages and jobs start and finish."""

    def __init__(self, out: Console):
        self.out = out

    def stage_started(self, stage: StageSpec) -> None:
        self.out.print(f"\n[bold cyan]▶ {escape(stage.name)}[/bold cyan] [dim]({len(stage.jobs)} jobs)[/dim]")

    def job_started(self, job: JobSpec) -> None:
        self.out.print(f"  [dim]… {escape(job.name)}[/dim]")

    def job_finished(self, result: JobResult) -> None:
        if result.state == JobState.SKIPPED:
            return
        if result.state == JobState.SUCCEEDED:
            mark = "[green]✓[/green]"
        elif result.allow_failure:
            mark = "[yellow]![/yellow]"
        else:
            mark = "[red]✗[/red]"
        line = f"  {mark} {escape(result.job)} [dim]{format_duration(result.duration)}[/dim]"
        if result.state != JobState.SUCCEEDED:
            line += f" [red]{result.state.label}[/red]"
            if result.detail:
                line += f" [dim]{escape(result.detail)}[/dim]"
            elif result.exit_code is not None:
                line += f" [dim]exit {result.exit_code}[/dim]"
        self.out.print(line)

    def stage_finished(self, result: StageResult) -> None:
        if result.skipped:
            self.out.print(f"\n[dim]- {escape(result.name)} skipped[/dim]")


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Pipeline Orchestrator - run staged CI pipelines locally."""
    pass


@cli.command()
@click.argument("plan_file", type=PLAN_FILE)
@click.option(
    "--cancel-on-signal",
    is_flag=True,
    help="Treat SIGINT/SIGTERM as cancellation and still report the run",
)
@click.option("--output", "-o", type=click.Choice(["text", "json"]), default="text")
@click.option(
    "--artifacts-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Where job logs and run summaries are written",
)
@click.option("--no-artifacts", is_flag=True, help="Do not write job logs or summaries")
@click.option("--show-output", is_flag=True, help="Print output of failed jobs")
@click.option("--max-parallel", type=click.IntRange(min=1), help="Max concurrent jobs per stage")
def run(
    plan_file: Path,
    cancel_on_signal: bool,
    output: str,
    artifacts_dir: Optional[Path],
    no_artifacts: bool,
    show_output: bool,
    max_parallel: Optional[int],
) -> None:
    """Run a pipeline plan. Exits 0 if it succeeds, 1 if it fails."""
    settings = get_settings()
    overrides: dict = {}
    if artifacts_dir is not None:
        overrides["artifacts_dir"] = artifacts_dir
    if no_artifacts:
        overrides["persist_artifacts"] = False
    if max_parallel is not None:
        overrides["max_parallel_jobs"] = max_parallel
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level)
    plan = load_or_exit(plan_file, settings)

    # Keep stdout clean for machine-readable output
    progress = err_console if output == "json" else console
    print_banner(plan, settings, progress)

    artifacts = ArtifactManager(settings.artifacts_dir) if settings.persist_artifacts else None
    scheduler = StageScheduler(
        LocalProcessExecutor(settings),
        settings=settings,
        listener=ConsoleListener(progress),
        artifacts=artifacts,
    )

    async def run_session():
        token = CancellationToken()
        if cancel_on_signal:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        return await scheduler.run(plan, token=token)

    try:
        result = asyncio.run(run_session())
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Run interrupted; running jobs were terminated.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)

    reporter = RunReporter(result)
    summary = reporter.summarize()

    if artifacts is not None:
        try:
            summary_path = artifacts.save_summary(summary)
            progress.print(f"[dim]Artifacts: {escape(str(summary_path.parent))}[/dim]")
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to save run summary: {e}")

    if output == "json":
        click.echo(reporter.to_json())
    else:
        console.print()
        console.print(reporter.render_table())
        if show_output:
            failures = [
                job for job in result.iter_jobs()
                if job.state in (JobState.FAILED, JobState.TIMED_OUT)
            ]
            for job in failures:
                body = (job.stderr.text or job.stdout.text or job.detail or "(no output)").rstrip()
                console.print(Panel(
                    escape(body[-4000:]),
                    title=f"{escape(job.stage)}/{escape(job.job)} [red]{job.state.label}[/red]",
                    border_style="red",
                ))
        if result.cancelled:
            console.print("[yellow]Run was cancelled; unfinished jobs are marked Skipped.[/yellow]")

    sys.exit(EXIT_SUCCEEDED if result.verdict == Verdict.SUCCEEDED else EXIT_FAILED)


@cli.command()
@click.argument("plan_file", type=PLAN_FILE)
def validate(plan_file: Path) -> None:
    """Validate a plan file and show its stages and jobs."""
    settings = get_settings()
    configure_logging(settings.log_level)
    plan = load_or_exit(plan_file, settings)

    console.print(render_plan_tree(plan))
    console.print(
        f"[green]Plan is valid:[/green] {len(plan.stages)} stages, {plan.job_count} jobs"
    )


@cli.command()
@click.argument("plan_file", type=PLAN_FILE)
def graph(plan_file: Path) -> None:
    """Print a Mermaid diagram of the plan."""
    settings = get_settings()
    plan = load_or_exit(plan_file, settings)
    click.echo(render_plan_mermaid(plan))


@cli.command()
@click.argument("run_id", required=False)
@click.option(
    "--artifacts-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Where run summaries were written",
)
@click.option("--output", "-o", type=click.Choice(["text", "json"]), default="text")
def report(run_id: Optional[str], artifacts_dir: Optional[Path], output: str) -> None:
    """Show the saved summary of a run (the latest run by default)."""
    settings = get_settings()
    artifacts = ArtifactManager(artifacts_dir or settings.artifacts_dir)

    if run_id is None:
        runs = artifacts.list_runs()
        if not runs:
            err_console.print(f"[red]No runs found in {escape(str(artifacts.root))}[/red]")
            sys.exit(EXIT_FAILED)
        run_id = runs[-1]

    try:
        summary = artifacts.load_summary(run_id)
    except FileNotFoundError:
        err_console.print(f"[red]No summary for run {escape(run_id)}[/red]")
        sys.exit(EXIT_FAILED)

    if output == "json":
        click.echo(summary.model_dump_json(indent=2))
    else:
        console.print(render_summary_table(summary))


@cli.command()
def status() -> None:
    """Show the effective orchestrator settings."""
    settings = get_settings()
    timeout = format_duration(settings.default_timeout) if settings.default_timeout else "none"

    console.print(Panel.fit(
        f"""[bold]Shell:[/bold] {settings.shell}
[bold]Default timeout:[/bold] {timeout}
[bold]Kill grace period:[/bold] {settings.kill_grace_period:g}s
[bold]Parallelism:[/bold] {settings.parallelism_label}
[bold]Output limit:[/bold] {settings.output_limit_bytes} bytes per stream
[bold]Artifacts:[/bold] {escape(str(settings.artifacts_dir)) if settings.persist_artifacts else 'Disabled'}
[bold]Log level:[/bold] {settings.log_level}
""",
        title="Orchestrator Settings",
        border_style="green",
    ))


if __name__ == "__main__":
    cli()
