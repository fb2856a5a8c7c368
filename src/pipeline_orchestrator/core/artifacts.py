"""Artifact persistence for pipeline runs.

Each run gets its own directory under the artifacts root:

    <root>/<run_id>/<stage>/<job>.log   captured stdout/stderr of a job
    <root>/<run_id>/summary.yaml        machine-readable run summary

The ``output_ref`` recorded for a job is its log path relative to the root.
"""

import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from pipeline_orchestrator.core.contracts import JobResult, RunSummary

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(name: str) -> str:
    """Make a stage/job name usable as a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    return cleaned or "_"


def unique_name(name: str) -> str:
    """Like safe_name, but distinct names never map to the same component.

    A name that had to be rewritten gets a short digest of the original
    appended, so "x y" and "x_y" do not share a log file.
    """
    cleaned = safe_name(name)
    if cleaned == name:
        return cleaned
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}-{digest}"


def output_ref_for(run_id: str, stage: str, job: str) -> str:
    """Relative reference of a job's log within the artifacts root."""
    return f"{safe_name(run_id)}/{unique_name(stage)}/{unique_name(job)}.log"


class ArtifactManager:
    """Manages run artifact persistence on the local file system."""

    def __init__(self, root: Path):
        """Initialize the artifact manager.

        Args:
            root: Directory holding one sub-directory per run
        """
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def get_run_dir(self, run_id: str) -> Path:
        """Get the directory for a specific run's artifacts."""
        return self._root / safe_name(run_id)

    def ensure_run_dir(self, run_id: str) -> Path:
        """Create and return the run artifacts directory."""
        run_dir = self.get_run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def resolve(self, output_ref: str) -> Path:
        """Turn an output reference back into a path."""
        return self._root / output_ref

    def save_job_output(self, run_id: str, result: JobResult) -> str:
        """Write a job's captured output to its log file.

        Args:
            run_id: Run the job belongs to
            result: Finished (not skipped) job result

        Returns:
            The output reference of the written log
        """
        ref = output_ref_for(run_id, result.stage, result.job)
        path = self.resolve(ref)
        path.parent.mkdir(parents=True, exist_ok=True)

        lines = [
            f"# Job: {result.stage}/{result.job}",
            f"# State: {result.state.label}",
            f"# Exit code: {result.exit_code if result.exit_code is not None else 'n/a'}",
            f"# Duration: {result.duration:.3f}s",
        ]
        if result.reason:
            lines.append(f"# Reason: {result.reason.value}")
        if result.detail:
            lines.append(f"# Detail: {result.detail}")
        lines.extend([
            "",
            f"--- stdout ({result.stdout.total_bytes} bytes) ---",
            result.stdout.text,
            f"--- stderr ({result.stderr.total_bytes} bytes) ---",
            result.stderr.text,
        ])

        path.write_text("\n".join(lines), encoding="utf-8")
        return ref

    def save_summary(self, summary: RunSummary) -> Path:
        """Save a run summary as summary.yaml.

        Args:
            summary: RunSummary from the reporter

        Returns:
            Path to the saved file
        """
        run_dir = self.ensure_run_dir(summary.run_id)
        file_path = run_dir / "summary.yaml"

        data = summary.model_dump(mode="json")
        data["generated"] = datetime.now().isoformat(timespec="seconds")

        self._write_yaml(file_path, data, header=f"# Pipeline run: {summary.run_id} ({summary.plan})")
        return file_path

    def load_summary(self, run_id: str) -> RunSummary:
        """Load a previously saved run summary.

        Raises:
            FileNotFoundError: If the run has no summary
        """
        data = self._read_yaml(self.get_run_dir(run_id) / "summary.yaml")
        data.pop("generated", None)
        return RunSummary.model_validate(data)

    def list_runs(self) -> list[str]:
        """Run ids that have a saved summary, oldest first."""
        if not self._root.is_dir():
            return []
        runs = [p.parent for p in self._root.glob("*/summary.yaml")]
        runs.sort(key=lambda p: p.stat().st_mtime)
        return [p.name for p in runs]

    def _write_yaml(self, path: Path, data: dict[str, Any], header: str = "") -> None:
        """Write data to YAML file with optional header comment."""
        content = ""
        if header:
            content = header + "\n\n"

        yaml_content = yaml.safe_dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=120,
        )
        content += yaml_content
        path.write_text(content, encoding="utf-8")

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        """Read YAML file and return data."""
        content = path.read_text(encoding="utf-8")
        return yaml.safe_load(content) or {}
