"""Pipeline definition loader.

Parses a GitLab-CI flavoured YAML document into an immutable PipelinePlan,
validating every plan invariant up front so that no job runs for an
invalid definition.
"""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from pipeline_orchestrator.config import Settings, get_settings
from pipeline_orchestrator.core.contracts import (
    JobSpec,
    PipelinePlan,
    ServiceSpec,
    StageSpec,
)
from pipeline_orchestrator.core.durations import parse_duration
from pipeline_orchestrator.core.errors import DefinitionError

logger = logging.getLogger(__name__)

RESERVED_KEYS = {"name", "stages", "variables", "default", "services", "jobs"}
JOB_KEYS = {
    "stage",
    "command",
    "script",
    "environment",
    "variables",
    "allow_failure",
    "timeout",
    "working_directory",
    "cwd",
    "services",
}
DEFAULT_KEYS = {"timeout", "working_directory", "cwd"}
SERVICE_KEYS = {"image", "depends_on", "environment", "variables"}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, (list, dict)):
                # unhashable; the base constructor reports it
                continue
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_plan(path: Path, settings: Optional[Settings] = None) -> PipelinePlan:
    """Load and validate a plan file.

    Args:
        path: Path to the YAML plan
        settings: Orchestrator settings (defaults to the cached settings)

    Returns:
        The validated PipelinePlan

    Raises:
        DefinitionError: If the file cannot be read or the plan is invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read plan file {path}: {e.strerror or e}") from e

    return load_plan_text(text, base_dir=path.resolve().parent, settings=settings, source=path)


def load_plan_text(
    text: str,
    base_dir: Path,
    settings: Optional[Settings] = None,
    source: Optional[Path] = None,
) -> PipelinePlan:
    """Parse YAML text and build a plan from it."""
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        where = f" at line {mark.line + 1}" if mark else ""
        raise DefinitionError(f"invalid YAML{where}: {e.problem or e}") from e
    except yaml.YAMLError as e:
        raise DefinitionError(f"invalid YAML: {e}") from e

    return build_plan(data, base_dir=base_dir, settings=settings, source=source)


def build_plan(
    data: Any,
    base_dir: Path,
    settings: Optional[Settings] = None,
    source: Optional[Path] = None,
) -> PipelinePlan:
    """Validate a parsed plan document and build the PipelinePlan."""
    settings = settings or get_settings()
    base_dir = Path(base_dir)

    if not isinstance(data, dict):
        raise DefinitionError("plan must be a mapping with a 'stages' list")

    stage_names = _parse_stages(data.get("stages"))
    variables = _parse_environment(data.get("variables"), what="plan variables")
    defaults = _parse_defaults(data.get("default"))
    services = _parse_services(data.get("services"))
    _check_service_cycles(services)

    default_timeout = defaults.get("timeout", settings.default_timeout)
    default_cwd = defaults.get("working_directory", ".")

    jobs_by_stage: dict[str, list[JobSpec]] = {name: [] for name in stage_names}
    for job_name, raw in _collect_raw_jobs(data):
        job = _build_job(
            job_name,
            raw,
            stage_names=stage_names,
            services=services,
            variables=variables,
            default_timeout=default_timeout,
            default_cwd=default_cwd,
            base_dir=base_dir,
        )
        jobs_by_stage[job.stage].append(job)

    stages = []
    for name in stage_names:
        if not jobs_by_stage[name]:
            raise DefinitionError("empty stage: no jobs declared", stage=name)
        stages.append(StageSpec(name=name, jobs=tuple(jobs_by_stage[name])))

    plan_name = data.get("name") or (source.stem if source else "pipeline")
    if not isinstance(plan_name, str):
        raise DefinitionError("'name' must be a string")

    plan = PipelinePlan(name=plan_name, source=source, stages=tuple(stages), services=services)
    logger.debug(f"Loaded plan '{plan.name}': {len(plan.stages)} stages, {plan.job_count} jobs")
    return plan


def _parse_stages(raw: Any) -> list[str]:
    if raw is None:
        raise DefinitionError("no stages declared: 'stages' must list at least one stage")
    if not isinstance(raw, list) or not raw:
        raise DefinitionError("'stages' must be a non-empty list of stage names")

    names: list[str] = []
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            raise DefinitionError(f"stage names must be non-empty strings, got {item!r}")
        if item in names:
            raise DefinitionError("duplicate stage name", stage=item)
        names.append(item)
    return names


def _parse_environment(raw: Any, what: str, **location: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DefinitionError(f"{what} must be a mapping of name to value", **location)

    env = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key:
            raise DefinitionError(f"{what}: variable names must be strings, got {key!r}", **location)
        if isinstance(value, (dict, list)):
            raise DefinitionError(f"{what}: value of '{key}' must be a scalar", **location)
        env[key] = _stringify(value)
    return env


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_timeout(raw: Any, **location: str) -> float:
    try:
        return parse_duration(raw)
    except (TypeError, ValueError) as e:
        raise DefinitionError(f"invalid timeout: {e}", **location) from e


def _parse_defaults(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DefinitionError("'default' must be a mapping")

    unknown = set(raw) - DEFAULT_KEYS
    if unknown:
        raise DefinitionError(f"unknown keys in 'default': {', '.join(sorted(map(str, unknown)))}")

    defaults: dict[str, Any] = {}
    if raw.get("timeout") is not None:
        defaults["timeout"] = _parse_timeout(raw["timeout"])
    cwd = raw.get("working_directory", raw.get("cwd"))
    if cwd is not None:
        if not isinstance(cwd, str) or not cwd:
            raise DefinitionError("default working_directory must be a non-empty string")
        defaults["working_directory"] = cwd
    return defaults


def _parse_services(raw: Any) -> dict[str, ServiceSpec]:
    if raw is None:
        return {}
    if isinstance(raw, list):
        # Shorthand: a plain list of service names without settings
        for name in raw:
            if not isinstance(name, str) or not name:
                raise DefinitionError(f"service names must be non-empty strings, got {name!r}")
        if len(set(raw)) != len(raw):
            duplicate = next(name for name in raw if raw.count(name) > 1)
            raise DefinitionError("duplicate service name", service=duplicate)
        raw = {name: None for name in raw}
    if not isinstance(raw, dict):
        raise DefinitionError("'services' must be a mapping of service name to settings")

    services: dict[str, ServiceSpec] = {}
    for name, body in raw.items():
        if not isinstance(name, str) or not name:
            raise DefinitionError(f"service names must be non-empty strings, got {name!r}")
        body = body or {}
        if not isinstance(body, dict):
            raise DefinitionError("service settings must be a mapping", service=name)

        unknown = set(body) - SERVICE_KEYS
        if unknown:
            raise DefinitionError(
                f"unknown keys: {', '.join(sorted(map(str, unknown)))}", service=name
            )

        depends_on = body.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise DefinitionError("depends_on must be a list of service names", service=name)

        image = body.get("image")
        if image is not None and not isinstance(image, str):
            raise DefinitionError("image must be a string", service=name)

        env = _parse_environment(
            body.get("environment", body.get("variables")), what="environment", service=name
        )
        services[name] = ServiceSpec(
            name=name, image=image, depends_on=tuple(depends_on), environment=env
        )

    for service in services.values():
        for dep in service.depends_on:
            if dep not in services:
                raise DefinitionError(f"depends on unknown service '{dep}'", service=service.name)

    return services


def _check_service_cycles(services: dict[str, ServiceSpec]) -> None:
    """Reject dependency cycles between services, naming the cycle."""
    visiting: list[str] = []
    done: set[str] = set()

    def visit(name: str) -> None:
        if name in done:
            return
        if name in visiting:
            cycle = visiting[visiting.index(name):] + [name]
            raise DefinitionError(
                f"service dependency cycle: {' -> '.join(cycle)}", service=name
            )
        visiting.append(name)
        for dep in services[name].depends_on:
            visit(dep)
        visiting.pop()
        done.add(name)

    for name in services:
        visit(name)


def _resolve_services(names: list[str], services: dict[str, ServiceSpec]) -> tuple[str, ...]:
    """Expand declared services with their transitive dependencies, dependencies first."""
    ordered: list[str] = []

    def visit(name: str) -> None:
        if name in ordered:
            return
        for dep in services[name].depends_on:
            visit(dep)
        ordered.append(name)

    for name in names:
        visit(name)
    return tuple(ordered)


def _collect_raw_jobs(data: dict[str, Any]) -> list[tuple[str, Any]]:
    """Gather job definitions in document order.

    Jobs live under ``jobs:`` or, GitLab style, as top-level mappings whose
    key is not reserved. Keys starting with ``.`` are hidden templates.
    """
    collected: list[tuple[str, Any]] = []
    seen: set[str] = set()

    def add(name: Any, body: Any) -> None:
        if not isinstance(name, str) or not name:
            raise DefinitionError(f"job names must be non-empty strings, got {name!r}")
        if name.startswith("."):
            return
        if name in seen:
            raise DefinitionError("duplicate job name", job=name)
        seen.add(name)
        collected.append((name, body))

    for key, value in data.items():
        if key == "jobs":
            if value is None:
                continue
            if not isinstance(value, dict):
                raise DefinitionError("'jobs' must be a mapping of job name to definition")
            for name, body in value.items():
                add(name, body)
        elif key in RESERVED_KEYS:
            continue
        elif isinstance(value, dict):
            add(key, value)
        else:
            raise DefinitionError(f"unexpected top-level key '{key}'")

    return collected


def _build_job(
    name: str,
    raw: Any,
    *,
    stage_names: list[str],
    services: dict[str, ServiceSpec],
    variables: dict[str, str],
    default_timeout: Optional[float],
    default_cwd: str,
    base_dir: Path,
) -> JobSpec:
    if not isinstance(raw, dict):
        raise DefinitionError("job definition must be a mapping", job=name)

    unknown = set(raw) - JOB_KEYS
    if unknown:
        raise DefinitionError(f"unknown keys: {', '.join(sorted(map(str, unknown)))}", job=name)

    stage = raw.get("stage")
    if stage is None:
        raise DefinitionError("missing 'stage'", job=name)
    if stage not in stage_names:
        raise DefinitionError(f"unknown stage reference '{stage}'", job=name)

    command = _parse_command(raw, job=name, stage=stage)

    declared_services = raw.get("services") or []
    if isinstance(declared_services, str):
        declared_services = [declared_services]
    if not isinstance(declared_services, list):
        raise DefinitionError("'services' must be a list of service names", stage=stage, job=name)
    for service_name in declared_services:
        if not isinstance(service_name, str):
            raise DefinitionError(
                f"service references must be names, got {service_name!r}", stage=stage, job=name
            )
        if service_name not in services:
            raise DefinitionError(
                f"requires unknown service '{service_name}'", stage=stage, job=name
            )
    resolved = _resolve_services(declared_services, services)

    env = dict(variables)
    for service_name in resolved:
        env.update(services[service_name].environment)
    if "environment" in raw and "variables" in raw:
        raise DefinitionError("use either 'environment' or 'variables', not both", stage=stage, job=name)
    env.update(
        _parse_environment(
            raw.get("environment", raw.get("variables")),
            what="environment",
            stage=stage,
            job=name,
        )
    )

    allow_failure = raw.get("allow_failure", False)
    if not isinstance(allow_failure, bool):
        raise DefinitionError("'allow_failure' must be true or false", stage=stage, job=name)

    timeout = default_timeout
    if raw.get("timeout") is not None:
        timeout = _parse_timeout(raw["timeout"], stage=stage, job=name)

    cwd = raw.get("working_directory", raw.get("cwd", default_cwd))
    if not isinstance(cwd, str) or not cwd:
        raise DefinitionError("working_directory must be a non-empty string", stage=stage, job=name)
    working_directory = Path(cwd).expanduser()
    if not working_directory.is_absolute():
        working_directory = base_dir / working_directory

    return JobSpec(
        name=name,
        stage=stage,
        command=command,
        working_directory=working_directory.resolve(),
        environment=env,
        allow_failure=allow_failure,
        services=tuple(declared_services),
        resolved_services=resolved,
        timeout=timeout,
    )


def _parse_command(raw: dict[str, Any], **location: str) -> str:
    has_command = "command" in raw
    has_script = "script" in raw
    if has_command == has_script:
        raise DefinitionError("exactly one of 'command' or 'script' is required", **location)

    if has_command:
        command = raw["command"]
        if not isinstance(command, str) or not command.strip():
            raise DefinitionError("'command' must be a non-empty string", **location)
        return command

    script = raw["script"]
    if isinstance(script, str):
        script = [script]
    if (
        not isinstance(script, list)
        or not script
        or not all(isinstance(line, str) and line.strip() for line in script)
    ):
        raise DefinitionError("'script' must be a non-empty list of commands", **location)
    # Any failing line fails the job
    return "\n".join(["set -e", *script])
