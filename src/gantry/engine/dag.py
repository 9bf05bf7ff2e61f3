"""Workflow parser and job dependency resolver."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from gantry.engine.matrix import Strategy
from gantry.engine.triggers import Trigger, TriggerError, parse_triggers

PERMISSION_LEVELS = frozenset({"read", "write", "none"})
_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class WorkflowValidationError(ValueError):
    """The workflow definition is invalid; ``errors`` lists every problem."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class DependencyError(WorkflowValidationError):
    """The job ``needs`` graph contains a cycle or an unknown job."""


@dataclass
class StepDefinition:
    """Definition of a single job step."""

    index: int
    id: str | None = None
    name: str | None = None
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] = field(default_factory=dict)
    env: dict[str, Any] = field(default_factory=dict)
    if_: Any = None
    working_directory: str | None = None
    shell: str | None = None
    timeout_minutes: float | None = None
    continue_on_error: Any = False

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return f"Run {self.uses}"
        if self.run:
            return f"Run {self.run.strip().splitlines()[0]}"
        return f"Step {self.index + 1}"

    @property
    def key(self) -> str:
        """Identifier used in the ``steps`` context."""
        return self.id or f"__step_{self.index}"


@dataclass
class JobDefinition:
    """Definition of a job in the ``jobs:`` mapping."""

    id: str
    name: str | None = None
    runs_on: list[str] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    if_: Any = None
    strategy: Strategy | None = None
    timeout_minutes: float | None = None
    env: dict[str, Any] = field(default_factory=dict)
    permissions: dict[str, str] | None = None
    steps: list[StepDefinition] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    continue_on_error: Any = False
    defaults: dict[str, Any] = field(default_factory=dict)
    # Reusable workflow call
    uses: str | None = None
    with_: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, Any] | str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class WorkflowDefinition:
    """Full workflow definition parsed from YAML."""

    name: str
    triggers: list[Trigger]
    jobs: dict[str, JobDefinition]
    env: dict[str, Any] = field(default_factory=dict)
    permissions: dict[str, str] | None = None
    defaults: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None

    def get_job(self, job_id: str) -> JobDefinition:
        """Get a job by its ID."""
        try:
            return self.jobs[job_id]
        except KeyError:
            raise ValueError(f"Job '{job_id}' not found in workflow '{self.name}'") from None


@dataclass
class ExecutionPlan:
    """Topologically sorted execution stages."""

    stages: list[list[str]]  # e.g. [["build"], ["test", "lint"], ["deploy"]]


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _parse_permissions(value: Any) -> dict[str, str] | None:
    """Normalise ``permissions`` to a scope -> level mapping.

    ``read-all``/``write-all`` become ``{"*": level}``, ``{}`` means no access.
    """
    if value is None:
        return None
    if value == "read-all":
        return {"*": "read"}
    if value == "write-all":
        return {"*": "write"}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    raise WorkflowValidationError([f"Invalid permissions value: {value!r}"])


def _parse_strategy(data: dict | None) -> Strategy | None:
    """Parse a job's strategy block from YAML data."""
    if data is None:
        return None
    max_parallel = data.get("max-parallel")
    return Strategy(
        matrix=data.get("matrix"),
        fail_fast=data.get("fail-fast", True),
        max_parallel=int(max_parallel) if max_parallel is not None else None,
    )


def _parse_step(data: dict, index: int) -> StepDefinition:
    """Parse a single step definition from YAML data."""
    timeout = data.get("timeout-minutes")
    return StepDefinition(
        index=index,
        id=data.get("id"),
        name=data.get("name"),
        run=data.get("run"),
        uses=data.get("uses"),
        with_=dict(data.get("with") or {}),
        env=dict(data.get("env") or {}),
        if_=data.get("if"),
        working_directory=data.get("working-directory"),
        shell=data.get("shell"),
        timeout_minutes=float(timeout) if timeout is not None else None,
        continue_on_error=data.get("continue-on-error", False),
    )


def _parse_job(job_id: str, data: dict) -> JobDefinition:
    """Parse a single job definition from YAML data."""
    if not isinstance(data, dict):
        raise WorkflowValidationError([f"Job '{job_id}' must be a mapping"])
    timeout = data.get("timeout-minutes")
    secrets = data.get("secrets")
    return JobDefinition(
        id=job_id,
        name=data.get("name"),
        runs_on=_as_list(data.get("runs-on")),
        needs=_as_list(data.get("needs")),
        if_=data.get("if"),
        strategy=_parse_strategy(data.get("strategy")),
        timeout_minutes=float(timeout) if timeout is not None else None,
        env=dict(data.get("env") or {}),
        permissions=_parse_permissions(data.get("permissions")),
        steps=[_parse_step(s or {}, i) for i, s in enumerate(data.get("steps") or [])],
        outputs={str(k): str(v) for k, v in (data.get("outputs") or {}).items()},
        continue_on_error=data.get("continue-on-error", False),
        defaults=dict(data.get("defaults") or {}),
        uses=data.get("uses"),
        with_=dict(data.get("with") or {}),
        secrets=secrets if secrets == "inherit" else (dict(secrets) if secrets else None),
    )


def _from_data(data: Any, source: Path | None = None) -> WorkflowDefinition:
    if not isinstance(data, dict):
        raise WorkflowValidationError(["Workflow must be a YAML mapping"])
    # YAML 1.1 reads a bare `on` key as boolean True
    on = data.get("on", data.get(True))
    try:
        triggers = parse_triggers(on)
    except TriggerError as e:
        raise WorkflowValidationError([str(e)]) from e

    jobs_data = data.get("jobs") or {}
    if not isinstance(jobs_data, dict):
        raise WorkflowValidationError(["'jobs' must be a mapping"])

    name = data.get("name")
    if not name and source is not None:
        name = source.name

    return WorkflowDefinition(
        name=str(name or "workflow"),
        triggers=triggers,
        jobs={str(jid): _parse_job(str(jid), jdata) for jid, jdata in jobs_data.items()},
        env=dict(data.get("env") or {}),
        permissions=_parse_permissions(data.get("permissions")),
        defaults=dict(data.get("defaults") or {}),
        source=source,
    )


def _load_yaml(stream: Any) -> Any:
    try:
        return yaml.safe_load(stream)
    except yaml.YAMLError as e:
        raise WorkflowValidationError([f"Invalid YAML: {e}"]) from e


def parse(yaml_path: str | Path) -> WorkflowDefinition:
    """Parse a workflow YAML file into a WorkflowDefinition."""
    path = Path(yaml_path)
    with path.open() as f:
        data = _load_yaml(f)
    return _from_data(data, source=path.resolve())


def parse_yaml_string(yaml_content: str) -> WorkflowDefinition:
    """Parse a workflow from a YAML string."""
    return _from_data(_load_yaml(yaml_content))


def _validate_permissions(where: str, permissions: dict[str, str] | None) -> list[str]:
    errors = []
    for scope, level in (permissions or {}).items():
        if level not in PERMISSION_LEVELS:
            errors.append(f"{where}: invalid permission level '{level}' for '{scope}'")
    return errors


def _validate_step(job: JobDefinition, step: StepDefinition) -> list[str]:
    errors = []
    where = f"Job '{job.id}' step {step.index + 1}"
    if bool(step.run) == bool(step.uses):
        errors.append(f"{where} must have exactly one of 'run' or 'uses'")
    if step.uses and not step.uses.startswith(("./", "docker://")) and "@" not in step.uses:
        errors.append(f"{where}: action reference '{step.uses}' needs an @version")
    if step.id is not None and not _ID_RE.match(step.id):
        errors.append(f"{where}: invalid step id '{step.id}'")
    if step.timeout_minutes is not None and step.timeout_minutes <= 0:
        errors.append(f"{where}: timeout-minutes must be positive")
    return errors


def validate(workflow: WorkflowDefinition) -> list[str]:
    """Validate a workflow definition. Returns list of error messages (empty = valid)."""
    errors: list[str] = []

    if not workflow.triggers:
        errors.append("Workflow must declare at least one trigger in 'on'")

    if not workflow.jobs:
        errors.append("Workflow must have at least one job")

    errors.extend(_validate_permissions("Workflow", workflow.permissions))

    for job in workflow.jobs.values():
        if not _ID_RE.match(job.id):
            errors.append(f"Invalid job id '{job.id}'")
        for dep in job.needs:
            if dep not in workflow.jobs:
                errors.append(f"Job '{job.id}' needs unknown job '{dep}'")
        errors.extend(_validate_permissions(f"Job '{job.id}'", job.permissions))
        if job.timeout_minutes is not None and job.timeout_minutes <= 0:
            errors.append(f"Job '{job.id}': timeout-minutes must be positive")
        if job.strategy and job.strategy.max_parallel is not None and job.strategy.max_parallel < 1:
            errors.append(f"Job '{job.id}': max-parallel must be at least 1")

        if job.uses:
            if job.steps:
                errors.append(f"Job '{job.id}' cannot have both 'uses' and 'steps'")
            if job.strategy is not None:
                errors.append(f"Job '{job.id}': strategy is not supported with 'uses'")
            continue

        if not job.runs_on:
            errors.append(f"Job '{job.id}' must declare 'runs-on'")
        if not job.steps:
            errors.append(f"Job '{job.id}' must have at least one step")

        seen: set[str] = set()
        for step in job.steps:
            errors.extend(_validate_step(job, step))
            if step.id is not None:
                if step.id in seen:
                    errors.append(f"Job '{job.id}': duplicate step id '{step.id}'")
                seen.add(step.id)

    errors.extend(_detect_cycles(workflow.jobs))
    return errors


def _detect_cycles(jobs: dict[str, JobDefinition]) -> list[str]:
    """Detect cycles in the job dependency graph."""
    adj: dict[str, list[str]] = {jid: list(j.needs) for jid, j in jobs.items()}
    visited: set[str] = set()
    in_stack: set[str] = set()
    errors: list[str] = []

    def dfs(node: str) -> bool:
        visited.add(node)
        in_stack.add(node)
        for neighbor in adj.get(node, []):
            if neighbor in in_stack:
                errors.append(f"Cycle detected involving job '{node}' -> '{neighbor}'")
                return True
            if neighbor not in visited and neighbor in adj:
                if dfs(neighbor):
                    return True
        in_stack.discard(node)
        return False

    for jid in jobs:
        if jid not in visited:
            dfs(jid)

    return errors


def ensure_valid(workflow: WorkflowDefinition) -> None:
    """Raise if the workflow is invalid.

    Cycles and unknown ``needs`` raise :class:`DependencyError`; any other
    problem raises :class:`WorkflowValidationError`.
    """
    errors = validate(workflow)
    if not errors:
        return
    dependency = [e for e in errors if e.startswith("Cycle detected") or "needs unknown job" in e]
    if dependency:
        raise DependencyError(errors)
    raise WorkflowValidationError(errors)


def ancestors(workflow: WorkflowDefinition, job_id: str) -> set[str]:
    """Every job reachable through ``needs`` from *job_id*."""
    seen: set[str] = set()
    stack = list(workflow.jobs[job_id].needs)
    while stack:
        jid = stack.pop()
        if jid in seen or jid not in workflow.jobs:
            continue
        seen.add(jid)
        stack.extend(workflow.jobs[jid].needs)
    return seen


def build_plan(workflow: WorkflowDefinition) -> ExecutionPlan:
    """Build an execution plan using topological sort.

    Groups jobs into stages where all jobs in a stage can run in parallel.
    """
    in_degree: dict[str, int] = {jid: 0 for jid in workflow.jobs}
    dependents: dict[str, list[str]] = {jid: [] for jid in workflow.jobs}

    for job in workflow.jobs.values():
        for dep in job.needs:
            in_degree[job.id] += 1
            dependents[dep].append(job.id)

    stages: list[list[str]] = []
    ready = [jid for jid, deg in in_degree.items() if deg == 0]

    while ready:
        stage = sorted(ready)
        stages.append(stage)

        next_ready: list[str] = []
        for jid in stage:
            for dependent in dependents[jid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.append(dependent)
        ready = next_ready

    scheduled = {jid for stage in stages for jid in stage}
    if scheduled != set(workflow.jobs):
        unscheduled = set(workflow.jobs) - scheduled
        raise DependencyError([f"Cannot build plan: unschedulable jobs (cycle?): {unscheduled}"])

    return ExecutionPlan(stages=stages)
