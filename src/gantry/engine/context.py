"""Typed run context consumed by the expression evaluator.

The scheduler owns a :class:`ContextBuilder` which only ever grows: job
results are recorded once, when the job reaches a terminal state. Each job
instance receives a :class:`Context` snapshot at dispatch; the instance then
records its own step results as they complete.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gantry.engine.expressions import UnresolvedReference


@dataclass
class StepState:
    """What ``steps.<id>`` exposes once the step has finished."""

    outputs: dict[str, str] = field(default_factory=dict)
    outcome: str = "success"  # before continue-on-error
    conclusion: str = "success"  # after continue-on-error

    def as_dict(self) -> dict[str, Any]:
        return {
            "outputs": dict(self.outputs),
            "outcome": self.outcome,
            "conclusion": self.conclusion,
        }


@dataclass
class NeedState:
    """What ``needs.<job>`` exposes once the job has concluded."""

    result: str
    outputs: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"result": self.result, "outputs": dict(self.outputs)}


@dataclass
class Context:
    """Evaluation context for one job instance (or one composite action)."""

    workspace: Path = field(default_factory=Path.cwd)
    github: dict[str, Any] = field(default_factory=dict)
    runner: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    matrix: dict[str, Any] = field(default_factory=dict)
    strategy: dict[str, Any] = field(default_factory=dict)
    needs: dict[str, NeedState] = field(default_factory=dict)
    steps: dict[str, StepState] = field(default_factory=dict)
    job: dict[str, Any] = field(default_factory=dict)
    jobs: dict[str, NeedState] | None = None

    # "success" | "failure" | "skipped"; drives the status functions
    status: str = "success"
    cancelled: bool = False

    _NAMESPACES = (
        "github", "runner", "env", "vars", "secrets", "inputs", "matrix",
        "strategy", "needs", "steps", "job", "jobs",
    )

    def namespace(self, name: str) -> Any:
        key = name.lower()
        if key not in self._NAMESPACES:
            raise UnresolvedReference(name)
        value = getattr(self, key)
        if value is None:
            raise UnresolvedReference(name)
        if key in ("needs", "jobs"):
            return {k: v.as_dict() for k, v in value.items()}
        if key == "steps":
            return {k: v.as_dict() for k, v in value.items()}
        return value

    def record_step(self, step_id: str, state: StepState) -> None:
        if step_id in self.steps:
            raise ValueError(f"Step '{step_id}' already recorded")
        self.steps[step_id] = state

    def with_env(self, env: dict[str, str]) -> Context:
        """Copy with a different ``env`` namespace; ``steps`` stays shared."""
        return dataclasses.replace(self, env=env)

    def for_composite(self, inputs: dict[str, Any]) -> Context:
        """Fresh step scope for a composite action run inside this context."""
        return dataclasses.replace(self, inputs=inputs, steps={})


class ContextBuilder:
    """Append-only record of run-level state, owned by the scheduler."""

    def __init__(
        self,
        *,
        workspace: Path,
        github: dict[str, Any],
        runner: dict[str, Any],
        env: dict[str, str],
        vars: dict[str, str],
        secrets: dict[str, str],
        inputs: dict[str, Any],
    ) -> None:
        self.workspace = workspace
        self.github = github
        self.runner = runner
        self.env = env
        self.vars = vars
        self.secrets = secrets
        self.inputs = inputs
        self._jobs: dict[str, NeedState] = {}
        self.cancelled = False

    @property
    def jobs(self) -> dict[str, NeedState]:
        return dict(self._jobs)

    def record_job(self, job_id: str, result: str, outputs: dict[str, Any]) -> None:
        if job_id in self._jobs:
            raise ValueError(f"Job '{job_id}' already recorded")
        self._jobs[job_id] = NeedState(result=result, outputs=dict(outputs))

    def job_status(self, needs: list[str], ancestors: set[str]) -> str:
        """Status seen by job-level status functions.

        ``success`` when every direct need succeeded, ``failure`` when any
        transitive prerequisite failed, ``skipped`` otherwise.
        """
        if all(self._jobs[n].result == "success" for n in needs if n in self._jobs):
            return "success"
        if any(
            self._jobs[a].result == "failure" for a in ancestors if a in self._jobs
        ):
            return "failure"
        return "skipped"

    def snapshot(
        self,
        job_id: str,
        needs: list[str],
        ancestors: set[str],
        *,
        env: dict[str, str] | None = None,
        matrix: dict[str, Any] | None = None,
        strategy: dict[str, Any] | None = None,
    ) -> Context:
        return Context(
            workspace=self.workspace,
            github=dict(self.github, job=job_id),
            runner=dict(self.runner),
            env=dict(env if env is not None else self.env),
            vars=dict(self.vars),
            secrets=dict(self.secrets),
            inputs=dict(self.inputs),
            matrix=dict(matrix or {}),
            strategy=dict(strategy or {}),
            needs={n: self._jobs[n] for n in needs if n in self._jobs},
            job={"status": "success"},
            status=self.job_status(needs, ancestors),
            cancelled=self.cancelled,
        )
