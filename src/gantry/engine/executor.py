"""Job instance executor - runs the steps of one matrix instance."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import os
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable

from gantry.config import Settings, settings
from gantry.engine.actions import (
    ActionError,
    ActionRuntime,
    PostStep,
    get_action,
    load_composite,
    parse_reference,
)
from gantry.engine.artifacts import ArtifactConflict, ArtifactStore, OutputStore
from gantry.engine.backends import LocalBackend, ShellBackend
from gantry.engine.cache import CacheStore
from gantry.engine.cancellation import CancellationToken
from gantry.engine.context import Context, StepState
from gantry.engine.dag import JobDefinition, StepDefinition, WorkflowDefinition
from gantry.engine.events import event_bus
from gantry.engine.expressions import (
    ExpressionError,
    condition_survives_cancel,
    evaluate_condition,
    interpolate,
    interpolate_string,
    is_truthy,
    to_string,
)
from gantry.engine.logs import JobLog, SecretMasker, parse_command, parse_env_file
from gantry.engine.storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)


class InstanceState(str, enum.Enum):
    """Lifecycle of a job instance. Terminal values double as job results."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "success"
    FAILED = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            InstanceState.SUCCEEDED,
            InstanceState.FAILED,
            InstanceState.SKIPPED,
            InstanceState.CANCELLED,
        )


@dataclass
class StepResult:
    """Result from executing a single step."""

    name: str
    step_id: str | None = None
    outcome: str = "success"  # "success" | "failure" | "skipped" | "cancelled"
    conclusion: str = "success"
    outputs: dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None
    timed_out: bool = False
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class JobInstance:
    """One concrete run of a job for one matrix combination."""

    job: JobDefinition
    instance_id: str
    name: str
    matrix: dict[str, Any] = field(default_factory=dict)
    index: int = 0
    total: int = 1
    state: InstanceState = InstanceState.PENDING


@dataclass
class InstanceResult:
    """Final result of one job instance."""

    instance_id: str
    job_id: str
    name: str
    state: InstanceState
    matrix: dict[str, Any] = field(default_factory=dict)
    steps: list[StepResult] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    continue_on_error: bool = False
    log: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def result(self) -> str:
        return self.state.value

    @property
    def conclusion(self) -> str:
        """Result seen by dependents (continue-on-error turns failure into success)."""
        if self.state is InstanceState.FAILED and self.continue_on_error:
            return InstanceState.SUCCEEDED.value
        return self.state.value


class StepTimeoutError(TimeoutError):
    """A step ran longer than its (or the job's remaining) timeout."""


@dataclass
class RunServices:
    """Shared collaborators of every instance in a run."""

    run_id: str
    storage: StorageBackend
    cache: CacheStore
    artifacts: ArtifactStore
    outputs: OutputStore
    masker: SecretMasker
    backend: ShellBackend
    temp_dir: Path
    settings: Settings = field(default_factory=lambda: settings)

    @classmethod
    def create(
        cls,
        run_id: str | None = None,
        *,
        storage: StorageBackend | None = None,
        backend: ShellBackend | None = None,
        masker: SecretMasker | None = None,
        cache: CacheStore | None = None,
    ) -> RunServices:
        run_id = run_id or uuid.uuid4().hex[:12]
        storage = storage or create_storage()
        return cls(
            run_id=run_id,
            storage=storage,
            cache=cache or CacheStore(storage),
            artifacts=ArtifactStore(storage, run_id),
            outputs=OutputStore(),
            masker=masker or SecretMasker(),
            backend=backend or LocalBackend(settings.default_shell),
            temp_dir=Path(tempfile.mkdtemp(prefix=f"gantry-{run_id}-")),
        )

    def nested(self, run_id: str) -> RunServices:
        """Services for a reusable workflow run; cache and masking are shared."""
        return dataclasses.replace(
            self,
            run_id=run_id,
            artifacts=ArtifactStore(self.storage, run_id),
            outputs=OutputStore(),
        )

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        event_bus.publish(event_type, {"run_id": self.run_id, **data})

    def cleanup(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


def _env_strings(values: dict[str, Any]) -> dict[str, str]:
    return {str(k): to_string(v) for k, v in values.items()}


def _run_defaults(workflow: WorkflowDefinition, job: JobDefinition) -> dict[str, Any]:
    merged = dict((workflow.defaults or {}).get("run") or {})
    merged.update((job.defaults or {}).get("run") or {})
    return merged


async def _race(
    awaitable: Awaitable[Any],
    timeout: float | None,
    token: CancellationToken | None,
) -> str:
    """Run *awaitable*; returns ``"done"``, ``"timeout"`` or ``"cancelled"``."""
    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_task = None
    if token is not None:
        cancel_task = asyncio.ensure_future(token.wait())
        waiters.add(cancel_task)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            task.result()
            return "done"
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return "cancelled" if cancel_task is not None and cancel_task in done else "timeout"
    finally:
        if cancel_task is not None and not cancel_task.done():
            cancel_task.cancel()


class _InstanceRun:
    """Mutable state of one executing job instance."""

    def __init__(
        self,
        workflow: WorkflowDefinition,
        instance: JobInstance,
        context: Context,
        services: RunServices,
        token: CancellationToken,
    ) -> None:
        self.workflow = workflow
        self.instance = instance
        self.job = instance.job
        self.context = context
        self.services = services
        self.token = token
        self.log = JobLog(instance.name, services.masker)
        self.results: list[StepResult] = []
        self.post_steps: list[PostStep] = []
        self.env_additions: dict[str, str] = {}
        self.path_additions: list[str] = []
        self.temp_dir = services.temp_dir / instance.instance_id
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self._file_counter = 0

        timeout = self.job.timeout_minutes or services.settings.default_job_timeout_minutes
        self.deadline = time.monotonic() + float(timeout) * 60
        self.defaults = _run_defaults(workflow, self.job)

    # -- environment ------------------------------------------------------

    def step_env(self, ctx: Context, step: StepDefinition) -> dict[str, str]:
        base = {**ctx.env, **self.env_additions}
        scoped = ctx.with_env(base)
        return {**base, **_env_strings(interpolate(step.env, scoped))}

    def github_env(self, step: StepDefinition) -> dict[str, str]:
        gh = self.context.github
        runner = self.context.runner
        env = {
            "CI": "true",
            "GITHUB_ACTIONS": "true",
            "GITHUB_WORKSPACE": str(self.context.workspace),
            "GITHUB_RUN_ID": self.services.run_id,
            "GITHUB_JOB": self.job.id,
            "GITHUB_ACTION": step.key,
            "GITHUB_WORKFLOW": self.workflow.name,
            "GITHUB_EVENT_NAME": str(gh.get("event_name", "")),
            "GITHUB_REF": str(gh.get("ref", "")),
            "GITHUB_REF_NAME": str(gh.get("ref_name", "")),
            "GITHUB_REF_TYPE": str(gh.get("ref_type", "")),
            "GITHUB_SHA": str(gh.get("sha", "")),
            "GITHUB_ACTOR": str(gh.get("actor", "")),
            "GITHUB_REPOSITORY": str(gh.get("repository", "")),
            "RUNNER_OS": str(runner.get("os", "")),
            "RUNNER_ARCH": str(runner.get("arch", "")),
            "RUNNER_NAME": str(runner.get("name", "")),
            "RUNNER_TEMP": str(self.temp_dir),
        }
        if self.path_additions:
            # Later additions take precedence
            prefix = os.pathsep.join(reversed(self.path_additions))
            env["PATH"] = prefix + os.pathsep + os.environ.get("PATH", "")
        return env

    def working_directory(self, step: StepDefinition) -> Path:
        raw = step.working_directory or self.defaults.get("working-directory")
        if not raw:
            return self.context.workspace
        raw = interpolate_string(raw, self.context)
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self.context.workspace / path

    def timeout_for(self, step: StepDefinition, cleanup: bool) -> float:
        remaining = self.deadline - time.monotonic()
        if step.timeout_minutes is not None:
            return step.timeout_minutes * 60
        if remaining > 0:
            return remaining
        if cleanup:
            return self.services.settings.cleanup_step_timeout_minutes * 60
        return 0.0

    def _command_files(self) -> dict[str, Path]:
        self._file_counter += 1
        files = {}
        for name in ("GITHUB_OUTPUT", "GITHUB_ENV", "GITHUB_PATH"):
            path = self.temp_dir / f"{name.lower()}_{self._file_counter}"
            path.write_text("")
            files[name] = path
        return files

    # -- stdout directives ------------------------------------------------

    def on_line(self, line: str, outputs: dict[str, str]) -> None:
        command = parse_command(line)
        if command is None:
            self.log.write(line)
            return
        if command.name == "add-mask":
            self.services.masker.add(command.value)
            self.log.write("::add-mask::" + self.services.masker.mask)
        elif command.name in ("warning", "error", "notice"):
            line_no = command.properties.get("line")
            self.log.annotate(
                command.name,
                command.value,
                file=command.properties.get("file"),
                line=int(line_no) if line_no and line_no.isdigit() else None,
            )
        elif command.name == "debug":
            logger.debug("[%s] %s", self.instance.name, self.services.masker.redact(command.value))
        elif command.name == "group":
            self.log.write(f"##[group]{command.value}")
        elif command.name == "endgroup":
            self.log.write("##[endgroup]")
        elif command.name == "set-output" and "name" in command.properties:
            outputs[command.properties["name"]] = command.value
        else:
            self.log.write(line)

    # -- step kinds -------------------------------------------------------

    async def run_shell(self, step: StepDefinition, ctx: Context, env: dict[str, str],
                        cleanup: bool) -> StepResult:
        result = StepResult(name=step.display_name, step_id=step.id)
        script = interpolate_string(step.run or "", ctx.with_env(env))
        shell = step.shell or self.defaults.get("shell") or self.services.settings.default_shell
        files = self._command_files()
        proc_env = {
            **self.github_env(step),
            **env,
            **{name: str(path) for name, path in files.items()},
        }
        timeout = self.timeout_for(step, cleanup)
        if timeout <= 0:
            raise StepTimeoutError(f"Job '{self.job.id}' exceeded its timeout")

        outputs: dict[str, str] = {}
        command = await self.services.backend.run(
            script,
            shell=shell,
            cwd=self.working_directory(step),
            env=proc_env,
            on_line=lambda line: self.on_line(line, outputs),
            timeout=timeout,
            token=None if cleanup else self.token,
        )
        result.exit_code = command.exit_code

        outputs.update(parse_env_file(files["GITHUB_OUTPUT"].read_text()))
        result.outputs = outputs
        self.env_additions.update(parse_env_file(files["GITHUB_ENV"].read_text()))
        for entry in files["GITHUB_PATH"].read_text().splitlines():
            if entry.strip():
                self.path_additions.append(entry.strip())

        if command.timed_out:
            raise StepTimeoutError(
                f"The step '{step.display_name}' exceeded its timeout of {timeout / 60:.1f} minutes"
            )
        if command.cancelled:
            result.outcome = "cancelled"
        elif command.exit_code != 0:
            result.outcome = "failure"
            result.error = f"Process completed with exit code {command.exit_code}"
        return result

    async def run_action(self, step: StepDefinition, ctx: Context, env: dict[str, str],
                         cleanup: bool) -> StepResult:
        result = StepResult(name=step.display_name, step_id=step.id)
        scoped = ctx.with_env(env)
        inputs = interpolate(step.with_, scoped)
        ref = parse_reference(step.uses or "", self.context.workspace)
        timeout = self.timeout_for(step, cleanup)
        if timeout <= 0:
            raise StepTimeoutError(f"Job '{self.job.id}' exceeded its timeout")

        if ref.kind == "local":
            composite = load_composite(ref.path)
            nested = scoped.for_composite(composite.resolve_inputs(inputs))
            outcome = await self.run_steps(composite.steps, nested)
            outputs = {}
            for name, spec in composite.outputs.items():
                outputs[name] = interpolate_string(spec.get("value", ""), nested)
            result.outputs = outputs
            if outcome != "success":
                result.outcome = outcome
                result.error = f"Composite action '{composite.name}' {outcome}"
            return result

        if ref.kind == "docker":
            raise ActionError(f"Container actions are not supported: {step.uses}")

        runtime = ActionRuntime(
            step_name=step.display_name,
            inputs=inputs,
            workspace=self.context.workspace,
            log=self.log,
            context=scoped,
            services=self.services,
            env=env,
            post_steps=self.post_steps,
        )
        status = await _race(get_action(ref.name)(runtime), timeout,
                             None if cleanup else self.token)
        result.outputs = dict(runtime.outputs)
        if status == "timeout":
            raise StepTimeoutError(f"The step '{step.display_name}' exceeded its timeout")
        if status == "cancelled":
            result.outcome = "cancelled"
        return result

    # -- step loop --------------------------------------------------------

    async def run_step(self, step: StepDefinition, ctx: Context) -> StepResult:
        ctx.cancelled = self.token.cancelled
        condition_ctx = ctx.with_env({**ctx.env, **self.env_additions})
        try:
            should_run = evaluate_condition(step.if_, condition_ctx)
        except ExpressionError as e:
            self.log.annotate("error", f"Invalid condition on '{step.display_name}': {e}")
            return StepResult(
                name=step.display_name, step_id=step.id,
                outcome="failure", conclusion="failure", error=str(e),
            )
        if not should_run:
            self.services.publish("step.skipped", {"job": self.instance.name, "step": step.display_name})
            return StepResult(
                name=step.display_name, step_id=step.id, outcome="skipped", conclusion="skipped"
            )

        cleanup = condition_survives_cancel(step.if_)
        started = time.monotonic()
        self.log.write(f"##[step]{step.display_name}")
        self.services.publish("step.started", {"job": self.instance.name, "step": step.display_name})
        try:
            env = self.step_env(ctx, step)
            if step.run is not None:
                result = await self.run_shell(step, ctx, env, cleanup)
            else:
                result = await self.run_action(step, ctx, env, cleanup)
        except StepTimeoutError as e:
            self.log.annotate("error", str(e))
            result = StepResult(
                name=step.display_name, step_id=step.id,
                outcome="failure", timed_out=True, error=str(e),
            )
        except (ExpressionError, ActionError, ArtifactConflict, ValueError, OSError) as e:
            self.log.annotate("error", str(e))
            result = StepResult(
                name=step.display_name, step_id=step.id, outcome="failure", error=str(e),
            )

        result.duration_seconds = time.monotonic() - started
        result.conclusion = result.outcome
        if result.outcome == "failure":
            try:
                tolerated = is_truthy(interpolate(step.continue_on_error, ctx))
            except ExpressionError:
                tolerated = False
            if tolerated:
                result.conclusion = "success"
        if result.error and result.conclusion == "failure":
            self.log.write(f"##[error]{result.error}")
        self.services.publish("step.completed", {
            "job": self.instance.name,
            "step": step.display_name,
            "outcome": result.outcome,
            "conclusion": result.conclusion,
        })
        return result

    async def run_steps(self, steps: list[StepDefinition], ctx: Context) -> str:
        """Run *steps* in order against *ctx*; returns the aggregate outcome."""
        ctx.status = "success"
        for step in steps:
            result = await self.run_step(step, ctx)
            self.results.append(result)
            ctx.record_step(step.key, StepState(
                outputs=dict(result.outputs),
                outcome=result.outcome,
                conclusion=result.conclusion,
            ))
            if result.conclusion == "failure":
                ctx.status = "failure"
                ctx.job["status"] = "failure"
            if result.timed_out and time.monotonic() >= self.deadline:
                # The job itself ran out of time; only cleanup steps continue
                self.token.cancel("timeout")
        if ctx.status == "failure":
            return "failure"
        if self.token.cancelled:
            return "cancelled"
        return "success"

    async def run_post_steps(self, ctx: Context) -> None:
        for post in reversed(self.post_steps):
            ctx.cancelled = self.token.cancelled
            if not evaluate_condition(post.condition, ctx):
                continue
            self.log.write(f"##[step]{post.name}")
            started = time.monotonic()
            result = StepResult(name=post.name)
            timeout = self.services.settings.cleanup_step_timeout_minutes * 60
            try:
                status = await _race(post.fn(post.runtime), timeout, None)
                if status != "done":
                    raise StepTimeoutError(f"'{post.name}' exceeded its timeout")
            except (StepTimeoutError, ActionError, ValueError, OSError) as e:
                self.log.annotate("error", str(e))
                result.outcome = result.conclusion = "failure"
                result.error = str(e)
                ctx.status = "failure"
            result.duration_seconds = time.monotonic() - started
            self.results.append(result)


async def execute_job_instance(
    workflow: WorkflowDefinition,
    instance: JobInstance,
    context: Context,
    services: RunServices,
    token: CancellationToken,
) -> InstanceResult:
    """Execute one job instance; never raises for step-level failures."""
    job = instance.job
    started_at = datetime.now(timezone.utc)
    instance.state = InstanceState.RUNNING
    services.publish("job.started", {"job": instance.name, "instance": instance.instance_id})

    run = _InstanceRun(workflow, instance, context, services, token)
    context.job.setdefault("status", "success")
    error: str | None = None
    outputs: dict[str, str] = {}

    try:
        job_env = _env_strings(interpolate(workflow.env, context))
        job_env.update(_env_strings(interpolate(job.env, context.with_env(job_env))))
        context.env = job_env

        outcome = await run.run_steps(job.steps, context)
        await run.run_post_steps(context)
        if context.status == "failure":
            outcome = "failure"

        if outcome == "success":
            for name, expression in job.outputs.items():
                outputs[name] = interpolate_string(expression, context)
    except ExpressionError as e:
        run.log.annotate("error", str(e))
        error = str(e)
        outcome = "failure"
    except Exception as e:
        logger.exception(f"Job '{instance.name}' crashed")
        error = f"Internal error: {type(e).__name__}: {e}"
        run.log.annotate("error", error)
        outcome = "failure"

    if outcome == "failure":
        state = InstanceState.FAILED
        error = error or next(
            (r.error for r in run.results if r.conclusion == "failure" and r.error), None
        )
    elif outcome == "cancelled":
        state = InstanceState.CANCELLED
    else:
        state = InstanceState.SUCCEEDED

    for name, value in outputs.items():
        services.outputs.set(instance.instance_id, name, value)

    try:
        continue_on_error = is_truthy(interpolate(job.continue_on_error, context))
    except ExpressionError:
        continue_on_error = False

    instance.state = state
    result = InstanceResult(
        instance_id=instance.instance_id,
        job_id=job.id,
        name=instance.name,
        state=state,
        matrix=dict(instance.matrix),
        steps=run.results,
        outputs=outputs,
        error=error,
        continue_on_error=continue_on_error,
        log=run.log.text(),
        started_at=started_at,
        completed_at=datetime.now(timezone.utc),
    )
    await persist_log(services, result)
    services.publish("job.completed", {
        "job": instance.name,
        "instance": instance.instance_id,
        "result": result.result,
    })
    logger.info(f"Job '{instance.name}' finished: {result.result}")
    return result


async def persist_log(services: RunServices, result: InstanceResult) -> None:
    try:
        await services.storage.write(
            f"logs/{services.run_id}/{result.instance_id}.log",
            result.log.encode("utf-8"),
        )
    except Exception as e:
        logger.warning(f"Could not store log for {result.instance_id}: {e}")


def terminal_result(instance: JobInstance, state: InstanceState,
                    reason: str | None = None) -> InstanceResult:
    """Result for an instance that never ran (skipped, cancelled before start or crashed).

    Failed and cancelled results carry the reason as their only log line.
    """
    instance.state = state
    now = datetime.now(timezone.utc)
    log = ""
    if reason and state in (InstanceState.FAILED, InstanceState.CANCELLED):
        level = "error" if state is InstanceState.FAILED else "warning"
        log = f"##[{level}]{reason}\n"
    return InstanceResult(
        instance_id=instance.instance_id,
        job_id=instance.job.id,
        name=instance.name,
        state=state,
        matrix=dict(instance.matrix),
        error=reason,
        log=log,
        started_at=now,
        completed_at=now,
    )
