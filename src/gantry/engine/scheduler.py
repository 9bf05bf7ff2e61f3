"""Workflow run scheduler - dispatches jobs as their needs complete."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gantry.config import settings
from gantry.engine import dag
from gantry.engine.cancellation import CancellationToken
from gantry.engine.context import Context, ContextBuilder
from gantry.engine.dag import JobDefinition, WorkflowDefinition, WorkflowValidationError
from gantry.engine.executor import (
    InstanceResult,
    InstanceState,
    JobInstance,
    RunServices,
    execute_job_instance,
    persist_log,
    terminal_result,
)
from gantry.engine.expressions import (
    ExpressionError,
    UnresolvedReference,
    contains_expression,
    evaluate_condition,
    interpolate,
    interpolate_string,
    is_truthy,
    to_string,
)
from gantry.engine.matrix import MatrixError, expand_matrix, instance_name
from gantry.engine.triggers import Event, TriggerError, resolve_inputs, select_trigger

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Aggregate result of all instances of one job."""

    job_id: str
    result: str  # "success" | "failure" | "cancelled" | "skipped"
    conclusion: str
    instances: list[InstanceResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class RunResult:
    """Final result of a workflow run."""

    run_id: str
    workflow: str
    event: str
    status: str  # "success" | "failure" | "cancelled" | "skipped"
    jobs: dict[str, JobResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def job(self, job_id: str) -> JobResult:
        return self.jobs[job_id]

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0


def aggregate(values: list[str]) -> str:
    """failure > cancelled > all skipped > success."""
    if "failure" in values:
        return "failure"
    if "cancelled" in values:
        return "cancelled"
    if values and all(v == "skipped" for v in values):
        return "skipped"
    return "success"


class WorkflowRun:
    """One execution of a workflow for one activating event."""

    def __init__(
        self,
        workflow: WorkflowDefinition,
        event: Event,
        *,
        workspace: str | Path | None = None,
        secrets: dict[str, str] | None = None,
        vars: dict[str, str] | None = None,
        run_id: str | None = None,
        services: RunServices | None = None,
        depth: int = 0,
        host_semaphore: asyncio.Semaphore | None = None,
        parent_token: CancellationToken | None = None,
        record_history: bool = False,
    ) -> None:
        self.workflow = workflow
        self.event = event
        self.workspace = Path(workspace or Path.cwd()).resolve()
        self.secrets = dict(secrets or {})
        self.vars = dict(vars or {})
        self.run_id = run_id or (services.run_id if services else uuid.uuid4().hex[:12])
        self._own_services = services is None
        self.services = services or RunServices.create(self.run_id)
        self.depth = depth
        if host_semaphore is None and settings.max_concurrent_jobs > 0:
            host_semaphore = asyncio.Semaphore(settings.max_concurrent_jobs)
        self.host_semaphore = host_semaphore
        self.token = parent_token.child() if parent_token else CancellationToken()
        self.record_history = record_history
        self.builder: ContextBuilder | None = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        """Cancel every pending and running instance of the run."""
        logger.info(f"Run {self.run_id} cancelled: {reason}")
        if self.builder is not None:
            self.builder.cancelled = True
        self.token.cancel(reason)

    # -- context ----------------------------------------------------------

    def _github_context(self) -> dict[str, Any]:
        event = self.event
        return {
            "event_name": event.name,
            "event": dict(event.payload),
            "ref": event.ref,
            "ref_name": event.ref_name,
            "ref_type": event.ref_type,
            "sha": event.sha,
            "actor": event.actor,
            "repository": event.repository,
            "base_ref": event.base_ref or "",
            "head_ref": event.head_ref or "",
            "run_id": self.run_id,
            "run_number": 1,
            "workflow": self.workflow.name,
            "workspace": str(self.workspace),
            "server_url": "https://github.com",
        }

    def _runner_context(self) -> dict[str, Any]:
        return {
            "os": settings.runner_os,
            "arch": settings.runner_arch,
            "name": settings.runner_name,
            "temp": str(self.services.temp_dir),
            "tool_cache": str(settings.data_path / "tool_cache"),
        }

    # -- jobs -------------------------------------------------------------

    async def _terminal(self, instance: JobInstance, state: InstanceState,
                        reason: str | None = None) -> InstanceResult:
        result = terminal_result(instance, state, reason)
        if result.log:
            result.log = self.services.masker.redact(result.log)
            await persist_log(self.services, result)
        return result

    async def _failed_job(self, job_id: str, error: str,
                          instance: JobInstance | None = None) -> JobResult:
        if instance is None:
            job = self.workflow.jobs[job_id]
            instance = JobInstance(job=job, instance_id=job_id, name=job.display_name)
        result = await self._terminal(instance, InstanceState.FAILED, error)
        return JobResult(job_id=job_id, result="failure", conclusion="failure",
                         instances=[result], error=error)

    @contextlib.asynccontextmanager
    async def _slots(self, group: asyncio.Semaphore | None):
        async with contextlib.AsyncExitStack() as stack:
            if group is not None:
                await stack.enter_async_context(group)
            if self.host_semaphore is not None:
                await stack.enter_async_context(self.host_semaphore)
            yield

    async def _run_matrix_job(self, job: JobDefinition, ctx: Context,
                              ancestors: set[str]) -> JobResult:
        assert self.builder is not None
        strategy = job.strategy
        matrix = strategy.matrix if strategy else None
        if contains_expression(matrix):
            matrix = interpolate(matrix, ctx)
        combos = expand_matrix(matrix)
        total = len(combos)

        fail_fast = True
        if strategy is not None:
            fail_fast = is_truthy(interpolate(strategy.fail_fast, ctx))
        group_token = self.token.child()
        group_sem = (
            asyncio.Semaphore(strategy.max_parallel)
            if strategy is not None and strategy.max_parallel else None
        )

        instances = []
        for i, combo in enumerate(combos):
            instance_id = job.id if total == 1 and not combo else f"{job.id}-{i + 1}"
            instances.append(JobInstance(
                job=job,
                instance_id=instance_id,
                name=instance_name(job.display_name, combo),
                matrix=combo,
                index=i,
                total=total,
            ))

        async def run_instance(instance: JobInstance) -> InstanceResult:
            token = group_token.child()
            instance.state = InstanceState.READY
            try:
                async with self._slots(group_sem):
                    if token.cancelled:
                        return await self._terminal(
                            instance, InstanceState.CANCELLED, token.reason,
                        )
                    strategy_ctx = (
                        strategy.as_context(instance.index, total) if strategy else {}
                    )
                    ictx = self.builder.snapshot(
                        job.id, job.needs, ancestors,
                        matrix=instance.matrix, strategy=strategy_ctx,
                    )
                    result = await execute_job_instance(
                        self.workflow, instance, ictx, self.services, token,
                    )
            except Exception as e:
                logger.exception(f"Instance '{instance.name}' crashed")
                result = await self._terminal(
                    instance, InstanceState.FAILED, f"Internal error: {type(e).__name__}: {e}",
                )
            if (fail_fast and result.state is InstanceState.FAILED
                    and not result.continue_on_error):
                logger.info(f"Instance '{instance.name}' failed; cancelling siblings (fail-fast)")
                group_token.cancel(f"fail-fast: '{instance.name}' failed")
            return result

        results = list(await asyncio.gather(*(run_instance(i) for i in instances)))

        outputs: dict[str, Any] = {}
        for result in results:
            outputs.update(result.outputs)
        return JobResult(
            job_id=job.id,
            result=aggregate([r.result for r in results]),
            conclusion=aggregate([r.conclusion for r in results]),
            instances=results,
            outputs=outputs,
        )

    def _resolve_called_path(self, uses: str) -> Path:
        if not uses.startswith("./"):
            raise WorkflowValidationError(
                [f"Remote reusable workflows are not supported: '{uses}'"]
            )
        return (self.workspace / uses).resolve()

    async def _run_reusable(self, job: JobDefinition, ctx: Context) -> JobResult:
        instance = JobInstance(job=job, instance_id=job.id, name=job.display_name)
        if self.depth + 1 >= settings.max_workflow_depth:
            return await self._failed_job(
                job.id,
                f"Max workflow depth ({settings.max_workflow_depth}) exceeded",
                instance,
            )
        try:
            called = dag.parse(self._resolve_called_path(job.uses or ""))
            inputs = interpolate(job.with_, ctx)
            if job.secrets == "inherit":
                secrets = dict(self.secrets)
            else:
                secrets = {k: to_string(v) for k, v in interpolate(job.secrets or {}, ctx).items()}
        except (OSError, WorkflowValidationError, ExpressionError) as e:
            return await self._failed_job(job.id, str(e), instance)

        event = Event(
            name="workflow_call",
            ref=self.event.ref,
            sha=self.event.sha,
            actor=self.event.actor,
            repository=self.event.repository,
            inputs=inputs,
            payload=self.event.payload,
        )
        nested_id = f"{self.run_id}.{job.id}"
        nested = WorkflowRun(
            called,
            event,
            workspace=self.workspace,
            secrets=secrets,
            vars=self.vars,
            run_id=nested_id,
            services=self.services.nested(nested_id),
            depth=self.depth + 1,
            host_semaphore=self.host_semaphore,
            parent_token=self.token,
        )
        try:
            result = await nested.execute()
        except (WorkflowValidationError, TriggerError) as e:
            return await self._failed_job(job.id, str(e), instance)
        if result.status == "skipped":
            return await self._failed_job(
                job.id, f"Workflow '{called.name}' does not declare on.workflow_call", instance
            )

        instances = [i for j in result.jobs.values() for i in j.instances]
        return JobResult(
            job_id=job.id,
            result=result.status,
            conclusion=result.status,
            instances=instances,
            outputs=dict(result.outputs),
            error=result.error,
        )

    async def _run_job(self, job_id: str) -> JobResult:
        assert self.builder is not None
        job = self.workflow.jobs[job_id]
        ancestors = dag.ancestors(self.workflow, job_id)
        ctx = self.builder.snapshot(job_id, job.needs, ancestors)

        # Job-level `if` is evaluated before matrix expansion (no matrix context)
        try:
            should_run = evaluate_condition(job.if_, ctx)
        except ExpressionError as e:
            return await self._failed_job(job_id, f"Invalid condition: {e}")

        if not should_run:
            logger.info(f"Skipping job '{job_id}'")
            self.services.publish("job.skipped", {"job": job_id})
            instance = JobInstance(job=job, instance_id=job_id, name=job.display_name)
            skipped = terminal_result(instance, InstanceState.SKIPPED)
            return JobResult(job_id=job_id, result="skipped", conclusion="skipped",
                             instances=[skipped])

        if job.uses:
            return await self._run_reusable(job, ctx)

        try:
            return await self._run_matrix_job(job, ctx, ancestors)
        except (MatrixError, ExpressionError) as e:
            logger.error(f"Job '{job_id}' could not be expanded: {e}")
            return await self._failed_job(job_id, str(e))

    # -- run --------------------------------------------------------------

    def _call_outputs(self, trigger_outputs: dict[str, Any]) -> dict[str, Any]:
        assert self.builder is not None
        ctx = self.builder.snapshot("", [], set())
        ctx.jobs = self.builder.jobs
        outputs: dict[str, Any] = {}
        for name, spec in trigger_outputs.items():
            expression = spec.get("value", "") if isinstance(spec, dict) else spec
            try:
                outputs[name] = interpolate_string(expression, ctx)
            except UnresolvedReference as e:
                logger.warning(f"Workflow output '{name}' left empty: {e}")
                outputs[name] = ""
        return outputs

    async def execute(self) -> RunResult:
        """Validate, select the trigger, then run every job in dependency order.

        Raises ``DependencyError``/``WorkflowValidationError`` for invalid
        definitions and ``TriggerError`` for bad inputs, before anything is
        scheduled.
        """
        try:
            return await self._execute()
        finally:
            if self._own_services:
                self.services.cleanup()

    async def _execute(self) -> RunResult:
        started_at = datetime.now(timezone.utc)
        workflow = self.workflow
        dag.ensure_valid(workflow)

        trigger = select_trigger(workflow.triggers, self.event)
        if trigger is None:
            logger.info(f"Workflow '{workflow.name}' not triggered by '{self.event.name}'")
            self.services.publish("run.skipped", {"workflow": workflow.name})
            return RunResult(
                run_id=self.run_id, workflow=workflow.name, event=self.event.name,
                status="skipped", started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )

        inputs: dict[str, Any] = {}
        if trigger.event in ("workflow_dispatch", "workflow_call"):
            inputs = resolve_inputs(trigger, self.event.inputs)

        for value in self.secrets.values():
            self.services.masker.add(value)

        self.builder = ContextBuilder(
            workspace=self.workspace,
            github=self._github_context(),
            runner=self._runner_context(),
            env={},
            vars=self.vars,
            secrets=self.secrets,
            inputs=inputs,
        )
        if self.token.cancelled:
            self.builder.cancelled = True

        logger.info(f"Run {self.run_id}: workflow '{workflow.name}' ({self.event.name})")
        self.services.publish("run.started", {"workflow": workflow.name, "event": self.event.name})

        # Dependency-based scheduler: start jobs as soon as their needs complete
        job_ids = list(workflow.jobs)
        job_needs = {jid: set(workflow.jobs[jid].needs) for jid in job_ids}
        results: dict[str, JobResult] = {}
        running: dict[str, asyncio.Task] = {}

        def _find_ready() -> list[str]:
            return [
                jid for jid in job_ids
                if jid not in results
                and jid not in running
                and job_needs[jid].issubset(results)
            ]

        try:
            while True:
                if self.token.cancelled:
                    self.builder.cancelled = True

                for jid in _find_ready():
                    running[jid] = asyncio.create_task(self._run_job(jid))

                if not running:
                    break

                done_tasks, _ = await asyncio.wait(
                    running.values(), return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done_tasks:
                    jid = next(k for k, v in running.items() if v is task)
                    del running[jid]
                    exc = task.exception()
                    if exc is not None:
                        logger.error(f"Job '{jid}' crashed: {exc!r}")
                        result = await self._failed_job(jid, str(exc))
                    else:
                        result = task.result()
                    results[jid] = result
                    self.builder.record_job(jid, result.conclusion, result.outputs)
        finally:
            for task in running.values():
                task.cancel()
            if running:
                await asyncio.gather(*running.values(), return_exceptions=True)

        conclusions = [r.conclusion for r in results.values()]
        if "failure" in conclusions:
            status = "failure"
        elif self.token.cancelled or "cancelled" in conclusions:
            status = "cancelled"
        else:
            status = "success"

        outputs = self._call_outputs(trigger.outputs) if trigger.event == "workflow_call" else {}
        errors = [f"{r.job_id}: {r.error}" for r in results.values() if r.error]
        run_result = RunResult(
            run_id=self.run_id,
            workflow=workflow.name,
            event=self.event.name,
            status=status,
            jobs={jid: results[jid] for jid in job_ids if jid in results},
            outputs=outputs,
            error="; ".join(errors) or None,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )
        self.services.publish("run.completed", {
            "workflow": workflow.name,
            "status": status,
            "duration_seconds": run_result.duration_seconds,
        })
        logger.info(f"Run {self.run_id} finished: {status}")

        if self.record_history:
            from gantry.models.db import save_run_history

            await save_run_history(run_result)
        return run_result


async def execute_workflow(
    workflow: WorkflowDefinition,
    event: Event,
    **kwargs: Any,
) -> RunResult:
    """Run *workflow* for *event*; see :class:`WorkflowRun` for options."""
    return await WorkflowRun(workflow, event, **kwargs).execute()
