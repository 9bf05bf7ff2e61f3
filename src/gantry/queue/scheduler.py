"""Cron scheduler for ``on: schedule`` workflows."""

from __future__ import annotations

import logging
from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from gantry.config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


async def start_scheduler() -> None:
    """Start the cron scheduler."""
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the cron scheduler."""
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _schedule_id(workflow_path: Path, cron_expression: str) -> str:
    return f"{workflow_path.resolve()}::{cron_expression}"


async def _run_scheduled_workflow(
    workflow_path: str,
    cron_expression: str,
    workspace: str,
) -> None:
    """Job function: run a workflow for one cron tick."""
    from gantry.engine.dag import WorkflowValidationError, parse
    from gantry.engine.scheduler import execute_workflow
    from gantry.engine.triggers import Event, TriggerError

    logger.info(f"Schedule '{cron_expression}' triggered '{workflow_path}'")
    try:
        # Re-read on every tick so edits to the file are picked up
        workflow = parse(workflow_path)
        event = Event(
            name="schedule",
            ref=f"refs/heads/{settings.default_branch}",
            schedule=cron_expression,
        )
        result = await execute_workflow(
            workflow, event, workspace=workspace, record_history=True,
        )
        logger.info(f"Scheduled run {result.run_id} of '{workflow.name}': {result.status}")
    except (OSError, WorkflowValidationError, TriggerError) as e:
        logger.error(f"Schedule '{cron_expression}' for '{workflow_path}' failed: {e}")


def add_schedule(
    workflow_path: str | Path,
    cron_expression: str,
    workspace: str | Path | None = None,
) -> str:
    """Register a cron job for one ``schedule`` entry of a workflow."""
    scheduler = get_scheduler()
    path = Path(workflow_path)
    schedule_id = _schedule_id(path, cron_expression)

    trigger = CronTrigger.from_crontab(cron_expression, timezone="UTC")

    scheduler.add_job(
        _run_scheduled_workflow,
        trigger=trigger,
        id=schedule_id,
        args=[str(path.resolve()), cron_expression, str(Path(workspace or Path.cwd()).resolve())],
        replace_existing=True,
        misfire_grace_time=60,
        coalesce=True,
    )

    logger.info(f"Schedule registered: {cron_expression} for '{path.name}'")
    return schedule_id


def remove_schedule(schedule_id: str) -> bool:
    """Remove a scheduled job."""
    from apscheduler.jobstores.base import JobLookupError

    scheduler = get_scheduler()
    try:
        scheduler.remove_job(schedule_id)
        logger.info(f"Schedule '{schedule_id}' removed")
        return True
    except JobLookupError:
        logger.warning(f"Schedule '{schedule_id}' not found for removal")
        return False


def register_workflows(
    workflows_dir: str | Path | None = None,
    workspace: str | Path | None = None,
) -> list[str]:
    """Register every ``schedule`` trigger found in *workflows_dir*.

    Files that fail to parse are logged and skipped.
    """
    from gantry.engine.dag import WorkflowValidationError, parse

    directory = Path(workflows_dir or settings.workflows_dir)
    registered: list[str] = []
    if not directory.is_dir():
        logger.warning(f"Workflows directory not found: {directory}")
        return registered

    for path in sorted([*directory.glob("*.yml"), *directory.glob("*.yaml")]):
        try:
            workflow = parse(path)
        except (OSError, WorkflowValidationError) as e:
            logger.warning(f"Skipping '{path.name}': {e}")
            continue
        for trigger in workflow.triggers:
            if trigger.event != "schedule":
                continue
            for cron in trigger.crons:
                registered.append(add_schedule(path, cron, workspace))
    return registered


def list_schedules() -> list[dict]:
    """List all active scheduled jobs."""
    scheduler = get_scheduler()
    jobs = []
    for job in scheduler.get_jobs():
        # Jobs added before start() have no next_run_time yet
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": str(next_run) if next_run else None,
            "trigger": str(job.trigger),
        })
    return jobs
