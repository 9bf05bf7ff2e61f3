"""SQLAlchemy 2.0 async models for run history."""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    select,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload

from gantry.config import settings

if TYPE_CHECKING:
    from gantry.engine.scheduler import RunResult

logger = logging.getLogger(__name__)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""


class RunStatus(str, enum.Enum):
    """Possible conclusions of a workflow run."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class Run(Base):
    """A single workflow execution."""

    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_name: Mapped[str] = mapped_column(String(255), nullable=False)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False)
    outputs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    jobs: Mapped[list[JobRun]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRun.position"
    )


class JobRun(Base):
    """One job instance within a run."""

    __tablename__ = "job_runs"
    __table_args__ = (Index("ix_job_runs_run_id", "run_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    result: Mapped[str] = mapped_column(String(32), nullable=False)
    matrix: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    outputs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    steps: Mapped[list | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[Run] = relationship(back_populates="jobs")


# Database engine and session factory

def _build_engine_url() -> str:
    """Build the database URL, defaulting to SQLite in local mode."""
    if settings.database_url:
        return settings.database_url
    data_path = Path(settings.data_dir).resolve()
    data_path.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_path}/gantry.db"


def _build_engine_kwargs() -> dict:
    """Build engine kwargs based on database type."""
    url = _build_engine_url()
    kwargs: dict = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return kwargs


engine = create_async_engine(_build_engine_url(), **_build_engine_kwargs())
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _run_rows(result: RunResult) -> Run:
    run = Run(
        id=result.run_id,
        workflow_name=result.workflow,
        event=result.event,
        status=RunStatus(result.status),
        outputs=result.outputs or None,
        error=result.error,
        duration_seconds=result.duration_seconds,
        started_at=result.started_at,
        completed_at=result.completed_at,
    )
    position = 0
    for job in result.jobs.values():
        for instance in job.instances:
            run.jobs.append(JobRun(
                position=position,
                job_id=instance.job_id,
                instance_id=instance.instance_id,
                name=instance.name,
                result=instance.result,
                matrix=instance.matrix or None,
                outputs=instance.outputs or None,
                steps=[
                    {
                        "name": s.name,
                        "id": s.step_id,
                        "outcome": s.outcome,
                        "conclusion": s.conclusion,
                        "duration_seconds": round(s.duration_seconds, 3),
                    }
                    for s in instance.steps
                ],
                error=instance.error,
                started_at=instance.started_at,
                completed_at=instance.completed_at,
            ))
            position += 1
    return run


async def save_run_history(result: RunResult) -> bool:
    """Persist a concluded run; failures are logged, never raised."""
    try:
        async with async_session() as session:
            session.add(_run_rows(result))
            await session.commit()
        return True
    except Exception as e:
        logger.warning(f"Could not save run history for {result.run_id}: {e}")
        return False


async def list_runs(limit: int = 20, workflow: str | None = None) -> list[Run]:
    """Most recent runs first, with their job rows loaded."""
    stmt = select(Run).options(selectinload(Run.jobs)).order_by(Run.created_at.desc()).limit(limit)
    if workflow:
        stmt = stmt.where(Run.workflow_name == workflow)
    async with async_session() as session:
        rows = await session.execute(stmt)
        return list(rows.scalars().all())
