from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOBS_INFLIGHT, QUEUE_DEPTH
from app.commands.requeue_expired import requeue_stale_jobs
from app.db.models import GenerationJob
from app.domain.states import ACTIVE_STATES, JobStatus


async def run_leader_tasks(
    session: AsyncSession,
    stale_after_seconds: float,
    retry_base_delay: float = 2.0,
    retry_max_delay: float = 60.0,
) -> int:
    """
    Periodic maintenance that must run on exactly one instance:
    recovering jobs whose dispatcher stopped heartbeating.
    """
    recovered = await requeue_stale_jobs(
        session,
        stale_after_seconds=stale_after_seconds,
        retry_base_delay=retry_base_delay,
        retry_max_delay=retry_max_delay,
    )
    await session.commit()
    return recovered


async def run_metrics_tasks(session: AsyncSession) -> None:
    """
    Refreshes the queue gauges on every instance.
    Computed from storage rather than tracked incrementally so they never drift.
    """
    q_depth = select(func.count()).select_from(GenerationJob).where(GenerationJob.status == JobStatus.QUEUED)
    QUEUE_DEPTH.set((await session.execute(q_depth)).scalar() or 0)

    q_inflight = select(func.count()).select_from(GenerationJob).where(GenerationJob.status.in_(ACTIVE_STATES))
    JOBS_INFLIGHT.set((await session.execute(q_inflight)).scalar() or 0)

    await session.commit()
