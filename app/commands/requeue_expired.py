import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import REAPER_RECOVERED_JOBS
from app.commands.fail_job import fail_job
from app.db.models import GenerationJob
from app.domain.retry import utcnow
from app.domain.states import ACTIVE_STATES

logger = logging.getLogger(__name__)


async def requeue_stale_jobs(
    session: AsyncSession,
    stale_after_seconds: float,
    retry_base_delay: float = 2.0,
    retry_max_delay: float = 60.0,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> int:
    """
    Recovers in-flight jobs whose dispatcher stopped heartbeating (crash, lost node).
    A stale job counts as a failed attempt: it is re-queued or failed by the usual retry policy.
    Returns number of jobs recovered.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=stale_after_seconds)

    stmt = (
        select(GenerationJob.id)
        .where(
            GenerationJob.status.in_(ACTIVE_STATES),
            GenerationJob.heartbeat_at < cutoff,
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    stale_ids = (await session.execute(stmt)).scalars().all()

    count = 0
    for job_id in stale_ids:
        job = await fail_job(
            session,
            job_id,
            error="Dispatcher heartbeat lost",
            retry_base_delay=retry_base_delay,
            retry_max_delay=retry_max_delay,
            reason="heartbeat_lost",
            now=now,
        )
        if job is not None:
            count += 1

    if count > 0:
        REAPER_RECOVERED_JOBS.inc(count)
        logger.warning("Recovered %d stale jobs", count)

    await session.flush()
    return count
