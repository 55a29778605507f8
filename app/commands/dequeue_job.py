import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.api.v1.metrics import JOB_CLAIMS, JOB_START_DELAY
from app.db.models import GenerationJob, JobEventLog
from app.domain.retry import utcnow
from app.domain.states import ACTIVE_STATES, JobEvent, JobStatus
from app.utils.locking import acquire_claim_lock

logger = logging.getLogger(__name__)


async def dequeue_job(
    session: AsyncSession,
    max_concurrent: int,
    now: Optional[datetime] = None,
) -> Optional[GenerationJob]:
    """
    Atomically claims the most urgent available job, moving it to PROCESSING.

    The pick and the concurrency check are one conditional UPDATE:

        UPDATE generation_jobs SET status='processing', started_at=now, ...
        WHERE id = (SELECT id ... WHERE status='queued' AND available_at <= now
                    ORDER BY priority ASC, created_at ASC LIMIT 1 FOR UPDATE SKIP LOCKED)
          AND (SELECT count(*) ... WHERE status IN ('processing', 'streaming')) < :max
        RETURNING *

    Returns None when nothing is claimable or the ceiling is reached. Run it as its own
    transaction and commit right away; the claim is only visible to others once committed.
    """
    now = now or utcnow()

    await acquire_claim_lock(session)

    # Aliases keep the subqueries from correlating with the UPDATE target.
    candidate = aliased(GenerationJob)
    next_id = (
        select(candidate.id)
        .where(
            candidate.status == JobStatus.QUEUED,
            candidate.available_at <= now,
        )
        .order_by(candidate.priority.asc(), candidate.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    active = aliased(GenerationJob)
    in_flight = (
        select(func.count())
        .select_from(active)
        .where(active.status.in_(ACTIVE_STATES))
        .scalar_subquery()
    )

    stmt = (
        update(GenerationJob)
        .where(GenerationJob.id == next_id, in_flight < max_concurrent)
        .values(
            status=JobStatus.PROCESSING,
            started_at=now,
            heartbeat_at=now,
            updated_at=now,
        )
        .returning(GenerationJob)
        .execution_options(synchronize_session=False, populate_existing=True)
    )

    result = await session.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        return None

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CLAIMED,
        timestamp=now,
        meta={"attempt": job.attempt},
    ))
    await session.flush()

    JOB_CLAIMS.inc()
    delay = (now - job.available_at).total_seconds()
    if delay >= 0:
        JOB_START_DELAY.observe(delay)

    logger.info("Claimed job %s (attempt %d)", job.id, job.attempt)
    return job
