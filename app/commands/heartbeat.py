from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GenerationJob
from app.domain.retry import utcnow
from app.domain.states import ACTIVE_STATES, JobStatus


async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    now: Optional[datetime] = None,
    attempt: Optional[int] = None,
) -> Optional[JobStatus]:
    """
    Refreshes heartbeat_at of an in-flight job and returns its current status.

    Any status outside PROCESSING/STREAMING tells the caller to stop working on the job
    (it was cancelled, or the reaper took it back). Returns None if the job is gone or,
    with `attempt`, if the job has moved on to a later attempt.
    """
    now = now or utcnow()

    conditions = [
        GenerationJob.id == job_id,
        GenerationJob.status.in_(ACTIVE_STATES),
    ]
    if attempt is not None:
        conditions.append(GenerationJob.retry_count == attempt - 1)

    stmt = (
        update(GenerationJob)
        .where(*conditions)
        .values(heartbeat_at=now)
        .returning(GenerationJob.status)
        .execution_options(synchronize_session=False)
    )
    status = (await session.execute(stmt)).scalar_one_or_none()
    if status is not None:
        return JobStatus(status)

    row = (await session.execute(
        select(GenerationJob.status, GenerationJob.retry_count).where(GenerationJob.id == job_id)
    )).one_or_none()
    if row is None:
        return None
    if attempt is not None and row.retry_count != attempt - 1:
        return None
    return JobStatus(row.status)
