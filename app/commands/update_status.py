import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_COMPLETE_TOTAL, JOB_DURATION
from app.db.models import GenerationJob, JobEventLog
from app.domain.retry import utcnow
from app.domain.states import ALLOWED_SOURCES, JobEvent, JobStatus, is_terminal

logger = logging.getLogger(__name__)

_EVENTS = {
    JobStatus.PROCESSING: JobEvent.CLAIMED,
    JobStatus.STREAMING: JobEvent.STREAMING,
    JobStatus.COMPLETED: JobEvent.COMPLETED,
    JobStatus.FAILED: JobEvent.FAILED,
    JobStatus.QUEUED: JobEvent.RETRIED,
    JobStatus.CANCELLED: JobEvent.CANCELLED,
}


async def update_status(
    session: AsyncSession,
    job_id: UUID,
    status: JobStatus,
    now: Optional[datetime] = None,
    attempt: Optional[int] = None,
    **fields: Any,
) -> Optional[GenerationJob]:
    """
    Applies a state transition if the job is in a state the target may be reached from.
    With `attempt`, it only applies while the job is still on that attempt, so a
    dispatcher whose claim was taken over by a retry cannot advance the new one.

    Returns the updated job, or None when the transition did not apply (job missing,
    already in the target state, or terminal). Re-applying a transition is therefore
    a no-op, and nothing ever leaves COMPLETED, FAILED or CANCELLED.
    """
    now = now or utcnow()

    values: dict[str, Any] = {"status": status, "updated_at": now, **fields}
    if is_terminal(status):
        values.setdefault("completed_at", now)

    conditions = [
        GenerationJob.id == job_id,
        GenerationJob.status.in_(ALLOWED_SOURCES[status]),
    ]
    if attempt is not None:
        conditions.append(GenerationJob.retry_count == attempt - 1)

    stmt = (
        update(GenerationJob)
        .where(*conditions)
        .values(**values)
        .returning(GenerationJob)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    result = await session.execute(stmt)
    job = result.scalar_one_or_none()

    if job is None:
        logger.debug("Transition of job %s to %s did not apply", job_id, status)
        return None

    session.add(JobEventLog(
        job_id=job.id,
        event_type=_EVENTS[status],
        timestamp=now,
        meta={k: _jsonable(v) for k, v in fields.items()},
    ))
    await session.flush()

    if status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
        JOB_COMPLETE_TOTAL.labels(result=str(status)).inc()
    if status == JobStatus.COMPLETED and job.started_at:
        duration = (now - job.started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.observe(duration)

    return job


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, UUID)):
        return str(value)
    return value
