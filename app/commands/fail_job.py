import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOB_COMPLETE_TOTAL, JOB_FAILURES
from app.db.models import GenerationJob, JobEventLog
from app.domain.errors import JobNotFoundError
from app.domain.retry import calculate_next_run, utcnow
from app.domain.states import ACTIVE_STATES, JobEvent, JobStatus, NotificationType
from app.services.notifications import record_notification

logger = logging.getLogger(__name__)


async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    retry_base_delay: float = 2.0,
    retry_max_delay: float = 60.0,
    reason: str = "error",
    now: Optional[datetime] = None,
    attempt: Optional[int] = None,
) -> Optional[GenerationJob]:
    """
    Records a failed attempt of an in-flight job.

    With retries left the job goes back to QUEUED with retry_count + 1, claimable again
    after the backoff delay. Otherwise it becomes FAILED permanently and a job_failed
    notification is written in the same transaction.

    With `attempt`, only a failure of that attempt counts; a report from an attempt
    the job has since moved past is ignored.

    Returns the updated job, or None when the job was no longer in flight
    (cancelled, already terminal, superseded, or handled by a concurrent writer).
    """
    now = now or utcnow()

    stmt = select(GenerationJob).where(GenerationJob.id == job_id).execution_options(populate_existing=True)
    job = (await session.execute(stmt)).scalar_one_or_none()

    if not job:
        raise JobNotFoundError(job_id)

    if job.status not in ACTIVE_STATES:
        logger.info("Ignoring failure of job %s in state %s", job_id, job.status)
        return None

    if attempt is not None and job.attempt != attempt:
        logger.info("Ignoring failure of job %s attempt %d; job is on attempt %d", job_id, attempt, job.attempt)
        return None

    observed_retries = job.retry_count

    next_event: JobEvent
    if observed_retries < job.max_retries:
        next_run = calculate_next_run(observed_retries + 1, retry_base_delay, retry_max_delay, now=now)
        values = dict(
            status=JobStatus.QUEUED,
            retry_count=observed_retries + 1,
            available_at=next_run,
            started_at=None,
            heartbeat_at=None,
            error=error,
            updated_at=now,
        )
        next_event = JobEvent.RETRIED
    else:
        values = dict(
            status=JobStatus.FAILED,
            completed_at=now,
            error=error,
            updated_at=now,
        )
        next_event = JobEvent.FAILED

    # Compare-and-set on the observed retry_count so two failure reports for the
    # same attempt cannot both count.
    stmt = (
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status.in_(ACTIVE_STATES),
            GenerationJob.retry_count == observed_retries,
        )
        .values(**values)
        .returning(GenerationJob)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()

    if job is None:
        logger.info("Failure of job %s lost a race with another transition", job_id)
        return None

    session.add(JobEventLog(
        job_id=job.id,
        event_type=next_event,
        timestamp=now,
        meta={
            "error": error,
            "reason": reason,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
        }
    ))

    if next_event == JobEvent.FAILED:
        JOB_FAILURES.labels(type="final").inc()
        JOB_COMPLETE_TOTAL.labels(result="failed").inc()
        await record_notification(
            session,
            job,
            NotificationType.JOB_FAILED,
            {"message_id": job.message_id, "conversation_id": job.conversation_id, "error": error},
        )
        logger.warning("Job %s failed permanently after %d retries: %s", job.id, job.retry_count, error)
    else:
        JOB_FAILURES.labels(type="retryable").inc()
        logger.info("Job %s re-queued (retry %d/%d) until %s", job.id, job.retry_count, job.max_retries, job.available_at)

    await session.flush()
    return job
