import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.metrics import JOBS_ENQUEUED
from app.db.models import GenerationJob, JobEventLog
from app.domain.models import JobSpec
from app.domain.states import JobEvent, JobStatus

logger = logging.getLogger(__name__)


async def enqueue_job(session: AsyncSession, spec: JobSpec, default_max_retries: int = 3) -> GenerationJob:
    """
    Records a generation request in QUEUED state.
    Only inserts; dispatching happens independently.
    """
    job = GenerationJob(
        message_id=spec.message_id,
        conversation_id=spec.conversation_id,
        owner_id=spec.owner_id,
        payload=spec.payload,
        priority=spec.priority,
        max_retries=spec.max_retries if spec.max_retries is not None else default_max_retries,
        status=JobStatus.QUEUED,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        meta={"priority": job.priority, "max_retries": job.max_retries},
    ))
    await session.flush()

    JOBS_ENQUEUED.inc()
    logger.info("Enqueued job %s for message %s (priority %d)", job.id, job.message_id, job.priority)
    return job
