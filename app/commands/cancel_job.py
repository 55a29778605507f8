import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.commands.list_jobs import get_job
from app.commands.update_status import update_status
from app.db.models import GenerationJob
from app.domain.states import JobStatus, is_terminal

logger = logging.getLogger(__name__)


async def cancel_job(session: AsyncSession, job_id: UUID, owner_id: Optional[str] = None) -> GenerationJob:
    """
    Moves a non-terminal job to CANCELLED.

    Terminal jobs are returned unchanged. A dispatcher still working on the job notices
    the new state on its next heartbeat and discards its output; no failure
    notification is produced.
    """
    job = await get_job(session, job_id, owner_id=owner_id)

    if is_terminal(job.status):
        return job

    cancelled = await update_status(session, job_id, JobStatus.CANCELLED, error=None)
    if cancelled is not None:
        logger.info("Job %s cancelled by owner", job_id)
        return cancelled

    # Lost a race with a terminal transition; report what won.
    return await get_job(session, job_id, owner_id=owner_id)
