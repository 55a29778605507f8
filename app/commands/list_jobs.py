from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GenerationJob
from app.domain.errors import JobNotFoundError
from app.domain.states import JobStatus


async def get_job(session: AsyncSession, job_id: UUID, owner_id: Optional[str] = None) -> GenerationJob:
    """Fetches a job. Jobs of other owners are reported as not found."""
    stmt = select(GenerationJob).where(GenerationJob.id == job_id).execution_options(populate_existing=True)
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None or (owner_id is not None and job.owner_id != owner_id):
        raise JobNotFoundError(job_id)
    return job


async def list_jobs(
    session: AsyncSession,
    owner_id: str,
    status: Optional[JobStatus] = None,
    limit: int = 100,
) -> list[GenerationJob]:
    """Read-only listing of an owner's jobs, newest first."""
    stmt = select(GenerationJob).where(GenerationJob.owner_id == owner_id)
    if status is not None:
        stmt = stmt.where(GenerationJob.status == status)
    stmt = stmt.order_by(GenerationJob.created_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
