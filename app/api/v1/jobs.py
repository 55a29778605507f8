from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import AppSettings, DbSession, Hub, OwnerId
from app.commands.cancel_job import cancel_job
from app.commands.enqueue_job import enqueue_job
from app.commands.list_jobs import get_job, list_jobs
from app.db.models import GenerationJob
from app.domain.errors import JobNotFoundError
from app.domain.models import JobSpec
from app.domain.states import JobStatus
from app.services.messages import get_message

router = APIRouter()

ATTEMPT_HEADER = "X-Job-Attempt"
OFFSET_HEADER = "X-Stream-Offset"


class JobCreate(BaseModel):
    message_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_retries: Optional[int] = Field(default=None, ge=0)


class JobResponse(BaseModel):
    id: UUID
    message_id: str
    conversation_id: str
    owner_id: str
    status: JobStatus
    priority: int
    retry_count: int
    max_retries: int
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    job_id: UUID
    message_id: str
    conversation_id: str
    content: str
    thinking: Optional[str] = None
    products: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


async def _owned_job(session: AsyncSession, job_id: UUID, owner_id: str) -> GenerationJob:
    try:
        return await get_job(session, job_id, owner_id=owner_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, session: DbSession, owner_id: OwnerId, settings: AppSettings):
    job = await enqueue_job(
        session,
        JobSpec(
            message_id=body.message_id,
            conversation_id=body.conversation_id,
            owner_id=owner_id,
            payload=body.payload,
            priority=body.priority,
            max_retries=body.max_retries,
        ),
        default_max_retries=settings.DEFAULT_MAX_RETRIES,
    )
    await session.commit()
    return job


@router.get("", response_model=list[JobResponse])
async def get_jobs(session: DbSession, owner_id: OwnerId, status: Optional[JobStatus] = None):
    return await list_jobs(session, owner_id, status=status)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job_status(job_id: UUID, session: DbSession, owner_id: OwnerId):
    return await _owned_job(session, job_id, owner_id)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel(job_id: UUID, session: DbSession, owner_id: OwnerId):
    try:
        job = await cancel_job(session, job_id, owner_id=owner_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    await session.commit()
    return job


@router.get("/{job_id}/stream")
async def stream_job(
    job_id: UUID,
    session: DbSession,
    owner_id: OwnerId,
    hub: Hub,
    offset: int = Query(default=0, ge=0),
    attempt: Optional[int] = Query(default=None, ge=1),
):
    """
    Line-delimited frames of the job's current attempt, replayed from line `offset`.
    A client resuming a different attempt gets the new attempt from line 0; the
    effective attempt and offset are returned in the response headers.
    """
    await _owned_job(session, job_id, owner_id)
    # Streams outlive the request; give the connection back before following one.
    await session.close()

    channel = hub.get(job_id)
    if channel is None:
        raise HTTPException(status_code=410, detail="No live stream for this job")

    if attempt is not None and attempt != channel.attempt:
        offset = 0

    return StreamingResponse(
        channel.follow(offset),
        media_type="application/x-ndjson",
        headers={
            ATTEMPT_HEADER: str(channel.attempt),
            OFFSET_HEADER: str(offset),
            "Cache-Control": "no-cache",
        },
    )


@router.get("/{job_id}/message", response_model=MessageResponse)
async def get_job_message(job_id: UUID, session: DbSession, owner_id: OwnerId):
    await _owned_job(session, job_id, owner_id)
    message = await get_message(session, job_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not available")
    return message
