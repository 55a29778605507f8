import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GenerationJob, Message
from app.db.session import dialect_insert
from app.domain.retry import utcnow
from stream_sdk.state import StreamState

logger = logging.getLogger(__name__)


async def save_message(session: AsyncSession, job: GenerationJob, state: StreamState) -> bool:
    """
    Persists the final answer of a job as its conversation message, in the caller's transaction.
    One message per job; returns False if it was already stored.
    """
    values = {
        "job_id": job.id,
        "message_id": job.message_id,
        "conversation_id": job.conversation_id,
        "owner_id": job.owner_id,
        "content": state.content,
        "thinking": state.thinking or None,
        "products": [p.model_dump(exclude_none=True) for p in state.products],
        "created_at": utcnow(),
    }

    insert = dialect_insert(session)
    if insert is not None:
        stmt = (
            insert(Message)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["job_id"])
            .returning(Message.id)
        )
        created = (await session.execute(stmt)).scalar_one_or_none() is not None
    else:
        created = await get_message(session, job.id) is None
        if created:
            session.add(Message(**values))
            await session.flush()

    if not created:
        logger.info("Message for job %s already stored", job.id)
    return created


async def get_message(session: AsyncSession, job_id: UUID) -> Optional[Message]:
    return await session.scalar(select(Message).where(Message.job_id == job_id))
