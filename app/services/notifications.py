import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.metrics import NOTIFICATIONS_PUBLISHED
from app.db.models import GenerationJob, Notification
from app.db.session import dialect_insert
from app.domain.retry import utcnow
from app.domain.states import NotificationType

logger = logging.getLogger(__name__)

NotificationSink = Callable[[Notification], Awaitable[None]]


async def record_notification(
    session: AsyncSession,
    job: GenerationJob,
    type: NotificationType,
    payload: Optional[dict[str, Any]] = None,
) -> bool:
    """
    Writes the notification for a terminal outcome inside the caller's transaction.
    Write-once: returns False when one of this type already exists for the job.
    """
    values = {
        "job_id": job.id,
        "owner_id": job.owner_id,
        "type": type,
        "payload": payload or {},
        "status": "PENDING",
        "created_at": utcnow(),
    }

    insert = dialect_insert(session)
    if insert is not None:
        stmt = (
            insert(Notification)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["job_id", "type"])
            .returning(Notification.id)
        )
        created = (await session.execute(stmt)).scalar_one_or_none() is not None
    else:
        existing = await session.scalar(
            select(Notification.id).where(Notification.job_id == job.id, Notification.type == type)
        )
        created = existing is None
        if created:
            session.add(Notification(**values))
            await session.flush()

    if not created:
        logger.info("Notification %s for job %s already recorded", type, job.id)
    return created


class NotificationPublisher:
    """
    Delivers pending notifications to the configured sink and marks them PUBLISHED.
    A notification whose delivery fails stays PENDING and is retried on the next batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: Optional[NotificationSink] = None,
        interval: float = 1.0,
        batch_size: int = 50,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.interval = interval
        self.batch_size = batch_size
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("NotificationPublisher started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("NotificationPublisher stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in NotificationPublisher: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(Notification)
                    .where(Notification.status == "PENDING")
                    .order_by(Notification.created_at.asc(), Notification.id.asc())
                    .with_for_update(skip_locked=True)
                    .limit(self.batch_size)
                )
                notifications = (await session.execute(stmt)).scalars().all()

                if not notifications:
                    return 0

                published = 0
                for notification in notifications:
                    try:
                        await self._publish(notification)
                    except Exception as e:
                        logger.error(f"Failed to publish notification {notification.id}: {e}")
                        continue
                    notification.status = "PUBLISHED"
                    notification.published_at = utcnow()
                    NOTIFICATIONS_PUBLISHED.labels(type=str(notification.type)).inc()
                    published += 1

                return published

    async def _publish(self, notification: Notification):
        if self.sink is not None:
            await self.sink(notification)
            return
        logger.info(
            "NOTIFY: ID=%s, Type=%s, Job=%s, Owner=%s",
            notification.id, notification.type, notification.job_id, notification.owner_id,
        )


async def list_notifications(session: AsyncSession, owner_id: str, limit: int = 100) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.owner_id == owner_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())
