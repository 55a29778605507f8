from datetime import timedelta

from prometheus_client import REGISTRY
from sqlalchemy import update

from app.commands.dequeue_job import dequeue_job
from app.commands.fail_job import fail_job
from app.commands.list_jobs import get_job
from app.db.models import GenerationJob
from app.domain.retry import utcnow
from app.domain.states import JobStatus
from app.scheduler.service import SchedulerService
from app.services.notifications import NotificationPublisher, list_notifications
from app.services.stream_hub import StreamHub


async def test_tick_reaps_stale_jobs_and_sweeps_streams(engine, session_factory, enqueue):
    stale = await enqueue()
    waiting = await enqueue()
    async with session_factory() as session:
        async with session.begin():
            await dequeue_job(session, 1)
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == stale)
                .values(heartbeat_at=utcnow() - timedelta(minutes=5))
            )

    hub = StreamHub(retention_seconds=0)
    await hub.close(hub.open(stale, attempt=1))

    scheduler = SchedulerService(engine, session_factory, hub=hub, stale_after_seconds=60, retry_base_delay=0)
    try:
        await scheduler.tick()
    finally:
        await scheduler.stop()

    # Backends without advisory locks always lead
    assert scheduler.is_leader
    assert len(hub) == 0

    async with session_factory() as session:
        assert (await get_job(session, stale)).status == JobStatus.QUEUED
        assert (await get_job(session, waiting)).status == JobStatus.QUEUED
    assert REGISTRY.get_sample_value("generation_queue_depth") == 2
    assert REGISTRY.get_sample_value("generation_jobs_inflight") == 0


async def test_publisher_marks_notifications_published(session_factory, enqueue):
    job_id = await enqueue(max_retries=0)
    async with session_factory() as session:
        async with session.begin():
            await dequeue_job(session, 5)
        async with session.begin():
            await fail_job(session, job_id, "boom")

    delivered = []

    async def sink(notification):
        delivered.append((notification.job_id, notification.type))

    publisher = NotificationPublisher(session_factory, sink=sink)
    assert await publisher.process_batch() == 1
    assert await publisher.process_batch() == 0
    assert [t for _, t in delivered] == ["job_failed"]

    async with session_factory() as session:
        notifications = await list_notifications(session, "owner-1")
    assert notifications[0].status == "PUBLISHED"
    assert notifications[0].published_at is not None


async def test_publisher_keeps_failed_deliveries_pending(session_factory, enqueue):
    job_id = await enqueue(max_retries=0)
    async with session_factory() as session:
        async with session.begin():
            await dequeue_job(session, 5)
        async with session.begin():
            await fail_job(session, job_id, "boom")

    async def broken_sink(notification):
        raise ConnectionError("sink down")

    assert await NotificationPublisher(session_factory, sink=broken_sink).process_batch() == 0

    async with session_factory() as session:
        notifications = await list_notifications(session, "owner-1")
    assert notifications[0].status == "PENDING"
