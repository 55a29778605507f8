from datetime import timedelta

from sqlalchemy import select, update

from app.commands.dequeue_job import dequeue_job
from app.commands.fail_job import fail_job
from app.commands.heartbeat import heartbeat
from app.commands.list_jobs import get_job
from app.commands.requeue_expired import requeue_stale_jobs
from app.db.models import GenerationJob, Notification
from app.domain.retry import calculate_next_run, utcnow
from app.domain.states import JobStatus, NotificationType
from app.scheduler.dispatcher import Dispatcher
from app.services.messages import get_message
from app.services.stream_hub import StreamHub
from tests.fakes import ScriptedGenerator, failing_script, sample_frames


def _dispatcher(session_factory, generator, **kwargs) -> Dispatcher:
    kwargs.setdefault("retry_base_delay", 0)
    kwargs.setdefault("heartbeat_interval", 0.05)
    return Dispatcher(session_factory, generator, StreamHub(), **kwargs)


async def _drain(dispatcher: Dispatcher, max_passes: int = 20) -> int:
    passes = 0
    while passes < max_passes and await dispatcher.run_once():
        passes += 1
    return passes


async def _notifications(session_factory, job_id):
    async with session_factory() as session:
        stmt = select(Notification).where(Notification.job_id == job_id)
        return (await session.execute(stmt)).scalars().all()


def test_next_run_backs_off_exponentially_and_caps():
    now = utcnow()
    delays = [
        (calculate_next_run(n, base_delay_seconds=2, max_delay_seconds=10, jitter=False, now=now) - now).total_seconds()
        for n in (1, 2, 3, 4, 5)
    ]
    assert delays == [2, 4, 8, 10, 10]


def test_next_run_jitter_stays_within_ten_percent():
    now = utcnow()
    for _ in range(50):
        delay = (calculate_next_run(2, base_delay_seconds=5, now=now) - now).total_seconds()
        assert 10 <= delay <= 11


def test_zero_base_delay_retries_immediately():
    now = utcnow()
    assert calculate_next_run(3, base_delay_seconds=0, now=now) == now


async def test_fails_twice_then_succeeds(session_factory, enqueue):
    generator = ScriptedGenerator(failing_script(), failing_script(), sample_frames())
    job_id = await enqueue(max_retries=3)

    await _drain(_dispatcher(session_factory, generator))

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 2
    assert generator.calls == 3

    notifications = await _notifications(session_factory, job_id)
    assert [n.type for n in notifications] == [NotificationType.JOB_COMPLETED]


async def test_retries_exhausted_fails_with_single_notification(session_factory, enqueue):
    generator = ScriptedGenerator(failing_script("rate limited"))
    job_id = await enqueue(max_retries=3)

    await _drain(_dispatcher(session_factory, generator))

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 3
    assert job.completed_at is not None
    assert "rate limited" in job.error
    assert generator.calls == 4

    notifications = await _notifications(session_factory, job_id)
    assert [n.type for n in notifications] == [NotificationType.JOB_FAILED]


async def test_retry_waits_for_backoff(session_factory, enqueue):
    generator = ScriptedGenerator(failing_script(), sample_frames())
    job_id = await enqueue()

    dispatcher = _dispatcher(session_factory, generator, retry_base_delay=60)
    assert await dispatcher.run_once() == 1
    # Re-queued, but not claimable until the backoff elapses
    assert await dispatcher.run_once() == 0

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 1
    assert job.available_at > utcnow() + timedelta(seconds=50)


async def _claim(session_factory):
    async with session_factory() as session:
        async with session.begin():
            return await dequeue_job(session, 5)


async def test_duplicate_failure_report_counts_once(session_factory, enqueue):
    job_id = await enqueue()
    await _claim(session_factory)

    async with session_factory() as session:
        async with session.begin():
            first = await fail_job(session, job_id, "boom", retry_base_delay=0)
        async with session.begin():
            second = await fail_job(session, job_id, "boom again", retry_base_delay=0)

    assert first.retry_count == 1
    # Job is queued again, no longer in flight: the second report is ignored
    assert second is None

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.retry_count == 1
    assert job.error == "boom"


async def test_failure_of_cancelled_job_is_ignored(session_factory, enqueue):
    from app.commands.cancel_job import cancel_job

    job_id = await enqueue()
    await _claim(session_factory)
    async with session_factory() as session:
        async with session.begin():
            await cancel_job(session, job_id)
        async with session.begin():
            assert await fail_job(session, job_id, "late error") is None

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.status == JobStatus.CANCELLED
    assert await _notifications(session_factory, job_id) == []



async def _reclaimed_after_reap(session_factory, enqueue):
    """Claims a job, lets the reaper take it back, and claims it again."""
    job_id = await enqueue()
    first = await _claim(session_factory)
    async with session_factory() as session:
        async with session.begin():
            await fail_job(session, job_id, "heartbeat lost", retry_base_delay=0)
    second = await _claim(session_factory)
    assert (first.attempt, second.attempt) == (1, 2)
    return first, second


async def test_superseded_attempt_cannot_complete_job(session_factory, enqueue):
    first, _ = await _reclaimed_after_reap(session_factory, enqueue)
    generator = ScriptedGenerator(sample_frames())

    await _dispatcher(session_factory, generator).process_job(first)

    async with session_factory() as session:
        job = await get_job(session, first.id)
        assert await get_message(session, first.id) is None
    # Attempt 2 still owns the job
    assert job.status == JobStatus.PROCESSING
    assert job.retry_count == 1
    assert await _notifications(session_factory, first.id) == []


async def test_superseded_attempt_failure_and_heartbeat_are_ignored(session_factory, enqueue):
    first, _ = await _reclaimed_after_reap(session_factory, enqueue)

    async with session_factory() as session:
        async with session.begin():
            assert await fail_job(session, first.id, "late error", retry_base_delay=0, attempt=1) is None
            assert await heartbeat(session, first.id, attempt=1) is None
            assert await heartbeat(session, first.id, attempt=2) == JobStatus.PROCESSING

    async with session_factory() as session:
        job = await get_job(session, first.id)
    assert job.retry_count == 1
    assert job.error == "heartbeat lost"


async def test_reaper_requeues_stale_jobs(session_factory, enqueue):
    stale = await enqueue()
    fresh = await enqueue()
    await _claim(session_factory)
    await _claim(session_factory)

    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == stale)
                .values(heartbeat_at=utcnow() - timedelta(minutes=10))
            )

    async with session_factory() as session:
        async with session.begin():
            recovered = await requeue_stale_jobs(session, stale_after_seconds=60, retry_base_delay=0)

    assert recovered == 1
    async with session_factory() as session:
        stale_job = await get_job(session, stale)
        fresh_job = await get_job(session, fresh)
    assert stale_job.status == JobStatus.QUEUED
    assert stale_job.retry_count == 1
    assert fresh_job.status == JobStatus.PROCESSING


async def test_reaper_fails_stale_job_without_retries(session_factory, enqueue):
    job_id = await enqueue(max_retries=0)
    await _claim(session_factory)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)
                .values(heartbeat_at=utcnow() - timedelta(minutes=10))
            )
        async with session.begin():
            assert await requeue_stale_jobs(session, stale_after_seconds=60) == 1

    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job.status == JobStatus.FAILED
    assert [n.type for n in await _notifications(session_factory, job_id)] == [NotificationType.JOB_FAILED]
