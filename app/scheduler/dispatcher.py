import asyncio
import logging
from contextlib import aclosing
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.metrics import FRAMES_EMITTED
from app.commands.dequeue_job import dequeue_job
from app.commands.fail_job import fail_job
from app.commands.heartbeat import heartbeat
from app.commands.update_status import update_status
from app.db.models import GenerationJob
from app.domain.cancellation import CancellationToken, JobCancelledError
from app.domain.states import ACTIVE_STATES, JobStatus, NotificationType
from app.services.enrichment import ContextEnricher
from app.services.generation import Generator
from app.services.messages import save_message
from app.services.notifications import record_notification
from app.services.stream_hub import StreamHub
from stream_sdk.frames import encode_frame
from stream_sdk.state import StreamState

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Claims queued jobs under the global ceiling and runs their generation.

    Every job attempt publishes its frames to the stream hub, accumulates the final
    message, and ends in exactly one of: completed, re-queued, failed, or (when the
    owner cancelled) discarded without further writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: Generator,
        hub: StreamHub,
        enricher: Optional[ContextEnricher] = None,
        max_concurrent: int = 5,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 5.0,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 60.0,
    ):
        self.session_factory = session_factory
        self.generator = generator
        self.hub = hub
        self.enricher = enricher
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    async def claim(self) -> Optional[GenerationJob]:
        async with self.session_factory() as session:
            async with session.begin():
                return await dequeue_job(session, self.max_concurrent)

    async def run_once(self) -> int:
        """
        One dispatch pass: claims until nothing is claimable or the ceiling is reached,
        then processes the batch concurrently. Returns the number of jobs processed.
        """
        jobs: list[GenerationJob] = []
        while True:
            job = await self.claim()
            if job is None:
                break
            jobs.append(job)

        if jobs:
            await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Dispatcher started (max_concurrent=%d).", self.max_concurrent)

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # Interrupted jobs stay in flight and are recovered by the stale-job reaper.
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Dispatcher stopped.")

    async def _loop(self):
        while self.running:
            try:
                await self._fill()
            except Exception as e:
                logger.error(f"Error in dispatcher loop: {e}", exc_info=True)

            if self._inflight:
                await asyncio.wait(self._inflight, timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED)
            else:
                await asyncio.sleep(self.poll_interval)

    async def _fill(self) -> int:
        claimed = 0
        while len(self._inflight) < self.max_concurrent:
            job = await self.claim()
            if job is None:
                break
            task = asyncio.create_task(self.process_job(job))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            claimed += 1
        return claimed

    async def process_job(self, job: GenerationJob) -> None:
        token = CancellationToken()
        channel = self.hub.open(job.id, job.attempt)
        watcher = asyncio.create_task(self._watch(job, token))
        state = StreamState()

        try:
            payload = await self._enrich(job.payload)

            streaming = False
            async with aclosing(self.generator.generate(payload, token)) as frames:
                async for frame in frames:
                    if token.cancelled:
                        break
                    if not streaming:
                        streaming = await self._mark_streaming(job)
                        if not streaming:
                            token.cancel("job left processing before the first frame")
                            break
                    state.apply(frame)
                    await channel.publish(encode_frame(frame))
                    FRAMES_EMITTED.labels(type=frame.type).inc()

            token.raise_if_cancelled()
            await self._complete(job, state)

        except JobCancelledError:
            logger.info("Job %s stopped (%s); output discarded", job.id, token.reason)
        except Exception as e:
            if token.cancelled:
                logger.info("Job %s errored after cancellation: %s", job.id, e)
                return
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.warning(f"Job {job.id} attempt {job.attempt} failed: {error_msg}")
            await self._fail(job, error_msg)

        finally:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
            await self.hub.close(channel)

    async def _enrich(self, payload: dict) -> dict:
        if self.enricher is None:
            return payload
        return await self.enricher.enrich(payload)

    async def _mark_streaming(self, job: GenerationJob) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                marked = await update_status(session, job.id, JobStatus.STREAMING, attempt=job.attempt)
        return marked is not None

    async def _complete(self, job: GenerationJob, state: StreamState) -> bool:
        # The conditional transition goes first; a job cancelled meanwhile keeps no message.
        async with self.session_factory() as session:
            async with session.begin():
                completed = await update_status(session, job.id, JobStatus.COMPLETED, attempt=job.attempt, error=None)
                if completed is None:
                    logger.info("Job %s no longer in flight, completion skipped", job.id)
                    return False

                await save_message(session, completed, state)
                await record_notification(
                    session,
                    completed,
                    NotificationType.JOB_COMPLETED,
                    {"message_id": completed.message_id, "conversation_id": completed.conversation_id},
                )

        logger.info("Job %s completed (%d frames)", job.id, state.frames_applied)
        return True

    async def _fail(self, job: GenerationJob, error: str) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await fail_job(
                        session,
                        job.id,
                        error,
                        retry_base_delay=self.retry_base_delay,
                        retry_max_delay=self.retry_max_delay,
                        attempt=job.attempt,
                    )
        except Exception as e:
            # The stale-job reaper picks the job up once its heartbeat ages out.
            logger.error("Failed to record failure of job %s: %s", job.id, e, exc_info=True)

    async def _watch(self, job: GenerationJob, token: CancellationToken) -> None:
        """Heartbeats the job and cancels the token once this attempt is no longer in flight."""
        while not token.cancelled:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        status = await heartbeat(session, job.id, attempt=job.attempt)
            except Exception as e:
                logger.warning(f"Heartbeat failed for job {job.id}: {e}")
                continue

            if status not in ACTIVE_STATES:
                token.cancel(f"job is {status}" if status else "job moved on to another attempt")
                return
