import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from app.api.v1.metrics import LEADER_STATUS
from app.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from app.services.stream_hub import StreamHub
from app.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Periodic housekeeping. The stale-job reaper runs only on the instance holding the
    leader lock; stream sweeping and gauges run everywhere.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        hub: Optional[StreamHub] = None,
        interval: float = 10.0,
        stale_after_seconds: float = 120.0,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 60.0,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.hub = hub
        self.interval = interval
        self.stale_after_seconds = stale_after_seconds
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._running = False
        self._task = None
        self._is_leader = False
        self._lock_conn: Optional[AsyncConnection] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_lock_connection()
        logger.info("Scheduler service stopped.")

    async def _loop(self):
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self) -> None:
        try:
            # The leader lock belongs to this connection, so it stays open across ticks.
            if self._lock_conn is None:
                self._lock_conn = await self.engine.connect()

            is_leader = await try_advisory_lock(self._lock_conn)
            await self._lock_conn.commit()

            if is_leader and not self._is_leader:
                logger.info("Acquired leadership. Starting stale-job reaper.")
            elif not is_leader and self._is_leader:
                logger.info("Lost leadership. Stopping stale-job reaper.")
            self._is_leader = is_leader

            async with self.session_factory() as session:
                if is_leader:
                    await run_leader_tasks(
                        session,
                        stale_after_seconds=self.stale_after_seconds,
                        retry_base_delay=self.retry_base_delay,
                        retry_max_delay=self.retry_max_delay,
                    )
                await run_metrics_tasks(session)

        except Exception as e:
            logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
            self._is_leader = False
            # Reconnect on the next tick
            await self._release_lock_connection()

        LEADER_STATUS.set(1 if self._is_leader else 0)

        if self.hub is not None:
            self.hub.sweep()

    async def _release_lock_connection(self):
        if self._lock_conn is not None:
            try:
                await self._lock_conn.close()
            except Exception as e:
                logger.warning(f"Error closing scheduler lock connection: {e}")
            self._lock_conn = None
