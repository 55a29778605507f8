import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


class FrameChannel:
    """
    Append-only log of the encoded frame lines of one job attempt.

    Readers follow it from any line offset: lines already written are replayed,
    then new lines are delivered as they are published until the channel closes.
    """

    def __init__(self, job_id: UUID, attempt: int):
        self.job_id = job_id
        self.attempt = attempt
        self.lines: list[bytes] = []
        self.closed_at: Optional[float] = None
        self._changed = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    async def publish(self, line: bytes) -> None:
        async with self._changed:
            if self.closed:
                raise RuntimeError(f"Stream for job {self.job_id} is closed")
            self.lines.append(line)
            self._changed.notify_all()

    async def close(self, now: float) -> None:
        async with self._changed:
            if self.closed_at is None:
                self.closed_at = now
            self._changed.notify_all()

    async def follow(self, offset: int = 0) -> AsyncIterator[bytes]:
        position = max(offset, 0)
        while True:
            async with self._changed:
                while position >= len(self.lines) and not self.closed:
                    await self._changed.wait()
                batch = self.lines[position:]
                finished = self.closed

            for line in batch:
                yield line
            position += len(batch)

            if finished:
                return


class StreamHub:
    """In-process registry of live frame channels, one per job (latest attempt wins)."""

    def __init__(self, retention_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._channels: dict[UUID, FrameChannel] = {}

    def open(self, job_id: UUID, attempt: int) -> FrameChannel:
        previous = self._channels.get(job_id)
        if previous is not None and not previous.closed:
            logger.warning("Replacing open stream of job %s (attempt %d)", job_id, previous.attempt)
        channel = FrameChannel(job_id, attempt)
        self._channels[job_id] = channel
        return channel

    def get(self, job_id: UUID) -> Optional[FrameChannel]:
        return self._channels.get(job_id)

    async def close(self, channel: FrameChannel) -> None:
        await channel.close(self._clock())

    def sweep(self) -> int:
        """Drops channels that closed more than retention_seconds ago."""
        cutoff = self._clock() - self.retention_seconds
        expired = [
            job_id for job_id, channel in self._channels.items()
            if channel.closed_at is not None and channel.closed_at <= cutoff
        ]
        for job_id in expired:
            del self._channels[job_id]
        if expired:
            logger.debug("Swept %d closed streams", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._channels)
