import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Optional

import httpx

from stream_sdk.checkpoints import CHECKPOINT_INTERVAL, CheckpointManager
from stream_sdk.client import StreamClient, StreamClientError, StreamGoneError
from stream_sdk.frames import Frame, FrameDecoder, Product
from stream_sdk.state import StreamState

logger = logging.getLogger(__name__)

# Roughly three frames at 60fps; decoding and checkpointing are never throttled.
RENDER_INTERVAL_SECONDS = 0.05

UpdateCallback = Callable[[StreamState], Any]


class ReaderOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RECOVERABLE = "recoverable"  # checkpoint kept, live stream gone


@dataclass
class ReaderResult:
    outcome: ReaderOutcome
    state: StreamState
    resumed: bool = False
    error: Optional[str] = None


class ResumableReader:
    """
    Client-side consumer for one job's frame stream.

    On start it renders any live checkpoint for the message, then follows the
    server stream from the checkpoint's line offset. Every `checkpoint_interval`
    decoded frames the accumulated output is saved, so an interruption loses at
    most that many frames of work and never re-invokes generation.
    """

    def __init__(
        self,
        client: StreamClient,
        checkpoints: CheckpointManager,
        job_id: str,
        conversation_id: str,
        message_id: str,
        on_update: Optional[UpdateCallback] = None,
        checkpoint_interval: int = CHECKPOINT_INTERVAL,
        render_interval: float = RENDER_INTERVAL_SECONDS,
        max_reconnects: int = 3,
        reconnect_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.checkpoints = checkpoints
        self.job_id = job_id
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.on_update = on_update
        self.checkpoint_interval = checkpoint_interval
        self.render_interval = render_interval
        self.max_reconnects = max_reconnects
        self.reconnect_delay = reconnect_delay
        self._clock = clock

        self.state = StreamState()
        self.attempt: Optional[int] = None
        self.offset = 0
        self.resumed = False
        self._frames_since_checkpoint = 0
        self._last_render = -math.inf

    async def run(self) -> ReaderResult:
        await self._restore()

        reconnects = 0
        while True:
            try:
                await self._follow()
            except StreamGoneError:
                result = await self._resolve_without_stream()
                if result is not None:
                    return result
                last_error = "stream gone"
            except (httpx.TransportError, StreamClientError) as e:
                logger.warning("Stream for job %s interrupted at line %d: %s", self.job_id, self.offset, e)
                await self._checkpoint()
                last_error = str(e)
            else:
                result = await self._settle()
                if result is not None:
                    return result
                last_error = "stream ended before the job finished"

            if reconnects >= self.max_reconnects:
                return self._finish(ReaderOutcome.RECOVERABLE, error=last_error)
            reconnects += 1
            await asyncio.sleep(self.reconnect_delay * (2 ** (reconnects - 1)))

    async def _restore(self) -> None:
        checkpoint = await self.checkpoints.load_checkpoint(self.message_id)
        if checkpoint is None or checkpoint.is_complete:
            return

        self.resumed = True
        restored = checkpoint.to_state()
        self._render(restored, force=True)

        self.state = restored
        if checkpoint.frame_offset > 0:
            self.offset = checkpoint.frame_offset
            self.attempt = checkpoint.attempt or None

    async def _follow(self) -> None:
        async with self.client.stream(self.job_id, offset=self.offset, attempt=self.attempt) as live:
            if live.offset == 0:
                # Replaying from the first line rebuilds the output from scratch.
                if self.offset or (self.attempt is not None and live.attempt != self.attempt):
                    logger.info("Job %s restarted as attempt %d, discarding partial output", self.job_id, live.attempt)
                self.state = StreamState()
            self.attempt = live.attempt
            self.offset = live.offset

            decoder = FrameDecoder()
            base = live.offset
            async for chunk in live.chunks():
                await self._apply(decoder.feed(chunk), base + decoder.lines_consumed)
            await self._apply(decoder.flush(), base + decoder.lines_consumed)

            if decoder.corrupt_lines:
                logger.warning("Skipped %d corrupt frame lines for job %s", decoder.corrupt_lines, self.job_id)

    async def _apply(self, frames: list[Frame], offset: int) -> None:
        self.state.apply_all(frames)
        self.offset = offset
        self._frames_since_checkpoint += len(frames)
        if self._frames_since_checkpoint >= self.checkpoint_interval:
            await self._checkpoint()
        if frames:
            self._render(self.state)

    async def _settle(self) -> Optional[ReaderResult]:
        try:
            job = await self.client.get_job(self.job_id)
        except (httpx.TransportError, StreamClientError) as e:
            await self._checkpoint()
            return self._finish(ReaderOutcome.RECOVERABLE, error=str(e))

        status = job.get("status")
        if status == "completed":
            await self.checkpoints.save_checkpoint(
                self.conversation_id, self.message_id, self.state.content, self.state.thinking, is_complete=True
            )
            await self.checkpoints.clear_checkpoint(self.message_id)
            return self._finish(ReaderOutcome.COMPLETED)
        if status == "failed":
            await self.checkpoints.clear_checkpoint(self.message_id)
            return self._finish(ReaderOutcome.FAILED, error=job.get("error"))
        if status == "cancelled":
            await self.checkpoints.clear_checkpoint(self.message_id)
            return self._finish(ReaderOutcome.CANCELLED)
        # Still in flight: the attempt we followed ended and a retry is pending.
        return None

    async def _resolve_without_stream(self) -> Optional[ReaderResult]:
        try:
            job = await self.client.get_job(self.job_id)
        except (httpx.TransportError, StreamClientError) as e:
            return self._finish(ReaderOutcome.RECOVERABLE, error=str(e))

        status = job.get("status")
        if status == "completed":
            try:
                message = await self.client.get_message(self.job_id)
            except (httpx.TransportError, StreamClientError) as e:
                return self._finish(ReaderOutcome.RECOVERABLE, error=str(e))
            if message is not None:
                self.state = StreamState(
                    content=message.get("content") or "",
                    thinking=message.get("thinking") or "",
                    products=[Product.model_validate(p) for p in message.get("products") or []],
                )
            await self.checkpoints.clear_checkpoint(self.message_id)
            return self._finish(ReaderOutcome.COMPLETED)
        if status in ("failed", "cancelled"):
            await self.checkpoints.clear_checkpoint(self.message_id)
            outcome = ReaderOutcome.FAILED if status == "failed" else ReaderOutcome.CANCELLED
            return self._finish(outcome, error=job.get("error"))
        if status == "queued":
            # Not started yet (or waiting out a retry delay); keep polling.
            return None
        return self._finish(ReaderOutcome.RECOVERABLE, error="stream gone")

    async def _checkpoint(self) -> None:
        self._frames_since_checkpoint = 0
        try:
            await self.checkpoints.save_checkpoint(
                self.conversation_id,
                self.message_id,
                self.state.content,
                self.state.thinking or None,
                job_id=self.job_id,
                attempt=self.attempt or 0,
                frame_offset=self.offset,
                status=self.state.status,
                products=self.state.products,
            )
        except Exception as e:
            logger.warning("Failed to save checkpoint for message %s: %s", self.message_id, e)

    def _render(self, state: StreamState, force: bool = False) -> None:
        if self.on_update is None:
            return
        now = self._clock()
        if not force and now - self._last_render < self.render_interval:
            return
        self._last_render = now
        self.on_update(state.snapshot())

    def _finish(self, outcome: ReaderOutcome, error: Optional[str] = None) -> ReaderResult:
        self._render(self.state, force=True)
        return ReaderResult(outcome=outcome, state=self.state.snapshot(), resumed=self.resumed, error=error)
