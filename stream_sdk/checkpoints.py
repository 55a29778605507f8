import logging
import time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from stream_sdk.frames import GenerationStatus, Product, looks_like_frames
from stream_sdk.state import StreamState, parse_raw_stream
from stream_sdk.stores import Clock, KeyValueStore

logger = logging.getLogger(__name__)

CHECKPOINT_KEY_PREFIX = "stream_checkpoint_"
CHECKPOINT_MAX_AGE_SECONDS = 60 * 60
CHECKPOINT_INTERVAL = 100
# Records without a version were written by browser clients before this SDK existed.
CHECKPOINT_VERSION = 1


class Checkpoint(BaseModel):
    """
    Resumable snapshot of one message's decoded output.
    Serialized with camelCase keys so records written by older browser clients load as-is.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    conversation_id: str
    message_id: str
    content: str = ""
    thinking: Optional[str] = None
    raw_content: Optional[str] = None
    timestamp: float
    is_complete: bool = False

    job_id: Optional[str] = None
    attempt: int = 0
    frame_offset: int = 0
    status: Optional[GenerationStatus] = None
    products: list[Product] = Field(default_factory=list)
    version: int = 0

    @field_validator("timestamp", mode="before")
    @classmethod
    def _accept_millisecond_timestamps(cls, value: Any) -> Any:
        # Browser clients stored Date.now() milliseconds.
        if isinstance(value, (int, float)) and value > 1e11:
            return value / 1000.0
        return value

    def to_state(self) -> StreamState:
        return StreamState(
            content=self.content,
            thinking=self.thinking or "",
            status=self.status,
            products=list(self.products),
        )


def checkpoint_key(message_id: str) -> str:
    return f"{CHECKPOINT_KEY_PREFIX}{message_id}"


class CheckpointManager:
    def __init__(
        self,
        store: KeyValueStore,
        max_age_seconds: float = CHECKPOINT_MAX_AGE_SECONDS,
        clock: Clock = time.time,
    ):
        self.store = store
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    async def save_checkpoint(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        thinking: Optional[str] = None,
        is_complete: bool = False,
        **progress: Any,
    ) -> Checkpoint:
        """
        Overwrites the single checkpoint for message_id.
        `progress` carries resume bookkeeping (job_id, attempt, frame_offset, status, products).
        """
        checkpoint = Checkpoint(
            conversation_id=conversation_id,
            message_id=message_id,
            content=content,
            thinking=thinking,
            timestamp=self._clock(),
            is_complete=is_complete,
            version=CHECKPOINT_VERSION,
            **progress,
        )
        await self.store.set(
            checkpoint_key(message_id),
            checkpoint.model_dump_json(by_alias=True, exclude_none=True),
            ttl=self.max_age_seconds,
        )
        return checkpoint

    async def load_checkpoint(self, message_id: str) -> Optional[Checkpoint]:
        key = checkpoint_key(message_id)
        raw = await self.store.get(key)
        if raw is None:
            return None

        try:
            checkpoint = Checkpoint.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable checkpoint for message %s: %s", message_id, e.error_count())
            await self.store.delete(key)
            return None

        if self.is_expired(checkpoint):
            await self.store.delete(key)
            return None

        return self._recover_fields(checkpoint)

    async def clear_checkpoint(self, message_id: str) -> None:
        await self.store.delete(checkpoint_key(message_id))

    async def sweep(self) -> int:
        """Removes expired and unreadable checkpoints. Returns how many were removed."""
        removed = await self.store.sweep_expired()
        for key in await self.store.keys(CHECKPOINT_KEY_PREFIX):
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                checkpoint = Checkpoint.model_validate_json(raw)
            except ValidationError:
                await self.store.delete(key)
                removed += 1
                continue
            if self.is_expired(checkpoint):
                await self.store.delete(key)
                removed += 1
        return removed

    def is_expired(self, checkpoint: Checkpoint) -> bool:
        return self._clock() - checkpoint.timestamp > self.max_age_seconds

    def _recover_fields(self, checkpoint: Checkpoint) -> Checkpoint:
        # Structured fields win. Older clients sometimes stored raw protocol lines in
        # `content`; records written here are always decoded text and load as-is.
        legacy = checkpoint.version < CHECKPOINT_VERSION
        if legacy and checkpoint.content and looks_like_frames(checkpoint.content):
            content, thinking = parse_raw_stream(checkpoint.content)
            return checkpoint.model_copy(update={"content": content, "thinking": checkpoint.thinking or thinking})

        if not checkpoint.content and not checkpoint.thinking and checkpoint.raw_content:
            content, thinking = parse_raw_stream(checkpoint.raw_content)
            return checkpoint.model_copy(update={"content": content, "thinking": thinking or None})

        return checkpoint
