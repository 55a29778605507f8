from dataclasses import dataclass, field
from typing import Iterable, Optional, assert_never

from stream_sdk.frames import (
    Frame,
    FrameDecoder,
    GenerationStatus,
    Product,
    ProductsFrame,
    StatusFrame,
    TextFrame,
    ThinkingFrame,
    looks_like_frames,
)


@dataclass
class StreamState:
    """
    Materialized view of one generation stream.

    Frames must be applied in the order they were written. Text and thinking
    deltas are appended; products are merged by url so a later listing of the
    same link replaces the earlier one while keeping its position.
    """

    content: str = ""
    thinking: str = ""
    status: Optional[GenerationStatus] = None
    status_updates: list[GenerationStatus] = field(default_factory=list)
    products: list[Product] = field(default_factory=list)
    frames_applied: int = 0

    def apply(self, frame: Frame) -> None:
        match frame:
            case StatusFrame(content=status):
                self.status = status
                self.status_updates.append(status)
            case ThinkingFrame(content=delta):
                self.thinking += delta
            case TextFrame(content=delta):
                self.content += delta
            case ProductsFrame(content=items):
                self._merge_products(items)
            case _:
                assert_never(frame)
        self.frames_applied += 1

    def apply_all(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            self.apply(frame)

    def _merge_products(self, items: list[Product]) -> None:
        positions = {p.url: i for i, p in enumerate(self.products)}
        for item in items:
            if item.url in positions:
                self.products[positions[item.url]] = item
            else:
                positions[item.url] = len(self.products)
                self.products.append(item)

    def snapshot(self) -> "StreamState":
        return StreamState(
            content=self.content,
            thinking=self.thinking,
            status=self.status,
            status_updates=list(self.status_updates),
            products=list(self.products),
            frames_applied=self.frames_applied,
        )


def parse_raw_stream(raw: str) -> tuple[str, str]:
    """
    Rebuilds (content, thinking) from a raw blob of protocol lines.

    Blobs that do not look like frame records are plain answer text and are
    returned unchanged. Corrupt or partial lines are skipped by the decoder.
    """
    if not looks_like_frames(raw):
        return raw, ""

    state = StreamState()
    decoder = FrameDecoder()
    state.apply_all(decoder.feed(raw))
    state.apply_all(decoder.flush())
    return state.content, state.thinking
