import codecs
import json
import logging
from enum import StrEnum
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\n"


class FrameType(StrEnum):
    STATUS = "status"
    THINKING = "thinking"
    TEXT = "text"
    PRODUCTS = "products"


class GenerationStatus(StrEnum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    ANALYZING_BRAND = "analyzing_brand"
    THINKING = "thinking"
    SEARCHING_WEB = "searching_web"
    CRAFTING_SUBJECT = "crafting_subject"
    WRITING_HERO = "writing_hero"
    DEVELOPING_BODY = "developing_body"
    CREATING_CTA = "creating_cta"
    FINALIZING = "finalizing"


class Product(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    description: Optional[str] = None


class StatusFrame(BaseModel):
    type: Literal["status"] = "status"
    content: GenerationStatus


class ThinkingFrame(BaseModel):
    type: Literal["thinking"] = "thinking"
    content: str


class TextFrame(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ProductsFrame(BaseModel):
    type: Literal["products"] = "products"
    content: list[Product]

    @field_validator("content", mode="before")
    @classmethod
    def _drop_incomplete_products(cls, value: Any) -> Any:
        # Entries without a name and url are unusable links, not a broken frame.
        if not isinstance(value, list):
            return value
        return [
            item for item in value
            if isinstance(item, dict) and item.get("name") and item.get("url")
        ]


Frame = Annotated[
    Union[StatusFrame, ThinkingFrame, TextFrame, ProductsFrame],
    Field(discriminator="type"),
]

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(Frame)

_KNOWN_TYPES = frozenset(t.value for t in FrameType)

# Record types emitted by older producers that carry no state for consumers.
IGNORABLE_TYPES = frozenset({"thinking_start", "thinking_end", "tool_use"})

# Older producers spread the payload under a type-specific key instead of "content".
_LEGACY_CONTENT_KEYS = {
    FrameType.STATUS: "status",
    FrameType.PRODUCTS: "products",
}


def encode_frame(frame: Frame) -> bytes:
    """
    Serializes one frame as a complete, newline-terminated record.
    A record is never split across writes, so callers flush the returned bytes as a unit.
    """
    body = frame.model_dump_json(exclude_none=True)
    return (body + LINE_TERMINATOR).encode("utf-8")


def encode_frames(frames: Iterable[Frame]) -> bytes:
    return b"".join(encode_frame(f) for f in frames)


class FrameDecoder:
    """
    Incremental, tolerant decoder for the line-delimited frame protocol.

    Input may arrive in arbitrary chunk boundaries, including mid-record and
    mid-codepoint. Complete lines are parsed in order; a line that fails to parse
    is counted and skipped, unknown record types are counted and ignored.

    `lines_consumed` counts every terminated, non-blank line seen so far. It matches
    the server's replay offset, which counts records rather than applied frames.
    """

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.lines_consumed = 0
        self.corrupt_lines = 0
        self.ignored_lines = 0

    def feed(self, data: Union[bytes, str]) -> list[Frame]:
        if isinstance(data, bytes):
            data = self._text.decode(data)
        self._buffer += data

        frames: list[Frame] = []
        while True:
            idx = self._buffer.find(LINE_TERMINATOR)
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            frame = self._consume_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        """Parses whatever remains after the stream ended without a final terminator."""
        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        frame = self._consume_line(tail)
        return [frame] if frame is not None else []

    def _consume_line(self, line: str) -> Optional[Frame]:
        line = line.strip()
        if not line:
            return None
        self.lines_consumed += 1

        try:
            record = json.loads(line)
        except ValueError:
            self.corrupt_lines += 1
            logger.debug("Skipping unparseable frame line (%d chars)", len(line))
            return None

        frame = parse_record(record)
        if frame is None:
            if isinstance(record, dict) and _is_unknown_type(record):
                self.ignored_lines += 1
            else:
                self.corrupt_lines += 1
        return frame


def _is_unknown_type(record: dict[str, Any]) -> bool:
    kind = record.get("type")
    return isinstance(kind, str) and kind not in _KNOWN_TYPES


def parse_record(record: Any) -> Optional[Frame]:
    """
    Validates one decoded JSON record into a frame.
    Returns None for unknown types and for records that do not validate.
    """
    if not isinstance(record, dict):
        return None

    kind = record.get("type")
    if kind in IGNORABLE_TYPES or _is_unknown_type(record):
        return None

    if "content" not in record and kind in _LEGACY_CONTENT_KEYS:
        legacy_key = _LEGACY_CONTENT_KEYS[FrameType(kind)]
        if legacy_key in record:
            record = {"type": kind, "content": record[legacy_key]}

    try:
        return _FRAME_ADAPTER.validate_python(record)
    except ValidationError as e:
        logger.debug("Dropping invalid %s frame: %s", kind, e.error_count())
        return None


def decode_frames(data: Union[bytes, str]) -> list[Frame]:
    """Decodes a complete buffer of protocol lines."""
    decoder = FrameDecoder()
    frames = decoder.feed(data)
    frames.extend(decoder.flush())
    return frames


def looks_like_frames(raw: str) -> bool:
    return '{"type":' in raw or '{"type": ' in raw
