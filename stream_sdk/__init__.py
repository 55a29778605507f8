from .checkpoints import Checkpoint, CheckpointManager
from .client import StreamClient, StreamClientError, StreamGoneError
from .frames import (
    Frame,
    FrameDecoder,
    GenerationStatus,
    Product,
    ProductsFrame,
    StatusFrame,
    TextFrame,
    ThinkingFrame,
    decode_frames,
    encode_frame,
    encode_frames,
)
from .reader import ReaderOutcome, ReaderResult, ResumableReader
from .state import StreamState, parse_raw_stream
from .stores import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore

__all__ = [
    "Checkpoint",
    "CheckpointManager",
    "Frame",
    "FrameDecoder",
    "GenerationStatus",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "Product",
    "ProductsFrame",
    "ReaderOutcome",
    "ReaderResult",
    "ResumableReader",
    "SqlKeyValueStore",
    "StatusFrame",
    "StreamClient",
    "StreamClientError",
    "StreamGoneError",
    "StreamState",
    "TextFrame",
    "ThinkingFrame",
    "decode_frames",
    "encode_frame",
    "encode_frames",
    "parse_raw_stream",
]
