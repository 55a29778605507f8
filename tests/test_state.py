from stream_sdk.frames import (
    GenerationStatus,
    Product,
    ProductsFrame,
    StatusFrame,
    TextFrame,
    ThinkingFrame,
    encode_frames,
)
from stream_sdk.state import StreamState, parse_raw_stream


def test_apply_accumulates_each_frame_kind():
    state = StreamState()
    state.apply_all([
        StatusFrame(content=GenerationStatus.ANALYZING),
        ThinkingFrame(content="step one, "),
        TextFrame(content="Hel"),
        StatusFrame(content=GenerationStatus.WRITING_HERO),
        ThinkingFrame(content="step two"),
        TextFrame(content="lo"),
    ])

    assert state.content == "Hello"
    assert state.thinking == "step one, step two"
    assert state.status == GenerationStatus.WRITING_HERO
    assert state.status_updates == [GenerationStatus.ANALYZING, GenerationStatus.WRITING_HERO]
    assert state.frames_applied == 6


def test_products_merge_by_url_keeping_position():
    state = StreamState()
    state.apply(ProductsFrame(content=[
        Product(name="Mug", url="https://x/mug"),
        Product(name="Lamp", url="https://x/lamp"),
    ]))
    state.apply(ProductsFrame(content=[
        Product(name="Mug (blue)", url="https://x/mug", description="updated"),
        Product(name="Rug", url="https://x/rug"),
    ]))

    assert [p.url for p in state.products] == ["https://x/mug", "https://x/lamp", "https://x/rug"]
    assert state.products[0].name == "Mug (blue)"


def test_snapshot_is_independent():
    state = StreamState()
    state.apply(TextFrame(content="a"))
    snap = state.snapshot()
    state.apply(TextFrame(content="b"))
    assert snap.content == "a"
    assert state.content == "ab"


def test_parse_raw_stream_rebuilds_content_and_thinking():
    raw = encode_frames([
        StatusFrame(content=GenerationStatus.THINKING),
        ThinkingFrame(content="why"),
        TextFrame(content="Dear "),
        TextFrame(content="customer"),
    ]).decode() + '{"type": "text", "content": "broken\n'

    assert parse_raw_stream(raw) == ("Dear customer", "why")


def test_parse_raw_stream_passes_plain_text_through():
    assert parse_raw_stream("Plain answer text") == ("Plain answer text", "")
