import json

from stream_sdk.frames import (
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
    looks_like_frames,
    parse_record,
)
from tests.fakes import sample_frames


def _decode_in_chunks(data: bytes, size: int):
    decoder = FrameDecoder()
    frames = []
    for i in range(0, len(data), size):
        frames.extend(decoder.feed(data[i:i + size]))
    frames.extend(decoder.flush())
    return frames, decoder


def test_encode_frame_is_one_terminated_line():
    line = encode_frame(TextFrame(content="Hello"))
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert json.loads(line) == {"type": "text", "content": "Hello"}


def test_round_trip_with_arbitrary_chunk_boundaries():
    frames = sample_frames(5) + [TextFrame(content="héllo wörld ✓"), ThinkingFrame(content="ünïcode")]
    data = encode_frames(frames)

    # Sizes that split records and multi-byte characters alike
    for size in (1, 2, 3, 7, 16, 64, len(data)):
        decoded, decoder = _decode_in_chunks(data, size)
        assert decoded == frames, f"chunk size {size}"
        assert decoder.lines_consumed == len(frames)
        assert decoder.corrupt_lines == 0


def test_corrupted_line_is_skipped_and_order_kept():
    frames = sample_frames(3)
    lines = [encode_frame(f) for f in frames]
    lines.insert(2, b'{"type": "text", "content": "unterminated\n')

    decoded, decoder = _decode_in_chunks(b"".join(lines), 5)

    assert decoded == frames
    assert decoder.corrupt_lines == 1
    assert decoder.lines_consumed == len(frames) + 1


def test_unknown_and_ignorable_types_are_dropped():
    data = (
        b'{"type": "thinking_start"}\n'
        b'{"type": "text", "content": "a"}\n'
        b'{"type": "tool_use", "name": "search"}\n'
        b'{"type": "brand_new_type", "content": 1}\n'
        b'{"type": "text", "content": "b"}\n'
    )
    decoder = FrameDecoder()
    frames = decoder.feed(data)

    assert frames == [TextFrame(content="a"), TextFrame(content="b")]
    assert decoder.ignored_lines == 3
    assert decoder.corrupt_lines == 0


def test_invalid_payload_for_known_type_counts_as_corrupt():
    decoder = FrameDecoder()
    frames = decoder.feed(b'{"type": "status", "content": "not-a-status"}\n{"type": "text", "content": 5}\n')
    assert frames == []
    assert decoder.corrupt_lines == 2


def test_blank_lines_are_not_counted():
    decoder = FrameDecoder()
    frames = decoder.feed(b'\n\n{"type": "text", "content": "x"}\n  \n')
    assert frames == [TextFrame(content="x")]
    assert decoder.lines_consumed == 1


def test_flush_parses_unterminated_tail():
    decoder = FrameDecoder()
    assert decoder.feed(b'{"type": "text", "content": "tail"}') == []
    assert decoder.flush() == [TextFrame(content="tail")]


def test_legacy_status_and_products_shapes():
    status = parse_record({"type": "status", "status": "searching_web"})
    products = parse_record({"type": "products", "products": [{"name": "Lamp", "url": "https://x/lamp"}]})

    assert status == StatusFrame(content=GenerationStatus.SEARCHING_WEB)
    assert products == ProductsFrame(content=[Product(name="Lamp", url="https://x/lamp")])


def test_products_without_name_or_url_are_dropped():
    frame = parse_record({
        "type": "products",
        "content": [
            {"name": "Ok", "url": "https://x/ok", "description": "fine"},
            {"name": "", "url": "https://x/empty"},
            {"url": "https://x/nameless"},
            "garbage",
        ],
    })
    assert frame == ProductsFrame(content=[Product(name="Ok", url="https://x/ok", description="fine")])


def test_example_stream_decodes_to_answer_status_and_products():
    data = (
        b'{"type":"status","content":"analyzing"}\n'
        b'{"type":"text","content":"Hel"}\n'
        b'{"type":"text","content":"lo"}\n'
        b'{"type":"products","content":[{"name":"Mug","url":"https://shop/mug"}]}\n'
    )
    frames = decode_frames(data)

    assert "".join(f.content for f in frames if isinstance(f, TextFrame)) == "Hello"
    assert [f.content for f in frames if isinstance(f, StatusFrame)] == [GenerationStatus.ANALYZING]
    assert len([f for f in frames if isinstance(f, ProductsFrame)]) == 1


def test_looks_like_frames():
    assert looks_like_frames('{"type":"text","content":"x"}')
    assert looks_like_frames('{"type": "text", "content": "x"}')
    assert not looks_like_frames("Just a plain answer.")
