"""Tests for the SSE stream normalizer."""
import json

import pytest

from ai.adapters.stream import (
    DONE_EVENT,
    SSELineDecoder,
    StreamFrame,
    canonical_delta,
    encode_delta,
    iter_text_deltas,
)


async def _chunks(parts):
    for part in parts:
        yield part


async def collect(parts, parse_frame=canonical_delta):
    return [text async for text in iter_text_deltas(_chunks(parts), parse_frame)]


def _line(text: str) -> str:
    record = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(record, ensure_ascii=False)}\n\n"


FRAGMENTS = ["# PRD", "\n\nÜberblick ✓", " 日本語のテキスト", " done 🚀"]
BODY = ("".join(_line(f) for f in FRAGMENTS) + "data: [DONE]\n\n").encode("utf-8")


class TestLineFraming:
    """Chunking must not change the output."""

    @pytest.mark.asyncio
    async def test_single_chunk(self):
        assert await collect([BODY]) == FRAGMENTS

    @pytest.mark.asyncio
    async def test_every_two_way_split(self):
        for cut in range(1, len(BODY)):
            result = await collect([BODY[:cut], BODY[cut:]])
            assert result == FRAGMENTS, f"split at byte {cut}"

    @pytest.mark.asyncio
    async def test_byte_by_byte(self):
        parts = [BODY[i:i + 1] for i in range(len(BODY))]
        assert await collect(parts) == FRAGMENTS

    @pytest.mark.asyncio
    async def test_empty_chunks_are_ignored(self):
        assert await collect([b"", BODY[:10], b"", BODY[10:], b""]) == FRAGMENTS

    def test_decoder_holds_back_split_multibyte_character(self):
        decoder = SSELineDecoder()
        encoded = "data: ✓\n".encode("utf-8")
        split = encoded.index(b"\xe2") + 1
        assert decoder.feed(encoded[:split]) == []
        assert decoder.feed(encoded[split:]) == ["data: ✓"]
        assert decoder.flush() == []


class TestFrameFiltering:

    @pytest.mark.asyncio
    async def test_invalid_frame_between_valid_frames_is_skipped(self):
        body = (_line("first") + "data: {not json\n\n" + _line("second")).encode()
        assert await collect([body]) == ["first", "second"]

    @pytest.mark.asyncio
    async def test_comments_blank_and_non_data_lines_are_skipped(self):
        body = (
            ": keep-alive\n\n"
            "event: message\n"
            "id: 7\n"
            + _line("a")
            + "\n\n"
            + "data:{\"missing\": \"space\"}\n"
            + _line("b")
        ).encode()
        assert await collect([body]) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_crlf_line_endings(self):
        body = _line("a").replace("\n", "\r\n") + "data: [DONE]\r\n\r\n"
        assert await collect([body.encode()]) == ["a"]

    @pytest.mark.asyncio
    async def test_done_sentinel_stops_consumption(self):
        body = (_line("kept") + "data: [DONE]\n\n" + _line("ignored")).encode()
        assert await collect([body]) == ["kept"]

    @pytest.mark.asyncio
    async def test_connection_close_without_sentinel(self):
        body = (_line("one") + _line("two")).encode()
        assert await collect([body]) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_processed_at_close(self):
        body = (_line("one") + _line("two").rstrip("\n")).encode()
        assert await collect([body]) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_frames_without_text_are_skipped(self):
        body = (
            'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
            + _line("text")
            + 'data: {"choices": [{"delta": {}, "finish_reason": "stop"}]}\n\n'
            + 'data: {"choices": []}\n\n'
            + 'data: [1, 2, 3]\n\n'
        ).encode()
        assert await collect([body]) == ["text"]

    @pytest.mark.asyncio
    async def test_custom_parser_can_end_the_stream(self):
        def parse(record):
            if record.get("stop"):
                return StreamFrame(done=True)
            return StreamFrame(text=record["t"])

        body = b'data: {"t": "x"}\n\ndata: {"stop": true}\n\ndata: {"t": "y"}\n\n'
        assert await collect([body], parse) == ["x"]

    @pytest.mark.asyncio
    async def test_parser_errors_other_than_parse_errors_propagate(self):
        def parse(record):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await collect([_line("x").encode()], parse)


class TestEncoding:

    @pytest.mark.asyncio
    async def test_encoded_deltas_are_read_back(self):
        body = (encode_delta("línea 1\n") + encode_delta("line 2") + DONE_EVENT).encode("utf-8")
        assert await collect([body]) == ["línea 1\n", "line 2"]
