"""Server-Sent-Events stream normalizer.

Turns the raw byte body of a streaming chat completion into an ordered, lazy
sequence of text fragments.  Provider specific envelopes are handled by the
``parse_frame`` callable supplied by the adapter; this module only knows the
SSE line protocol and the canonical delta frame::

    data: {"choices": [{"delta": {"content": "..."}}]}
    data: [DONE]

Lines are only interpreted once their terminating newline has arrived, so the
result does not depend on how the body was chunked on the wire.
"""

from __future__ import annotations

import codecs
import json
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional

from core.errors import StreamParseError
from core.logging import logger

__all__ = [
    "StreamFrame",
    "END_OF_STREAM",
    "SSELineDecoder",
    "canonical_delta",
    "iter_text_deltas",
    "encode_delta",
    "DONE_EVENT",
]

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_EVENT = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"


@dataclass(frozen=True)
class StreamFrame:
    """One parsed delta, or the terminal marker when ``done`` is set."""
    text: Optional[str] = None
    done: bool = False


END_OF_STREAM = StreamFrame(done=True)

FrameParser = Callable[[Any], Optional[StreamFrame]]


class SSELineDecoder:
    """Incremental UTF-8 decoder that hands out complete lines only.

    A multi-byte character split across two chunks is held back by the
    incremental decoder until its remaining bytes arrive.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> List[str]:
        """Returns the trailing unterminated line once the body has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [rest] if rest else []


def canonical_delta(record: Any) -> Optional[StreamFrame]:
    """Extracts ``choices[0].delta.content`` from a delta-role frame."""
    try:
        content = record["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if isinstance(content, str) and content:
        return StreamFrame(text=content)
    return None


def _data_payload(line: str) -> Optional[str]:
    if line.endswith("\r"):
        line = line[:-1]
    if line.startswith(":") or not line.strip():
        return None
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


def _decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseError(f"invalid frame payload: {exc}") from exc


def _frame_from_line(line: str, parse_frame: FrameParser) -> Optional[StreamFrame]:
    payload = _data_payload(line)
    if payload is None:
        return None
    if payload == DONE_SENTINEL:
        return END_OF_STREAM
    try:
        return parse_frame(_decode_payload(payload))
    except StreamParseError as exc:
        logger.debug(f"Skipping stream frame: {exc}")
        return None


async def _iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    decoder = SSELineDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            yield line
    for line in decoder.flush():
        yield line


async def iter_text_deltas(
    chunks: AsyncIterable[bytes],
    parse_frame: FrameParser = canonical_delta,
) -> AsyncIterator[str]:
    """Yields text fragments in arrival order until the stream ends.

    The stream ends on ``data: [DONE]``, on a frame the parser marks as
    terminal, or when ``chunks`` is exhausted.  Errors raised by
    ``parse_frame`` other than :class:`StreamParseError` propagate.
    """
    async with aclosing(_iter_lines(chunks)) as lines:
        async for line in lines:
            frame = _frame_from_line(line, parse_frame)
            if frame is None:
                continue
            if frame.done:
                return
            if frame.text:
                yield frame.text


def encode_delta(text: str) -> str:
    """Serializes one fragment as a canonical delta event."""
    record = {"choices": [{"delta": {"content": text}}]}
    return f"{DATA_PREFIX}{json.dumps(record, ensure_ascii=False)}\n\n"
