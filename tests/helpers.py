"""Canned SSE bodies and a recording httpx transport for tests."""
import json
from typing import Callable, List

import httpx


def sse_event(record) -> bytes:
    """One SSE data line for ``record`` (dict or raw string)."""
    payload = record if isinstance(record, str) else json.dumps(record)
    return f"data: {payload}\n\n".encode("utf-8")


def delta(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def sse_body(*fragments: str, done: bool = True) -> bytes:
    body = b"".join(sse_event(delta(f)) for f in fragments)
    if done:
        body += b"data: [DONE]\n\n"
    return body


class RecordingTransport:
    """httpx transport double that records requests and replays canned responses."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    @property
    def payloads(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]


def streaming_ok(body: bytes) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request):
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
    return respond
