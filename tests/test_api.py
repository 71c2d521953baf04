"""Tests for the HTTP service."""
import asyncio
import json
from contextlib import suppress

import httpx
import pytest
from fastapi.testclient import TestClient

from ai.adapters.stream import DONE_EVENT, encode_delta
from api.server import RunStreamingResponse, create_app
from core.security import TokenAuthenticator
from services.storage import PRDRecordDraft
from tests.helpers import RecordingTransport, delta, sse_body, sse_event, streaming_ok

ALICE = {"Authorization": "Bearer token-alice"}
BOB = {"Authorization": "Bearer token-bob"}
ROOT = {"Authorization": "Bearer token-root"}

GENERATE = "/functions/v1/generate-prd"
REFINE = "/functions/v1/refine-prd"


@pytest.fixture
def make_client(make_service, app_settings, key_store):
    """Returns (client, transport) for an upstream that answers with ``responder``."""
    asyncio.run(key_store.save_key("openai", "sk-global"))

    def build(responder):
        transport = RecordingTransport(responder)
        app = create_app(make_service(transport), TokenAuthenticator(app_settings))
        return TestClient(app), transport
    return build


def error_events(text):
    """Payloads of ``event: error`` frames in an SSE body."""
    events = []
    for block in text.split("\n\n"):
        lines = block.split("\n")
        if lines[0] == "event: error":
            events.append(json.loads(lines[1][len("data: "):]))
    return events


class TestAuthentication:

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer unknown"},
        {"Authorization": "Basic dG9rZW4tYWxpY2U="},
        {"Authorization": "Bearer"},
    ])
    def test_missing_or_unknown_token(self, make_client, headers):
        client, transport = make_client(streaming_ok(sse_body("x")))
        response = client.post(GENERATE, json={"requirements": "todo", "platform": "cursor"}, headers=headers)
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}
        assert transport.requests == []

    def test_health_needs_no_token(self, make_client):
        client, _ = make_client(streaming_ok(b""))
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "OK"


class TestGenerateEndpoint:

    def test_streams_canonical_deltas(self, make_client):
        client, transport = make_client(streaming_ok(sse_body("# PRD", "\n\nOverview...")))

        response = client.post(
            GENERATE,
            json={"requirements": "Build a todo app with auth", "platform": "cursor", "projectContext": "none"},
            headers=ALICE,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text == encode_delta("# PRD") + encode_delta("\n\nOverview...") + DONE_EVENT
        assert len(transport.requests) == 1

        history = client.get("/prds", headers=ALICE).json()
        assert [item["title"] for item in history] == ["Build a todo app with auth"]
        assert history[0]["content"] == "# PRD\n\nOverview..."

    def test_empty_requirements(self, make_client):
        client, transport = make_client(streaming_ok(sse_body("x")))
        response = client.post(GENERATE, json={"requirements": "  ", "platform": "cursor"}, headers=ALICE)
        assert response.status_code == 400
        assert response.json()["error"] == "Please enter your project requirements"
        assert transport.requests == []

    @pytest.mark.parametrize("status,expected,fragment", [
        (429, 429, "Rate limit"),
        (402, 402, "Usage limit"),
        (403, 401, "Authentication required"),
        (500, 500, "exploded"),
    ])
    def test_upstream_errors_are_mapped(self, make_client, status, expected, fragment):
        client, _ = make_client(
            lambda request: httpx.Response(status, json={"error": {"message": "exploded"}})
        )
        response = client.post(GENERATE, json={"requirements": "todo", "platform": "cursor"}, headers=ALICE)
        assert response.status_code == expected
        assert fragment in response.json()["error"]

    def test_generic_failure_includes_details(self, make_client):
        client, _ = make_client(
            lambda request: httpx.Response(500, json={"error": {"message": "exploded", "code": 13}})
        )
        body = client.post(GENERATE, json={"requirements": "todo", "platform": "cursor"}, headers=ALICE).json()
        assert body["details"] == {"status": 500, "upstream": {"message": "exploded", "code": 13}}

    def test_mid_stream_failure_sends_error_event(self, make_client):
        chunks = [sse_event(delta("partial"))]

        class Broken(httpx.AsyncByteStream):
            async def __aiter__(self):
                for chunk in chunks:
                    yield chunk
                raise httpx.ReadError("connection reset")

        client, _ = make_client(lambda request: httpx.Response(200, stream=Broken()))
        response = client.post(GENERATE, json={"requirements": "todo", "platform": "cursor"}, headers=ALICE)

        assert response.status_code == 200
        assert response.text.startswith(encode_delta("partial"))
        assert DONE_EVENT not in response.text
        [event] = error_events(response.text)
        assert "interrupted" in event["error"]
        assert "restore" not in event
        assert client.get("/prds", headers=ALICE).json() == []


class TestRefineEndpoint:

    def test_refine_streams_and_saves(self, make_client):
        client, transport = make_client(streaming_ok(sse_body("# PRD v2")))
        response = client.post(
            REFINE,
            json={"existingPrd": "# PRD v1", "additionalRequirements": "Add dark mode", "platform": "lovable"},
            headers=ALICE,
        )
        assert response.status_code == 200
        assert response.text == encode_delta("# PRD v2") + DONE_EVENT
        assert "# PRD v1" in transport.payloads[0]["messages"][1]["content"]

        [saved] = client.get("/prds", headers=ALICE).json()
        assert saved["title"] == "Add dark mode (Enhanced)"
        assert saved["platform"] == "lovable"

    def test_missing_existing_prd(self, make_client):
        client, _ = make_client(streaming_ok(sse_body("x")))
        response = client.post(
            REFINE, json={"existingPrd": "", "additionalRequirements": "more"}, headers=ALICE
        )
        assert response.status_code == 400

    def test_mid_stream_failure_carries_restore(self, make_client):
        class Broken(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield sse_event(delta("half"))
                raise httpx.ReadError("connection reset")

        client, _ = make_client(lambda request: httpx.Response(200, stream=Broken()))
        response = client.post(
            REFINE,
            json={"existingPrd": "# PRD v1", "additionalRequirements": "more", "platform": "cursor"},
            headers=ALICE,
        )
        [event] = error_events(response.text)
        assert event["restore"] == "# PRD v1"


class TestHistoryEndpoints:

    @pytest.fixture
    def alice_prd(self, prd_store):
        return asyncio.run(prd_store.insert(PRDRecordDraft(
            owner_id="alice", title="Todo", requirements="todo", platform="cursor", content="# PRD",
        )))

    def test_history_is_scoped_to_caller(self, make_client, alice_prd):
        client, _ = make_client(streaming_ok(b""))
        assert [p["id"] for p in client.get("/prds", headers=ALICE).json()] == [alice_prd.id]
        assert client.get("/prds", headers=BOB).json() == []

    def test_delete_permissions(self, make_client, alice_prd):
        client, _ = make_client(streaming_ok(b""))

        denied = client.delete(f"/prds/{alice_prd.id}", headers=BOB)
        assert denied.status_code == 403

        allowed = client.delete(f"/prds/{alice_prd.id}", headers=ALICE)
        assert allowed.status_code == 200
        assert allowed.json() == {"status": "deleted", "id": alice_prd.id}

        missing = client.delete(f"/prds/{alice_prd.id}", headers=ALICE)
        assert missing.status_code == 404

    def test_admin_deletes_any(self, make_client, alice_prd):
        client, _ = make_client(streaming_ok(b""))
        assert client.delete(f"/prds/{alice_prd.id}", headers=ROOT).status_code == 200


class TestPlumbing:

    def test_cors_preflight(self, make_client):
        client, _ = make_client(streaming_ok(b""))
        response = client.options(GENERATE, headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, content-type, x-client-info, apikey",
        })
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_metrics_count_generations(self, make_client):
        client, _ = make_client(streaming_ok(sse_body("ok")))
        client.post(GENERATE, json={"requirements": "todo", "platform": "cursor"}, headers=ALICE)

        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert 'prd_generations_total{kind="generate",status="success"} 1.0' in metrics.text


class TestUpstreamRelease:

    @pytest.mark.asyncio
    async def test_response_closes_run_when_body_is_never_sent(self, make_service, key_store):
        await key_store.save_key("openai", "sk-global")
        closed = []

        class Body(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield sse_body("never read")

            async def aclose(self):
                closed.append(True)

        service = make_service(RecordingTransport(lambda request: httpx.Response(200, stream=Body())))
        run = service.open_generation("todo", "cursor", owner_id="alice")
        await run.start()

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            raise RuntimeError("client went away")

        response = RunStreamingResponse(run)
        scope = {"type": "http", "asgi": {"version": "3.0", "spec_version": "2.4"}, "method": "POST"}
        with suppress(Exception):
            await response(scope, receive, send)

        assert closed == [True]
        assert run.content == ""
