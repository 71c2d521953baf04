"""AI Provider Adapters for streaming chat completions.

Two wire formats cover every supported provider:

* ``delta`` – OpenAI-compatible ``/chat/completions`` (OpenAI, Google's
  OpenAI endpoint, the AI gateway).  Bearer auth, frames carry
  ``choices[0].delta.content``.
* ``anthropic`` – Anthropic ``/v1/messages``.  ``x-api-key`` plus
  ``anthropic-version`` headers, frames are typed events.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from core.errors import (
    ExternalToolError,
    StreamParseError,
    UpstreamCredentialInvalid,
    UpstreamGenericFailure,
    UpstreamQuotaExceeded,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from core.logging import logger

from .stream import END_OF_STREAM, StreamFrame, canonical_delta, iter_text_deltas

ANTHROPIC_VERSION = "2023-06-01"


@dataclass(frozen=True)
class ProviderCredential:
    """Resolved provider, key, model and endpoint for one request."""
    provider: str
    api_key: str = field(repr=False)
    model: str
    endpoint: str
    wire: str = "delta"
    scope: str = "environment"


@dataclass
class ChatRequest:
    """Single logical chat request: one system prompt, one user message."""
    system_prompt: str
    user_message: str
    stream: bool = True


class WireFormat(ABC):
    """Request builder and frame parser for one provider family."""

    name: str = ""

    @abstractmethod
    def build_request(
        self, credential: ProviderCredential, chat: ChatRequest, **options
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Return (headers, json payload)."""

    @abstractmethod
    def parse_frame(self, record: Any) -> Optional[StreamFrame]:
        """Map one decoded ``data:`` record to a StreamFrame, or None to skip it."""


class DeltaWireFormat(WireFormat):
    """OpenAI-compatible chat completions."""

    name = "delta"

    def build_request(self, credential, chat, **options):
        headers = {
            "Authorization": f"Bearer {credential.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": credential.model,
            "messages": [
                {"role": "system", "content": chat.system_prompt},
                {"role": "user", "content": chat.user_message},
            ],
            "stream": chat.stream,
        }
        return headers, payload

    def parse_frame(self, record):
        return canonical_delta(record)


class AnthropicWireFormat(WireFormat):
    """Anthropic messages API."""

    name = "anthropic"

    def build_request(self, credential, chat, max_tokens: int = 8192, **options):
        headers = {
            "x-api-key": credential.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload = {
            "model": credential.model,
            "max_tokens": max_tokens,
            "system": chat.system_prompt,
            "messages": [{"role": "user", "content": chat.user_message}],
            "stream": chat.stream,
        }
        return headers, payload

    def parse_frame(self, record):
        if not isinstance(record, dict):
            raise StreamParseError("anthropic frame is not an object")
        event_type = record.get("type")
        if event_type == "content_block_delta":
            delta = record.get("delta")
            if not isinstance(delta, dict):
                raise StreamParseError("content_block_delta without a delta object")
            text = delta.get("text")
            if isinstance(text, str) and text:
                return StreamFrame(text=text)
            return None
        if event_type == "message_stop":
            return END_OF_STREAM
        if event_type == "error":
            error = record.get("error")
            if not isinstance(error, dict):
                error = {"type": str(error or ""), "message": str(error or "")}
            message = error.get("message") or "Anthropic stream reported an error"
            if error.get("type") in ("overloaded_error", "overloaded"):
                raise UpstreamRateLimited(f"{message}. Please try again in a moment.", details=error)
            raise UpstreamGenericFailure(message, details=error)
        return None


WIRE_FORMATS: Dict[str, WireFormat] = {
    "delta": DeltaWireFormat(),
    "anthropic": AnthropicWireFormat(),
}


def get_wire_format(name: str) -> WireFormat:
    wire = WIRE_FORMATS.get(name)
    if wire is None:
        raise ValueError(f"Unknown wire format: {name}")
    return wire


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def _parse_error_body(body: str) -> Tuple[Optional[str], Any]:
    """Best-effort (message, details) from an upstream error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return (body.strip() or None), None
    if not isinstance(data, dict):
        return None, data
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or data.get("message"), error
    if isinstance(error, str):
        return error, data
    return data.get("message"), data


def classify_upstream_error(status: int, body: str, provider: str = "") -> ExternalToolError:
    """Turn a non-2xx provider response into the matching error kind."""
    message, details = _parse_error_body(body)
    label = provider or "provider"

    if status == 429:
        suffix = f" Details: {message}" if message else ""
        return UpstreamRateLimited(
            f"Rate limit exceeded for {label}. Please wait a few minutes and try again, "
            f"or check the quota of your API key.{suffix}",
            status=status, details=details,
        )
    if status == 402:
        return UpstreamQuotaExceeded(
            f"Usage limit reached. Please add credits to your {label} account.",
            status=status, details=details,
        )
    if status in (401, 403):
        return UpstreamCredentialInvalid(
            f"API key is invalid or doesn't have permission. Please check your {label} API key settings.",
            status=status, details=details,
        )
    return UpstreamGenericFailure(
        message or f"Failed to generate PRD (Status: {status}). Check your API key configuration.",
        status=status, details=details,
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class UpstreamStream:
    """An open streaming response. Must be closed; use ``async with``."""

    def __init__(self, response: httpx.Response, wire: WireFormat, provider: str):
        self._response = response
        self.wire = wire
        self.provider = provider

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def text_deltas(self) -> AsyncIterator[str]:
        """Yields normalized text fragments from the response body."""
        try:
            async for text in iter_text_deltas(self._response.aiter_bytes(), self.wire.parse_frame):
                yield text
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"{self.provider} stopped sending data. Please try again.", details=str(e)
            ) from e
        except (httpx.TransportError, httpx.StreamError) as e:
            raise UpstreamGenericFailure(
                f"Connection to {self.provider} was interrupted: {e}"
            ) from e

    async def aclose(self) -> None:
        await self._response.aclose()

    async def __aenter__(self) -> "UpstreamStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class ProviderAdapter:
    """Issues streaming chat requests against any configured provider."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        connect_timeout: float = 10.0,
        anthropic_max_tokens: int = 8192,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout)
        )
        self.anthropic_max_tokens = anthropic_max_tokens

    async def call(
        self, credential: ProviderCredential, system_prompt: str, user_message: str
    ) -> UpstreamStream:
        """Send the request and return the open stream once headers are in.

        Non-2xx responses are read, closed and raised as classified errors
        before any byte of the body is normalized.
        """
        if not credential.api_key:
            raise UpstreamCredentialInvalid(f"Refusing to call {credential.provider} with an empty API key.")

        wire = get_wire_format(credential.wire)
        headers, payload = wire.build_request(
            credential,
            ChatRequest(system_prompt=system_prompt, user_message=user_message),
            max_tokens=self.anthropic_max_tokens,
        )
        request = self._client.build_request("POST", credential.endpoint, headers=headers, json=payload)

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"{credential.provider} request timed out: {e}")
            raise UpstreamTimeout(
                f"{credential.provider} did not respond in time. Please try again.", details=str(e)
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"{credential.provider} API error: {e}")
            raise UpstreamGenericFailure(f"Could not reach {credential.provider}: {e}") from e

        if response.is_success:
            return UpstreamStream(response, wire, credential.provider)

        try:
            await response.aread()
            body = response.text
        except httpx.TimeoutException as e:
            logger.error(f"{credential.provider} API error: {response.status_code}, body timed out: {e}")
            raise UpstreamTimeout(
                f"{credential.provider} did not finish its error response (Status: {response.status_code}).",
                status=response.status_code, details=str(e),
            ) from e
        except httpx.HTTPError as e:
            # Classify by status alone when the error body cannot be read.
            logger.error(f"{credential.provider} API error: {response.status_code}, body unreadable: {e}")
            raise classify_upstream_error(response.status_code, "", credential.provider) from e
        finally:
            await response.aclose()
        logger.error(f"{credential.provider} API error: {response.status_code} {body[:500]}")
        raise classify_upstream_error(response.status_code, body, credential.provider)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
