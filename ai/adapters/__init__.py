"""Adapters layer providing credential resolution, provider wire formats and
stream normalization.

The public API is intentionally minimal; call sites import from here.
"""

from __future__ import annotations

from .credentials import ApiKeyRecord, CredentialResolver, KeyStore
from .providers import (
    ChatRequest,
    ProviderAdapter,
    ProviderCredential,
    UpstreamStream,
    classify_upstream_error,
    get_wire_format,
)
from .stream import StreamFrame, encode_delta, iter_text_deltas

__all__ = [
    "ApiKeyRecord",
    "CredentialResolver",
    "KeyStore",
    "ChatRequest",
    "ProviderAdapter",
    "ProviderCredential",
    "UpstreamStream",
    "classify_upstream_error",
    "get_wire_format",
    "StreamFrame",
    "encode_delta",
    "iter_text_deltas",
]
