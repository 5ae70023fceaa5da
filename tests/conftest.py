"""Shared fixtures for usage_gateway tests."""

import json

import logfire
import pytest

from usage_gateway.cache import SessionUsageCache
from usage_gateway.config import GatewayConfig

logfire.configure(send_to_logfire=False, console=False)


def sse(event: str, data) -> bytes:
    """Encode one SSE frame the way the Messages API streams it."""
    if not isinstance(data, str):
        data = json.dumps(data)
    return f"event: {event}\ndata: {data}\n\n".encode()


async def chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.fixture
def cache() -> SessionUsageCache:
    return SessionUsageCache(max_size=10)


@pytest.fixture
def config(tmp_path) -> GatewayConfig:
    return GatewayConfig(
        upstream_url="https://upstream.test",
        pid_file=tmp_path / "gateway.pid",
    )


@pytest.fixture
def sample_stream_frames() -> list[bytes]:
    return [
        sse("message_start", {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 10}}}),
        sse("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        sse("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hi"}}),
        sse("content_block_stop", {"type": "content_block_stop", "index": 0}),
        sse("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"tokens": 42}}),
        sse("message_stop", {"type": "message_stop"}),
    ]
