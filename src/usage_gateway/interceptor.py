"""Outgoing-payload hook that records per-session usage.

Runs on every response after the router has produced it and before the
server writes it out. For tracked requests (a session id, under the
Messages prefix) it captures the response's ``usage``:

- Streamed responses are teed. The client gets one branch back right away,
  byte for byte; a background task reads the other, parses SSE frames and
  stores the usage from each ``message_delta`` event. Anything that won't
  parse is skipped.
- Plain JSON responses have their ``usage`` stored directly.

Every payload is then normalized for the transport: structured values are
serialized to JSON text, everything already sendable passes through.
"""

import asyncio
import json
from collections.abc import AsyncIterable, Iterator, Mapping
from typing import Any

import logfire
from aiohttp import web

from .cache import SessionUsageCache
from .config import TRACKED_PREFIX
from .reply import Reply
from .streams import DEFAULT_TELEMETRY_QUEUE_SIZE, STREAM_GAP, SSEFrameParser, tee_stream

USAGE_EVENT = "message_delta"


def is_stream(payload: Any) -> bool:
    return isinstance(payload, AsyncIterable)


def normalize_payload(payload: Any) -> Any:
    """Make a payload something the transport can write as-is."""
    if payload is None or isinstance(payload, (bytes, bytearray, memoryview, web.StreamResponse)):
        return payload
    if is_stream(payload) or isinstance(payload, Iterator):
        return payload
    if isinstance(payload, (Mapping, list, tuple)):
        return json.dumps(payload)
    return payload


class StreamingUsageInterceptor:
    """Captures usage from outgoing responses into a SessionUsageCache.

    Args:
        cache: Where usage records go
        tracked_prefix: Only paths starting with this are tracked
        telemetry_queue_size: Chunks the telemetry branch may lag behind
            the client before it starts dropping them
    """

    def __init__(
        self,
        cache: SessionUsageCache,
        tracked_prefix: str = TRACKED_PREFIX,
        telemetry_queue_size: int = DEFAULT_TELEMETRY_QUEUE_SIZE,
    ):
        self.cache = cache
        self.tracked_prefix = tracked_prefix
        self.telemetry_queue_size = telemetry_queue_size
        self._tasks: set[asyncio.Task] = set()

    def is_tracked(self, request: web.Request) -> bool:
        return bool(request.get("session_id")) and request.path.startswith(self.tracked_prefix)

    def on_send(self, request: web.Request, reply: Reply, payload: Any) -> Any:
        """Inspect an outgoing payload and return what should be sent instead."""
        if not self.is_tracked(request):
            return normalize_payload(payload)

        session_id = request["session_id"]

        if is_stream(payload):
            client_stream, telemetry_stream = tee_stream(payload, self.telemetry_queue_size)
            task = asyncio.create_task(self._read_usage(session_id, telemetry_stream))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return client_stream

        logfire.debug("onSend payload", session_id=session_id, payload=payload)
        if isinstance(payload, Mapping):
            self.cache.put(session_id, payload.get("usage"))
        return normalize_payload(payload)

    async def _read_usage(self, session_id: str, stream: AsyncIterable) -> None:
        parser = SSEFrameParser()
        try:
            async for chunk in stream:
                if chunk is STREAM_GAP:
                    # A partial frame before the gap can't be completed
                    parser.reset()
                    continue
                for frame in parser.feed(chunk):
                    self._record_frame(session_id, frame.event, frame.data)
            for frame in parser.flush():
                self._record_frame(session_id, frame.event, frame.data)
        except Exception as e:
            logfire.debug(f"Usage telemetry stopped for session {session_id}: {e}")

    def _record_frame(self, session_id: str, event: str | None, data: str) -> None:
        if event != USAGE_EVENT:
            return
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logfire.debug(f"Skipping malformed {USAGE_EVENT} frame")
            return
        if not isinstance(message, dict) or "usage" not in message:
            return
        self.cache.put(session_id, message["usage"])
        logfire.debug("Usage updated", session_id=session_id, usage=message["usage"])

    async def drain(self) -> None:
        """Wait for in-flight telemetry tasks to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
