"""Stream duplication and SSE frame parsing.

``tee_stream`` splits one async byte stream into a client branch and a
telemetry branch. The client branch pulls from the source and hands each
chunk on to the telemetry branch through a queue without waiting, so the
client never stalls on telemetry. If telemetry falls a full queue behind,
the backlog (oldest chunks) is discarded and replaced by STREAM_GAP, so
the reader can reset its parser and keep following the tail of the
stream, where the usage-bearing events are.

``SSEFrameParser`` turns arbitrary chunks back into whole server-sent
event frames. A frame ends at a blank line; its ``event:`` and ``data:``
fields are found by splitting each line on the first colon, so nothing
depends on the length of a particular event name.
"""

import asyncio
import codecs
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

import logfire

DEFAULT_TELEMETRY_QUEUE_SIZE = 256

_EOF = object()


class StreamGap:
    """Marks the place in a telemetry branch where chunks were dropped."""

    def __repr__(self) -> str:
        return "STREAM_GAP"


STREAM_GAP = StreamGap()


@dataclass(frozen=True)
class SSEFrame:
    """One server-sent event."""

    event: str | None
    data: str


class SSEFrameParser:
    """Incremental SSE parser. Feed it chunks, get complete frames back."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        text = self._decoder.decode(chunk)
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        frames = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            frame = _parse_frame(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    def reset(self) -> None:
        """Forget any partial frame, e.g. after chunks were dropped."""
        self._decoder.reset()
        self._buffer = ""

    def flush(self) -> list[SSEFrame]:
        """Parse whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        raw, self._buffer = self._buffer, ""
        frame = _parse_frame(raw)
        return [frame] if frame is not None else []


def _parse_frame(raw: str) -> SSEFrame | None:
    event = None
    data_lines = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            continue
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)

    if event is None and not data_lines:
        return None
    return SSEFrame(event=event, data="\n".join(data_lines))


class _TelemetryBranch:
    """Queue-backed reader half of a tee.

    Holds at most ``limit`` unread chunks. The queue itself is unbounded so
    the gap and end-of-stream markers always fit.
    """

    def __init__(self, limit: int):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._limit = max(limit, 1)
        self._closed = False
        self.dropped = 0

    def offer(self, chunk: bytes) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._limit:
            self._discard_backlog()
        self._queue.put_nowait(chunk)

    def _discard_backlog(self) -> None:
        while not self._queue.empty():
            if self._queue.get_nowait() is not STREAM_GAP:
                self.dropped += 1
        self._queue.put_nowait(STREAM_GAP)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_EOF)

    def __aiter__(self) -> AsyncIterator[bytes | StreamGap]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes | StreamGap]:
        while True:
            item = await self._queue.get()
            if item is _EOF:
                if self.dropped:
                    logfire.debug(f"Telemetry branch dropped {self.dropped} chunks")
                return
            yield item


class _ClientBranch:
    """Source-driving half of a tee. Yields the upstream chunks untouched."""

    def __init__(self, source: AsyncIterable[bytes], telemetry: _TelemetryBranch):
        self._source = source
        self._telemetry = telemetry
        self._iterator: AsyncIterator[bytes] | None = None

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def __anext__(self) -> bytes:
        return await self.__aiter__().__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        await _aclose(self._source)
        self._telemetry.close()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._source:
                self._telemetry.offer(chunk)
                yield chunk
        finally:
            # Client finished, failed or went away: telemetry stops too
            self._telemetry.close()
            await _aclose(self._source)


async def _aclose(source: object) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


def tee_stream(
    source: AsyncIterable[bytes],
    telemetry_queue_size: int = DEFAULT_TELEMETRY_QUEUE_SIZE,
) -> tuple[AsyncIterable[bytes], AsyncIterable[bytes | StreamGap]]:
    """Split a byte stream into (client, telemetry) branches.

    The telemetry branch yields the same chunks, plus STREAM_GAP wherever
    a backlog of ``telemetry_queue_size`` chunks had to be discarded.

    The client branch must be consumed for either branch to make progress.
    The telemetry branch ends when the client branch ends or is closed.
    """
    telemetry = _TelemetryBranch(telemetry_queue_size)
    return _ClientBranch(source, telemetry), telemetry
