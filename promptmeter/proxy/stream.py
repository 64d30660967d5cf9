"""Streamed response capture.

An upstream event stream has two consumers: the caller, who must see the
exact bytes at upstream pace, and the accounting path, which needs the
reassembled completion once the stream ends. StreamCapture reads the
upstream once and fans every chunk out to both.

Wire format (server-sent events, as emitted by OpenAI-compatible APIs):

    data: {"id":"chatcmpl-1","choices":[{"delta":{"content":"Hel"}}]}

    data: {"id":"chatcmpl-1","choices":[{"delta":{"content":"lo"}}]}

    data: [DONE]

Frames may be split across any number of transport chunks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from ..payloads import parse_stream_event
from .background import TaskScheduler

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"

# Queue sentinel marking the end of the upstream stream
_EOF = object()


class SSEFrameDecoder:
    """Reassembles event-stream frames from arbitrary chunk boundaries.

    Bytes are buffered until a blank line terminates a frame, so a
    multi-byte character split across chunks is decoded intact.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the data payloads of every completed frame."""
        # A lone trailing \r is kept and joins the next chunk's \n here
        self._buffer = (self._buffer + chunk).replace(b"\r\n", b"\n")

        payloads = []
        while b"\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split(b"\n\n", 1)
            payload = self._frame_payload(frame)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        """Return the final frame when the stream ends without a blank line."""
        frame, self._buffer = self._buffer.strip(), b""
        if not frame:
            return []
        payload = self._frame_payload(frame)
        return [payload] if payload is not None else []

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    @staticmethod
    def _frame_payload(frame: bytes) -> str | None:
        data_lines = []
        for line in frame.decode("utf-8", errors="replace").split("\n"):
            if not line.startswith("data:"):
                # comments (":"), event:, id:, retry:
                continue
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
        if not data_lines:
            return None
        return "\n".join(data_lines)


@dataclass
class StreamAccumulator:
    """Per-stream accounting state, owned by one in-flight request."""

    raw_chunks: list[bytes] = field(default_factory=list)
    completion_parts: list[str] = field(default_factory=list)
    completion_id: str | None = None
    done: bool = False
    frames_parsed: int = 0
    frames_skipped: int = 0
    _decoder: SSEFrameDecoder = field(default_factory=SSEFrameDecoder, repr=False)

    def feed(self, chunk: bytes) -> None:
        self.raw_chunks.append(chunk)
        for payload in self._decoder.feed(chunk):
            self._consume(payload)

    def close(self) -> None:
        """Parse whatever is left once the transport has ended."""
        for payload in self._decoder.flush():
            self._consume(payload)

    def _consume(self, payload: str) -> None:
        if payload.strip() == DONE_MARKER:
            self.done = True
            return

        try:
            data = json.loads(payload)
        except ValueError:
            self.frames_skipped += 1
            logger.debug(f"Skipping malformed stream frame: {payload[:80]!r}")
            return

        event = parse_stream_event(data)
        if event is None:
            self.frames_skipped += 1
            return

        self.frames_parsed += 1
        if self.completion_id is None and event.id:
            self.completion_id = event.id
        if event.content:
            self.completion_parts.append(event.content)

    @property
    def completion(self) -> str:
        return "".join(self.completion_parts)

    @property
    def raw_body(self) -> bytes:
        return b"".join(self.raw_chunks)


CompletionCallback = Callable[[StreamAccumulator, bool], Awaitable[None]]


class StreamCapture:
    """Tees one upstream byte stream to the caller and to accounting.

    A single reader task pulls chunks from ``source`` in arrival order and
    puts each one on two unbounded queues. The caller side drains one queue
    through ``iter_caller()``; the accounting task drains the other into a
    StreamAccumulator. Accounting never blocks forwarding: a slow or
    failing parse only delays the accounting queue.

    When the reader stops (upstream finished, upstream failed, or the
    caller went away and the reader was cancelled) the accounting task
    drains what it has and calls ``on_complete(accumulator, completed)``
    exactly once. ``completed`` is True only if upstream ended normally.

    Example:
        capture = StreamCapture(upstream.aiter_bytes(), on_complete, scheduler,
                                close_source=upstream.aclose)
        capture.start()
        return StreamingResponse(capture.iter_caller(), media_type="text/event-stream")
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        on_complete: CompletionCallback,
        scheduler: TaskScheduler,
        close_source: Callable[[], Awaitable[None]] | None = None,
        name: str = "stream",
    ):
        self.accumulator = StreamAccumulator()
        self.completed = False
        self.error: BaseException | None = None

        self._source = source
        self._on_complete = on_complete
        self._scheduler = scheduler
        self._close_source = close_source
        self._name = name

        self._caller_queue: asyncio.Queue[object] = asyncio.Queue()
        self._accounting_queue: asyncio.Queue[object] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._accounting: asyncio.Task[None] | None = None
        self._eof_sent = False
        self._source_closed = False

    def start(self) -> None:
        """Spawn the reader and accounting tasks. Idempotent."""
        if self._reader is not None:
            return
        self._accounting = self._scheduler.spawn(self._account(), name=f"{self._name}-accounting")
        self._reader = self._scheduler.spawn(self._read(), name=f"{self._name}-reader")
        self._reader.add_done_callback(self._on_reader_done)

    async def _read(self) -> None:
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self._caller_queue.put_nowait(chunk)
                self._accounting_queue.put_nowait(chunk)
            self.completed = True
        except asyncio.CancelledError:
            logger.info(f"[{self._name}] caller disconnected, upstream read stopped")
            raise
        except Exception as e:
            self.error = e
            logger.warning(f"[{self._name}] upstream stream failed: {e!r}")
        finally:
            self._send_eof()
            await self._close_once()

    def _send_eof(self) -> None:
        if self._eof_sent:
            return
        self._eof_sent = True
        self._caller_queue.put_nowait(_EOF)
        self._accounting_queue.put_nowait(_EOF)

    async def _close_once(self) -> None:
        if self._source_closed or self._close_source is None:
            return
        self._source_closed = True
        try:
            await self._close_source()
        except Exception as e:
            logger.debug(f"[{self._name}] closing upstream stream failed: {e!r}")

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        # A reader cancelled before it ever ran skips its own finally block
        self._send_eof()
        if not self._source_closed and self._close_source is not None:
            self._scheduler.spawn(self._close_once(), name=f"{self._name}-close")

    async def _account(self) -> None:
        while True:
            chunk = await self._accounting_queue.get()
            if chunk is _EOF:
                break
            try:
                self.accumulator.feed(chunk)  # type: ignore[arg-type]
            except Exception as e:
                logger.warning(f"[{self._name}] accounting skipped a chunk: {e!r}")

        try:
            self.accumulator.close()
        except Exception as e:
            logger.warning(f"[{self._name}] accounting could not flush stream tail: {e!r}")

        await self._on_complete(self.accumulator, self.completed)

    async def iter_caller(self) -> AsyncIterator[bytes]:
        """Yield the upstream bytes unchanged, in order."""
        self.start()
        finished = False
        try:
            while True:
                chunk = await self._caller_queue.get()
                if chunk is _EOF:
                    finished = True
                    return
                yield chunk  # type: ignore[misc]
        finally:
            if not finished and self._reader is not None and not self._reader.done():
                self._reader.cancel()

    async def wait(self) -> None:
        """Wait for the reader and the accounting callback to finish."""
        tasks = [t for t in (self._reader, self._accounting) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
