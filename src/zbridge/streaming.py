"""Streaming translation of upstream SSE frames into OpenAI chunks."""

import asyncio
import codecs
import logging
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from pydantic import BaseModel

from .errors import UpstreamTimeoutError
from .models import FrameDecodeError, OutboundChunk, UpstreamFrame, Usage
from .transform import ContentTagTransformer

logger = logging.getLogger(__name__)
stream_logger = logging.getLogger("stream")

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"
DEFAULT_QUEUE_SIZE = 1000
UPSTREAM_ERROR_MESSAGE = "Sorry, the upstream service returned an error. Please try again later."


class StreamState(str, Enum):
    AWAITING_FIRST = "awaiting_first"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class SseDecoder:
    """
    Incrementally split raw SSE bytes into ``data:`` payloads.

    Bytes may arrive cut anywhere, including inside a UTF-8 sequence or a
    line. Blank lines, lines with any other prefix, empty payloads and the
    ``[DONE]`` sentinel are dropped.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, raw: bytes) -> List[str]:
        self._buffer += self._decoder.decode(raw)
        *lines, self._buffer = self._buffer.split("\n")
        return [data for data in map(self._payload, lines) if data is not None]

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        data = self._payload(line)
        return [] if data is None else [data]

    @staticmethod
    def _payload(line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):]
        if not data.strip() or data.strip() == DONE_PAYLOAD:
            return None
        return data


class _EndOfStream:
    """Queue item: the producer has stopped, optionally because of an error."""

    def __init__(self, error: Optional[BaseException] = None):
        self.error = error


class CollectedResponse(BaseModel):
    content: str = ""
    reasoning_content: Optional[str] = None
    usage: Optional[Usage] = None


class SsePipeline:
    """
    Translate one upstream SSE stream into ``OutboundChunk`` objects.

    Reading runs in a producer task that decodes frames into a bounded
    ``asyncio.Queue``; when the queue is full the producer waits. The
    consumer side is the ``run`` generator, which walks the
    ``AWAITING_FIRST -> STREAMING -> TERMINATED`` states:

    - first, a single chunk carrying only the assistant role
    - then one chunk per frame with non-empty transformed content
    - a frame carrying an error yields an apology chunk and ends the stream
    - a done frame, upstream EOF or a read failure ends the stream

    Every normal end produces exactly one terminal chunk
    (``finish_reason="stop"``) as the last item. Closing or cancelling the
    generator cancels the producer. ``idle_timeout`` bounds the wait for each
    next frame, so a stream that keeps producing frames may run for any
    length of time; a gap longer than that raises ``UpstreamTimeoutError``.
    Chunks keep upstream order.
    """

    def __init__(
        self,
        transformer: ContentTagTransformer,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        idle_timeout: Optional[float] = None,
        request_id: str = "-",
    ):
        self.transformer = transformer
        self.queue_size = queue_size
        self.idle_timeout = idle_timeout
        self.request_id = request_id
        self.state = StreamState.AWAITING_FIRST
        self.usage: Optional[Usage] = None
        self.chunks_emitted = 0
        self.bytes_read = 0
        self.frames_skipped = 0

    async def run(self, byte_stream: AsyncIterable[bytes]) -> AsyncIterator[OutboundChunk]:
        if self.state is not StreamState.AWAITING_FIRST:
            raise RuntimeError("an SsePipeline can only be run once")

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        producer = asyncio.create_task(self._produce(byte_stream, queue))
        try:
            yield self._emit(OutboundChunk(role="assistant"))
            self.state = StreamState.STREAMING

            while self.state is StreamState.STREAMING:
                item = await self._next_item(queue)
                for chunk in self._handle(item):
                    yield chunk
        finally:
            self.state = StreamState.TERMINATED
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            stream_logger.info(
                "Stream finished [RequestId: %s] [Chunks: %d] [Bytes: %d] [Skipped: %d]",
                self.request_id,
                self.chunks_emitted,
                self.bytes_read,
                self.frames_skipped,
            )

    async def collect(self, byte_stream: AsyncIterable[bytes]) -> CollectedResponse:
        """Run the pipeline to completion and concatenate both channels."""
        content: List[str] = []
        reasoning: List[str] = []
        async with aclosing(self.run(byte_stream)) as chunks:
            async for chunk in chunks:
                if chunk.content:
                    content.append(chunk.content)
                if chunk.reasoning_content:
                    reasoning.append(chunk.reasoning_content)
        return CollectedResponse(
            content="".join(content),
            reasoning_content="".join(reasoning) or None,
            usage=self.usage,
        )

    async def _produce(self, byte_stream: AsyncIterable[bytes], queue: asyncio.Queue) -> None:
        decoder = SseDecoder()
        try:
            async for raw in byte_stream:
                self.bytes_read += len(raw)
                for data in decoder.feed(raw):
                    if await self._enqueue(data, queue):
                        return
            for data in decoder.flush():
                if await self._enqueue(data, queue):
                    return
            await queue.put(_EndOfStream())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(_EndOfStream(e))
        finally:
            aclose = getattr(byte_stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _enqueue(self, data: str, queue: asyncio.Queue) -> bool:
        """Decode one payload and queue it; True once the upstream has finished."""
        try:
            frame = UpstreamFrame.from_json(data)
        except FrameDecodeError as e:
            self.frames_skipped += 1
            stream_logger.warning(
                "Skipping malformed upstream frame [RequestId: %s] [Data: %s]: %s",
                self.request_id,
                data[:100] + "..." if len(data) > 100 else data,
                e.__cause__ or e,
            )
            return False
        await queue.put(frame)
        return frame.has_error or frame.is_terminal

    async def _next_item(self, queue: asyncio.Queue) -> Union[UpstreamFrame, _EndOfStream]:
        try:
            return queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        if self.idle_timeout is None:
            return await queue.get()

        try:
            return await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            stream_logger.warning(
                "No upstream frame for %.1fs [RequestId: %s]",
                self.idle_timeout,
                self.request_id,
            )
            raise UpstreamTimeoutError() from None

    def _handle(self, item: Union[UpstreamFrame, _EndOfStream]) -> List[OutboundChunk]:
        if isinstance(item, _EndOfStream):
            if item.error is not None:
                stream_logger.error(
                    "Upstream stream failed [RequestId: %s]: %r",
                    self.request_id,
                    item.error,
                )
            else:
                stream_logger.warning(
                    "Upstream stream ended without a done frame [RequestId: %s]",
                    self.request_id,
                )
            return [self._terminal()]

        frame = item
        if frame.usage is not None:
            self.usage = frame.usage

        if frame.has_error:
            stream_logger.warning(
                "Upstream signalled an error [RequestId: %s] [Detail: %s] [Code: %s]",
                self.request_id,
                frame.error.detail,
                frame.error.code,
            )
            return [self._emit(OutboundChunk(content=UPSTREAM_ERROR_MESSAGE)), self._terminal()]

        chunks = []
        if frame.delta_content:
            content, reasoning = self.transformer.classify(frame.delta_content, frame.phase)
            if content or reasoning:
                chunks.append(self._emit(OutboundChunk(content=content, reasoning_content=reasoning)))
        if frame.is_terminal:
            chunks.append(self._terminal())
        return chunks

    def _terminal(self) -> OutboundChunk:
        self.state = StreamState.TERMINATED
        return self._emit(OutboundChunk(finish_reason="stop", usage=self.usage))

    def _emit(self, chunk: OutboundChunk) -> OutboundChunk:
        self.chunks_emitted += 1
        return chunk
