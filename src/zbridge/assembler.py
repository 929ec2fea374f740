"""OpenAI response envelopes for translated streams."""

import json
import time
import uuid
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

from .models import OutboundChunk, Usage
from .streaming import CollectedResponse

DONE_LINE = b"data: [DONE]\n\n"


def sse_line(payload: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


class ResponseAssembler:
    """
    Wrap pipeline output in ``chat.completion.chunk`` / ``chat.completion``
    envelopes. All envelopes of one response share a completion id.
    """

    def __init__(self, model: str, completion_id: Optional[str] = None, clock=time.time):
        self.model = model
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self._clock = clock

    def chunk_envelope(self, chunk: OutboundChunk) -> Dict[str, Any]:
        delta: Dict[str, Any] = {}
        if chunk.role is not None:
            delta["role"] = chunk.role
        if chunk.content is not None:
            delta["content"] = chunk.content
        if chunk.reasoning_content is not None:
            delta["reasoning_content"] = chunk.reasoning_content

        envelope = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": int(self._clock()),
            "model": self.model,
            "choices": [
                {
                    "index": chunk.index,
                    "delta": delta,
                    "finish_reason": chunk.finish_reason,
                }
            ],
        }
        if chunk.usage is not None:
            envelope["usage"] = chunk.usage.model_dump()
        return envelope

    def encode_chunk(self, chunk: OutboundChunk) -> bytes:
        return sse_line(self.chunk_envelope(chunk))

    async def stream(self, chunks: AsyncIterable[OutboundChunk]) -> AsyncIterator[bytes]:
        """Encode chunks as SSE lines, closing with ``data: [DONE]`` after the terminal chunk."""
        async for chunk in chunks:
            yield self.encode_chunk(chunk)
            if chunk.is_terminal:
                yield DONE_LINE
                return

    def completion(self, collected: CollectedResponse) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": collected.content}
        if collected.reasoning_content:
            message["reasoning_content"] = collected.reasoning_content

        usage = collected.usage or Usage()
        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": int(self._clock()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": "stop",
                }
            ],
            "usage": usage.model_dump(),
        }
