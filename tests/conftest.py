import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from zbridge.api import create_app
from zbridge.config import AppSettings, IntentSettings, ProxySettings, ServerSettings

# Mock upstream frames
ANSWER_FRAME = {"type": "chat:completion", "data": {"delta_content": "Hi", "phase": "answer"}}
DONE_FRAME = {"type": "chat:completion", "data": {"delta_content": "", "phase": "done", "done": True}}
THINKING_FRAME = {
    "type": "chat:completion",
    "data": {
        "delta_content": '<details type="reasoning" done="false">\n> Let me think',
        "phase": "thinking",
    },
}
USAGE_FRAME = {
    "type": "chat:completion",
    "data": {
        "phase": "other",
        "usage": {"prompt_tokens": 9, "completion_tokens": 12, "total_tokens": 21},
    },
}

MOCK_MODELS_RESPONSE = {
    "data": [
        {"id": "0727-360B-API", "name": "GLM-4.5", "info": {"is_active": True, "created_at": 1700000000}},
        {"id": "glm-4.5v", "name": "", "info": {"is_active": True, "created_at": 1700000001}},
        {"id": "retired-model", "name": "Old", "info": {"is_active": False}},
    ]
}


def sse_line(payload) -> bytes:
    if not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    return f"data: {payload}\n\n".encode()


def sse_body(*frames) -> bytes:
    return b"".join(sse_line(frame) for frame in frames)


class MockByteStream:
    """
    Async byte source standing in for an upstream response body.

    Yields ``chunks`` in order, ``delay`` seconds apart, then either ends,
    raises ``error``, or blocks until cancelled when ``hang`` is set.
    Records how far it was read and whether it was closed.
    """

    def __init__(self, chunks, error=None, hang=False, delay=0.0):
        self._chunks = list(chunks)
        self.delay = delay
        self.error = error
        self.hang = hang
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.pulled < len(self._chunks):
            if self.delay:
                await asyncio.sleep(self.delay)
            chunk = self._chunks[self.pulled]
            self.pulled += 1
            return chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings():
    return AppSettings(
        proxy=ProxySettings(
            default_key="test-key",
            upstream_token="static-token",
            anon_token_enabled=False,
            dynamic_models=False,
        ),
        intent=IntentSettings(),
        settings=ServerSettings(),
    )


@pytest.fixture
def test_client(settings):
    return TestClient(create_app(settings))


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-key"}


@pytest.fixture
def mock_upstream(monkeypatch):
    """
    Route ``httpx.AsyncClient.send`` to a handler: ``handler(request) -> httpx.Response``.

    Every request sent is recorded on the returned list.
    """
    sent = []

    def install(handler):
        async def mock_send(self, request, **kwargs):
            sent.append(request)
            result = handler(request)
            if isinstance(result, Exception):
                raise result
            return result

        monkeypatch.setattr(httpx.AsyncClient, "send", mock_send)
        return sent

    return install
