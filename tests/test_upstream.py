"""
Tests for upstream payload building and the z.ai HTTP client.
"""
import json
from datetime import datetime

import httpx
import pytest
from grappa import should

from zbridge.catalog import SEARCH_MCP_SERVER
from zbridge.config import ProxySettings
from zbridge.errors import UpstreamError, UpstreamTimeoutError
from zbridge.models import ChatMessage, ChatSession, FeatureFlags
from zbridge.upstream import UpstreamClient, UpstreamRequestBuilder

from .conftest import DONE_FRAME, sse_body


def make_session(features=None):
    return ChatSession.create(
        "GLM-4.5-Search",
        [ChatMessage(role="system", content="be brief"), ChatMessage(role="user", content="hello")],
        features or FeatureFlags.with_search(SEARCH_MCP_SERVER),
        is_streaming=True,
    )


def test_builder_maps_session_to_payload():
    builder = UpstreamRequestBuilder(clock=lambda: datetime(2024, 1, 2, 3, 4, 5))
    session = make_session()

    request = builder.build(session)

    request.stream | should.be.true
    request.model | should.equal("0727-360B-API")
    request.chat_id | should.equal(session.session_id)
    request.id | should.equal(session.upstream_message_id)
    request.messages | should.equal(
        [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hello"},
        ]
    )
    request.features | should.equal({"enable_thinking": True, "web_search": True, "auto_web_search": True})
    request.mcp_servers | should.equal(["deep-web-search"])
    request.background_tasks | should.equal({"title_generation": False, "tags_generation": False})
    request.model_item.model_dump() | should.equal({"id": "0727-360B-API", "name": "GLM-4.5", "owned_by": "openai"})
    request.tool_servers | should.equal([])
    request.params | should.equal({})
    request.variables | should.equal(
        {
            "{{USER_NAME}}": "User",
            "{{USER_LOCATION}}": "Unknown",
            "{{CURRENT_DATETIME}}": "2024-01-02 03:04:05",
        }
    )


def test_session_ids_follow_upstream_format():
    session = make_session(FeatureFlags.basic())
    millis, _, seconds = session.session_id.partition("-")
    session.upstream_message_id | should.equal(millis)
    millis.isdigit() | should.be.true
    seconds.isdigit() | should.be.true
    len(millis) | should.equal(len(seconds) + 3)


@pytest.mark.asyncio
async def test_open_stream_sends_browser_request(mock_upstream):
    sent = mock_upstream(lambda request: httpx.Response(200, content=sse_body(DONE_FRAME), request=request))
    client = UpstreamClient(ProxySettings())
    request = UpstreamRequestBuilder().build(make_session())

    async with client.open_stream(request, "tok-123") as response:
        body = b"".join([chunk async for chunk in response.aiter_bytes()])

    body | should.equal(sse_body(DONE_FRAME))
    upstream_request = sent[0]
    upstream_request.method | should.equal("POST")
    str(upstream_request.url) | should.equal("https://chat.z.ai/api/chat/completions")
    upstream_request.headers["Authorization"] | should.equal("Bearer tok-123")
    upstream_request.headers["Referer"] | should.equal(f"https://chat.z.ai/c/{request.chat_id}")
    upstream_request.headers["Origin"] | should.equal("https://chat.z.ai")
    upstream_request.headers["X-FE-Version"] | should.equal("prod-fe-1.0.70")
    payload = json.loads(upstream_request.content)
    payload["model"] | should.equal("0727-360B-API")
    payload["mcp_servers"] | should.equal(["deep-web-search"])


@pytest.mark.asyncio
async def test_open_stream_maps_bad_status(mock_upstream):
    mock_upstream(lambda request: httpx.Response(500, content=b"internal failure", request=request))
    client = UpstreamClient(ProxySettings())

    with pytest.raises(UpstreamError) as exc_info:
        async with client.open_stream(UpstreamRequestBuilder().build(make_session()), "tok"):
            pass

    exc_info.value.status_code | should.equal(502)
    exc_info.value.message | should.do_not.contain("internal failure")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,expected_status",
    [
        (httpx.ReadTimeout("slow"), 504),
        (httpx.ConnectTimeout("slow"), 504),
        (httpx.ConnectError("refused"), 502),
    ],
)
async def test_open_stream_maps_transport_errors(mock_upstream, error, expected_status):
    mock_upstream(lambda request: error)
    client = UpstreamClient(ProxySettings())

    with pytest.raises(UpstreamError) as exc_info:
        async with client.open_stream(UpstreamRequestBuilder().build(make_session()), "tok"):
            pass

    exc_info.value.status_code | should.equal(expected_status)
    isinstance(exc_info.value, UpstreamTimeoutError) | should.equal(expected_status == 504)


@pytest.mark.asyncio
async def test_fetch_anonymous_token(mock_upstream):
    sent = mock_upstream(lambda request: httpx.Response(200, json={"token": "anon-token"}, request=request))
    client = UpstreamClient(ProxySettings(origin_base="https://example.test"))

    (await client.fetch_anonymous_token()) | should.equal("anon-token")
    str(sent[0].url) | should.equal("https://example.test/api/v1/auths/")
    sent[0].headers["Referer"] | should.equal("https://example.test")


@pytest.mark.asyncio
async def test_fetch_anonymous_token_raises_on_bad_status(mock_upstream):
    mock_upstream(lambda request: httpx.Response(403, json={"detail": "denied"}, request=request))
    client = UpstreamClient(ProxySettings())

    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_anonymous_token()


@pytest.mark.asyncio
async def test_fetch_models_sends_token(mock_upstream):
    sent = mock_upstream(lambda request: httpx.Response(200, json={"data": []}, request=request))
    client = UpstreamClient(ProxySettings())

    (await client.fetch_models("tok")) | should.equal({"data": []})
    str(sent[0].url) | should.equal("https://chat.z.ai/api/models")
    sent[0].headers["Authorization"] | should.equal("Bearer tok")
