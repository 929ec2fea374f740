"""
Tests for the upstream token cache and inbound API key checks.
"""
import asyncio

import pytest
from grappa import should

from zbridge.auth import AuthTokenCache


class CountingFetcher:
    def __init__(self, tokens=None, error=None, delay=0.0):
        self.tokens = list(tokens or ["anon-1", "anon-2", "anon-3"])
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.tokens[min(self.calls, len(self.tokens)) - 1]


@pytest.mark.asyncio
async def test_concurrent_gets_fetch_once():
    fetcher = CountingFetcher(delay=0.01)
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    tokens = await asyncio.gather(*(cache.get() for _ in range(20)))

    fetcher.calls | should.equal(1)
    set(tokens) | should.equal({"anon-1"})


@pytest.mark.asyncio
async def test_concurrent_gets_share_one_failed_fetch():
    fetcher = CountingFetcher(error=RuntimeError("unreachable"), delay=0.05)
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    tokens = await asyncio.gather(*(cache.get() for _ in range(5)))

    fetcher.calls | should.equal(1)
    tokens | should.equal(["static"] * 5)


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch():
    fetcher = CountingFetcher(delay=0.05)
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    first = asyncio.create_task(cache.get())
    await asyncio.sleep(0)
    second = asyncio.create_task(cache.get())
    await asyncio.sleep(0)
    first.cancel()

    (await second) | should.equal("anon-1")
    fetcher.calls | should.equal(1)
    (await cache.get()) | should.equal("anon-1")


@pytest.mark.asyncio
async def test_valid_token_is_reused_until_expiry():
    now = [0.0]
    fetcher = CountingFetcher()
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60, clock=lambda: now[0])

    (await cache.get()) | should.equal("anon-1")
    now[0] = 59.0
    (await cache.get()) | should.equal("anon-1")
    fetcher.calls | should.equal(1)

    now[0] = 60.0
    (await cache.get()) | should.equal("anon-2")
    fetcher.calls | should.equal(2)


@pytest.mark.asyncio
async def test_refresh_and_invalidate_force_a_fetch():
    fetcher = CountingFetcher()
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    (await cache.get()) | should.equal("anon-1")
    (await cache.get(refresh=True)) | should.equal("anon-2")
    cache.invalidate()
    (await cache.get()) | should.equal("anon-3")
    fetcher.calls | should.equal(3)


@pytest.mark.asyncio
async def test_fetch_failure_falls_back_without_caching():
    fetcher = CountingFetcher(error=RuntimeError("unreachable"))
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    (await cache.get()) | should.equal("static")
    (await cache.get()) | should.equal("static")
    fetcher.calls | should.equal(2)


@pytest.mark.asyncio
async def test_empty_token_falls_back():
    fetcher = CountingFetcher(tokens=[""])
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60)

    (await cache.get()) | should.equal("static")


@pytest.mark.asyncio
async def test_disabled_cache_returns_static_token():
    fetcher = CountingFetcher()
    cache = AuthTokenCache(fetcher, fallback_token="static", ttl_seconds=60, enabled=False)

    (await cache.get()) | should.equal("static")
    fetcher.calls | should.equal(0)


def test_chat_completion_no_auth(test_client):
    """Test chat completion endpoint without auth header"""
    response = test_client.post(
        "/v1/chat/completions",
        json={"model": "GLM-4.5", "messages": [{"role": "user", "content": "Hello!"}]},
    )

    response.status_code | should.equal(401)
    error = response.json()["error"]
    error["type"] | should.equal("authentication_error")
    error["code"] | should.equal("invalid_api_key")


@pytest.mark.parametrize("header", ["Bearer wrong-key", "Basic test-key", "test-key", "Bearer "])
def test_chat_completion_bad_auth(test_client, header):
    response = test_client.post(
        "/v1/chat/completions",
        json={"model": "GLM-4.5", "messages": [{"role": "user", "content": "Hello!"}]},
        headers={"Authorization": header},
    )

    response.status_code | should.equal(401)
    response.json()["error"]["type"] | should.equal("authentication_error")


def test_unset_key_rejects_every_request(settings):
    from fastapi.testclient import TestClient

    from zbridge.api import create_app

    settings.proxy.default_key = ""
    client = TestClient(create_app(settings))

    response = client.post(
        "/v1/chat/completions",
        json={"model": "GLM-4.5", "messages": [{"role": "user", "content": "Hello!"}]},
        headers={"Authorization": "Bearer anything"},
    )

    response.status_code | should.equal(401)
