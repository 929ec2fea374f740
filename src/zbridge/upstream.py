"""Upstream request building and HTTP calls to z.ai."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .catalog import DEFAULT_MODEL, UPSTREAM_MODEL_ID
from .config import ProxySettings
from .errors import UpstreamError, UpstreamTimeoutError
from .models import ChatSession, ModelItem, UpstreamRequest

logger = logging.getLogger(__name__)

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class UpstreamRequestBuilder:
    """Map a classified ChatSession onto the upstream chat payload."""

    def __init__(
        self,
        upstream_model_id: str = UPSTREAM_MODEL_ID,
        model_display_name: str = DEFAULT_MODEL,
        clock=datetime.now,
    ):
        self.upstream_model_id = upstream_model_id
        self.model_display_name = model_display_name
        self._clock = clock

    def build(self, session: ChatSession) -> UpstreamRequest:
        features = session.features
        return UpstreamRequest(
            stream=True,
            model=self.upstream_model_id,
            messages=[{"role": m.role, "content": m.content} for m in session.messages],
            params={},
            features=features.to_upstream_features(),
            background_tasks={"title_generation": False, "tags_generation": False},
            chat_id=session.session_id,
            id=session.upstream_message_id,
            mcp_servers=list(features.mcp_servers),
            model_item=ModelItem(id=self.upstream_model_id, name=self.model_display_name),
            tool_servers=[],
            variables={
                "{{USER_NAME}}": "User",
                "{{USER_LOCATION}}": "Unknown",
                "{{CURRENT_DATETIME}}": self._clock().strftime(DATETIME_FORMAT),
            },
        )


class UpstreamClient:
    """
    HTTP calls to the z.ai web backend.

    Every request carries the browser headers the web client sends. When no
    ``http_client`` is given, each call opens and closes its own
    ``httpx.AsyncClient``.
    """

    def __init__(self, settings: ProxySettings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client
        self.timeout = httpx.Timeout(float(settings.request_timeout_seconds))

    def _browser_headers(self, referer: str) -> Dict[str, str]:
        s = self.settings
        return {
            "User-Agent": s.browser_ua,
            "Accept": "*/*",
            "Accept-Language": "zh-CN,zh;q=0.9",
            "X-FE-Version": s.x_fe_version,
            "sec-ch-ua": s.sec_ch_ua,
            "sec-ch-ua-mobile": s.sec_ch_ua_mobile,
            "sec-ch-ua-platform": s.sec_ch_ua_platform,
            "Origin": s.origin_base,
            "Referer": referer,
        }

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()

    async def fetch_anonymous_token(self) -> str:
        """Ask the upstream for a guest token; raises on any failure."""
        url = f"{self.settings.origin_base}/api/v1/auths/"
        async with self._client() as client:
            response = await client.get(url, headers=self._browser_headers(self.settings.origin_base))
            response.raise_for_status()
            body = response.json()
        token = body.get("token") if isinstance(body, dict) else None
        return token or ""

    async def fetch_models(self, token: str) -> Dict[str, Any]:
        url = f"{self.settings.origin_base}/api/models"
        headers = self._browser_headers(self.settings.origin_base)
        headers["Authorization"] = f"Bearer {token}"
        async with self._client() as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
            return response.json()

    @asynccontextmanager
    async def open_stream(self, request: UpstreamRequest, token: str) -> AsyncIterator[httpx.Response]:
        """
        POST the chat payload and yield the streaming response.

        The response is closed on exit. Connection failures and non-2xx
        statuses raise ``UpstreamError``; timeouts raise ``UpstreamTimeoutError``.
        """
        headers = self._browser_headers(f"{self.settings.origin_base}/c/{request.chat_id}")
        headers["Authorization"] = f"Bearer {token}"
        headers["Content-Type"] = "application/json"

        async with self._client() as client:
            http_request = client.build_request(
                "POST",
                self.settings.upstream_url,
                content=request.model_dump_json().encode(),
                headers=headers,
                timeout=self.timeout,
            )
            logger.debug(f"Sending upstream request to {self.settings.upstream_url}")
            try:
                response = await client.send(http_request, stream=True)
            except httpx.TimeoutException as e:
                logger.error(f"Upstream request timed out [ChatId: {request.chat_id}]: {str(e)}")
                raise UpstreamTimeoutError() from e
            except httpx.HTTPError as e:
                logger.error(f"Upstream request failed [ChatId: {request.chat_id}]: {str(e)}")
                raise UpstreamError() from e

            try:
                if not response.is_success:
                    body = await response.aread()
                    logger.error(
                        f"Upstream returned {response.status_code} [ChatId: {request.chat_id}]: "
                        f"{body[:200].decode('utf-8', errors='replace')}"
                    )
                    raise UpstreamError()
                yield response
            finally:
                await response.aclose()
