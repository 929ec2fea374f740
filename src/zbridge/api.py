"""FastAPI application and routes for the zbridge proxy."""

import hmac
import json
import logging
import uuid
from contextlib import AsyncExitStack, aclosing
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .assembler import DONE_LINE, ResponseAssembler
from .auth import AuthTokenCache
from .catalog import ModelCatalog, is_valid_model
from .config import AppSettings, configure_logging, load_settings
from .errors import AuthenticationError, InvalidRequestError, ProxyError, UpstreamError, UpstreamTimeoutError
from .intent import IntentClassifier
from .models import ChatCompletionRequest, ChatSession, ModelList
from .streaming import SsePipeline
from .transform import ContentTagTransformer
from .upstream import UpstreamClient, UpstreamRequestBuilder

logger = logging.getLogger(__name__)


def _json_response(content: dict, status_code: int = 200) -> Response:
    return Response(
        content=json.dumps(content, ensure_ascii=False),
        status_code=status_code,
        media_type="application/json",
    )


def _check_api_key(request: Request, expected: str) -> None:
    auth_header = request.headers.get("authorization") or ""
    scheme, _, key = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not key.strip():
        raise AuthenticationError("Missing or malformed Authorization header")
    if not expected or not hmac.compare_digest(key.strip().encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def _parse_request(request: Request) -> ChatCompletionRequest:
    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Invalid JSON in request body")
    try:
        chat_request = ChatCompletionRequest.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidRequestError(f"Invalid request: {location} {first.get('msg', '')}".strip())
    if not is_valid_model(chat_request.model):
        raise InvalidRequestError(f"Unsupported model: {chat_request.model}")
    return chat_request


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Wire the proxy components for ``settings`` into a FastAPI app."""
    settings = settings or load_settings()
    configure_logging(settings.settings)
    proxy = settings.proxy

    app = FastAPI(title="zbridge")

    upstream = UpstreamClient(proxy)
    token_cache = AuthTokenCache(
        upstream.fetch_anonymous_token,
        fallback_token=proxy.upstream_token,
        ttl_seconds=proxy.token_cache_minutes * 60,
        enabled=proxy.anon_token_enabled,
    )
    app.state.settings = settings
    app.state.upstream = upstream
    app.state.token_cache = token_cache
    app.state.classifier = IntentClassifier(settings.intent)
    app.state.builder = UpstreamRequestBuilder(model_display_name=proxy.model_name)
    app.state.catalog = ModelCatalog(upstream, token_cache, dynamic=proxy.dynamic_models)
    app.state.transformer = ContentTagTransformer(proxy.think_tags_mode)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
        return _json_response(exc.to_error_body(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _json_response(
            {
                "error": {
                    "type": "api_error",
                    "message": "Internal server error",
                    "code": "internal_error",
                }
            },
            status_code=500,
        )

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        """
        OpenAI-compatible chat endpoint:
        - classifies the conversation and builds the upstream payload
        - streams translated chunks, or returns one ``chat.completion``
        """
        _check_api_key(request, proxy.default_key)
        chat_request = await _parse_request(request)
        request_id = uuid.uuid4().hex[:8]

        features = app.state.classifier.classify(chat_request.messages, chat_request.model)
        session = ChatSession.create(
            chat_request.model,
            chat_request.messages,
            features,
            bool(chat_request.stream),
        )
        upstream_request = app.state.builder.build(session)
        logger.info(
            f"Chat request [RequestId: {request_id}] [Model: {chat_request.model}] "
            f"[Stream: {session.is_streaming}] [Features: {features.to_upstream_features()}]"
        )

        token = await token_cache.get()
        exit_stack = AsyncExitStack()
        try:
            response = await exit_stack.enter_async_context(upstream.open_stream(upstream_request, token))
        except UpstreamTimeoutError:
            await exit_stack.aclose()
            raise
        except UpstreamError:
            await exit_stack.aclose()
            token_cache.invalidate()
            raise

        pipeline = SsePipeline(
            app.state.transformer,
            queue_size=proxy.stream_queue_size,
            idle_timeout=float(proxy.request_timeout_seconds),
            request_id=request_id,
        )
        assembler = ResponseAssembler(chat_request.model)

        if not session.is_streaming:
            async with exit_stack:
                collected = await pipeline.collect(response.aiter_bytes())
            return _json_response(assembler.completion(collected))

        async def event_stream():
            try:
                async with aclosing(pipeline.run(response.aiter_bytes())) as chunks:
                    async for line in assembler.stream(chunks):
                        yield line
            except UpstreamTimeoutError:
                yield DONE_LINE
            finally:
                await exit_stack.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.options("/v1/chat/completions")
    async def chat_completions_preflight() -> Response:
        return Response(status_code=200)

    @app.get("/v1/models")
    async def list_models():
        models = await app.state.catalog.list_models()
        return ModelList(data=models).model_dump(exclude_none=True)

    @app.get("/health")
    async def health_check() -> Response:
        """Readiness of the upstream credential path."""
        token = await token_cache.get()
        status = "healthy" if token else "unhealthy"
        if not token:
            logger.error("Health check failed: no upstream token available")
        return _json_response(
            {
                "status": status,
                "upstream_url": proxy.upstream_url,
                "anon_token_enabled": proxy.anon_token_enabled,
                "has_token": bool(token),
            },
            status_code=200 if token else 503,
        )

    return app


app = create_app()


def main() -> None:
    import uvicorn

    server = app.state.settings.settings
    uvicorn.run(app, host=server.host, port=server.port)


if __name__ == "__main__":
    main()
