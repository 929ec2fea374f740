"""Model aliases and the /v1/models listing."""

import logging
import time
from typing import Any, Dict, List, Optional

from .models import FeatureFlags, ModelInfo

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "GLM-4.5"
THINKING_MODEL = "GLM-4.5-Thinking"
SEARCH_MODEL = "GLM-4.5-Search"
AUTO_MODEL = "GLM-4.5-Auto"

UPSTREAM_MODEL_ID = "0727-360B-API"
SEARCH_MCP_SERVER = "deep-web-search"

MODEL_ALIASES = (DEFAULT_MODEL, THINKING_MODEL, SEARCH_MODEL, AUTO_MODEL)


def is_valid_model(model: str) -> bool:
    return model in MODEL_ALIASES


def requires_smart_dispatch(model: str) -> bool:
    """Aliases whose features are chosen from the conversation itself."""
    return model in (DEFAULT_MODEL, AUTO_MODEL)


def features_for_model(model: str) -> FeatureFlags:
    """Flags statically bound to an alias."""
    if model == SEARCH_MODEL:
        return FeatureFlags.with_search(SEARCH_MCP_SERVER)
    if model == THINKING_MODEL:
        return FeatureFlags.with_thinking()
    return FeatureFlags.basic()


def static_models(created: Optional[int] = None) -> List[ModelInfo]:
    created = int(time.time()) if created is None else created
    return [ModelInfo(id=alias, created=created) for alias in MODEL_ALIASES]


def format_model_id(model_id: str) -> str:
    """``glm-4.5v-air`` -> ``GLM-4.5v-Air``: upper-case head, capitalised words."""
    if not model_id:
        return ""
    parts = model_id.split("-")
    formatted = [parts[0].upper()]
    for part in parts[1:]:
        if not part or part.isdigit():
            formatted.append(part)
        elif any(ch.isalpha() for ch in part):
            formatted.append(part[0].upper() + part[1:].lower())
        else:
            formatted.append(part)
    return "-".join(formatted)


def format_model_name(model_id: str, model_name: str) -> str:
    if not model_name or not ("a" <= model_name[0].lower() <= "z"):
        return format_model_id(model_id)
    if model_id.startswith("GLM") or model_id.startswith("Z"):
        return model_id
    return model_name


class ModelCatalog:
    """
    Models advertised on /v1/models.

    When ``dynamic`` is set, the active upstream models are fetched and cached
    for ``ttl_seconds``, with the Auto alias appended. Any failure falls back
    to the static alias list.
    """

    def __init__(self, upstream, token_cache, dynamic: bool = True, ttl_seconds: float = 1800.0, clock=time.monotonic):
        self.upstream = upstream
        self.token_cache = token_cache
        self.dynamic = dynamic
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cached: Optional[List[ModelInfo]] = None
        self._expires_at = 0.0

    async def list_models(self) -> List[ModelInfo]:
        if not self.dynamic:
            return static_models()

        if self._cached is not None and self._clock() < self._expires_at:
            logger.debug("Returning %d cached models", len(self._cached))
            return self._cached

        try:
            token = await self.token_cache.get()
            payload = await self.upstream.fetch_models(token)
            models = self._parse_models(payload)
        except Exception as e:
            logger.error(f"Dynamic model listing failed, using static list: {str(e)}")
            return static_models()

        models.append(ModelInfo(id=AUTO_MODEL, created=int(time.time())))
        self._cached = models
        self._expires_at = self._clock() + self.ttl_seconds
        logger.info("Fetched %d models from upstream", len(models))
        return models

    @staticmethod
    def _parse_models(payload: Dict[str, Any]) -> List[ModelInfo]:
        models = []
        for item in payload.get("data") or []:
            info = item.get("info") or {}
            if not info.get("is_active"):
                continue
            model_id = item.get("id") or ""
            models.append(
                ModelInfo(
                    id=model_id,
                    name=format_model_name(model_id, item.get("name") or ""),
                    created=int(info.get("created_at") or time.time()),
                )
            )
        return models
