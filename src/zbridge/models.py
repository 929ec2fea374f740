"""Data models and schemas for the zbridge proxy."""

import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ChatMessage(BaseModel):
    """Chat message model."""
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str = ""
    reasoning_content: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _flatten_content(cls, value: Any) -> Any:
        # OpenAI content parts: keep the text parts only.
        if value is None:
            return ""
        if isinstance(value, list):
            return "".join(
                part.get("text", "")
                for part in value
                if isinstance(part, dict) and part.get("type") == "text"
            )
        return value


class ChatCompletionRequest(BaseModel):
    """Request model for chat completions."""
    model: str
    messages: List[ChatMessage]
    stream: Optional[bool] = False
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    user: Optional[str] = None


class FeatureFlags(BaseModel):
    """Upstream features enabled for one session."""
    model_config = ConfigDict(frozen=True)

    enable_thinking: bool = False
    enable_web_search: bool = False
    enable_auto_web_search: bool = False
    mcp_servers: Tuple[str, ...] = ()

    @classmethod
    def basic(cls) -> "FeatureFlags":
        return cls()

    @classmethod
    def with_thinking(cls) -> "FeatureFlags":
        return cls(enable_thinking=True)

    @classmethod
    def with_search(cls, mcp_server: str = "deep-web-search") -> "FeatureFlags":
        return cls(
            enable_thinking=True,
            enable_web_search=True,
            enable_auto_web_search=True,
            mcp_servers=(mcp_server,),
        )

    def to_upstream_features(self) -> Dict[str, bool]:
        return {
            "enable_thinking": self.enable_thinking,
            "web_search": self.enable_web_search,
            "auto_web_search": self.enable_auto_web_search,
        }


class ChatSession(BaseModel):
    """One inbound request, classified and ready to send upstream."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    upstream_message_id: str
    model_alias: str
    messages: Tuple[ChatMessage, ...]
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    is_streaming: bool = False
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        model_alias: str,
        messages: List[ChatMessage],
        features: FeatureFlags,
        is_streaming: bool,
    ) -> "ChatSession":
        now = time.time()
        millis = int(now * 1000)
        return cls(
            session_id=f"{millis}-{int(now)}",
            upstream_message_id=str(millis),
            model_alias=model_alias,
            messages=tuple(messages),
            features=features,
            is_streaming=is_streaming,
            created_at=now,
        )


class ModelItem(BaseModel):
    id: str
    name: str
    owned_by: str = "openai"


class UpstreamRequest(BaseModel):
    """Payload for the upstream chat endpoint."""
    stream: bool = True
    model: str
    messages: List[Dict[str, str]]
    params: Dict[str, Any] = Field(default_factory=dict)
    features: Dict[str, bool] = Field(default_factory=dict)
    background_tasks: Dict[str, bool] = Field(default_factory=dict)
    chat_id: str
    id: str
    mcp_servers: List[str] = Field(default_factory=list)
    model_item: ModelItem
    tool_servers: List[str] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Phase(str, Enum):
    THINKING = "thinking"
    ANSWER = "answer"
    DONE = "done"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Phase":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class UpstreamErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    detail: str = ""
    code: Optional[Union[int, str]] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["UpstreamErrorInfo"]:
        if raw is None:
            return None
        if isinstance(raw, dict):
            return cls(detail=str(raw.get("detail") or raw.get("message") or ""), code=raw.get("code"))
        return cls(detail=str(raw))


class _RawData(BaseModel):
    delta_content: Optional[str] = None
    phase: Optional[str] = None
    done: Optional[bool] = False
    usage: Optional[Usage] = None
    error: Any = None
    data: Any = None


class _RawFrame(BaseModel):
    type: Optional[str] = None
    data: Optional[_RawData] = None
    error: Any = None


class FrameDecodeError(ValueError):
    """A ``data:`` payload that is not a valid upstream frame."""


class UpstreamFrame(BaseModel):
    """One decoded upstream SSE ``data:`` line."""
    model_config = ConfigDict(frozen=True)

    type: str = ""
    delta_content: str = ""
    phase: Phase = Phase.OTHER
    done: bool = False
    usage: Optional[Usage] = None
    error: Optional[UpstreamErrorInfo] = None

    @classmethod
    def from_json(cls, data: str) -> "UpstreamFrame":
        try:
            raw = _RawFrame.model_validate_json(data)
        except ValidationError as e:
            raise FrameDecodeError(str(e)) from e

        details = raw.data or _RawData()
        inner = details.data if isinstance(details.data, dict) else {}
        # First error found wins: top level, then data, then data.data.
        error = (
            UpstreamErrorInfo.from_raw(raw.error)
            or UpstreamErrorInfo.from_raw(details.error)
            or UpstreamErrorInfo.from_raw(inner.get("error"))
        )
        return cls(
            type=raw.type or "",
            delta_content=details.delta_content or "",
            phase=Phase.parse(details.phase),
            done=bool(details.done),
            usage=details.usage,
            error=error,
        )

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.phase is Phase.DONE


class OutboundChunk(BaseModel):
    """One OpenAI-shaped delta, before it is wrapped in an envelope."""
    model_config = ConfigDict(frozen=True)

    index: int = 0
    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "z.ai"
    name: Optional[str] = None


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelInfo]
