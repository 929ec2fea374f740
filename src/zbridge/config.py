"""Configuration handling for the zbridge proxy."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

stream_logger = logging.getLogger("stream")
stream_logger.setLevel(logging.INFO)

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config.yaml"


class ProxySettings(BaseModel):
    """Upstream connection and translation settings."""
    upstream_url: str = "https://chat.z.ai/api/chat/completions"
    origin_base: str = "https://chat.z.ai"
    default_key: str = ""
    upstream_token: str = ""
    model_name: str = "GLM-4.5"
    think_tags_mode: Literal["strip", "think", "keep"] = "strip"
    x_fe_version: str = "prod-fe-1.0.70"
    browser_ua: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
    )
    sec_ch_ua: str = '"Not;A=Brand";v="99", "Google Chrome";v="139", "Chromium";v="139"'
    sec_ch_ua_mobile: str = "?0"
    sec_ch_ua_platform: str = '"Windows"'
    anon_token_enabled: bool = True
    request_timeout_seconds: int = Field(default=120, ge=30, le=300)
    token_cache_minutes: int = Field(default=30, ge=1, le=60)
    dynamic_models: bool = True
    stream_queue_size: int = Field(default=1000, ge=1)


class IntentSettings(BaseModel):
    """Thresholds, keywords and patterns for smart dispatch."""
    enable_smart_dispatch: bool = True
    search_threshold: float = Field(default=2.0, ge=0.1, le=10.0)
    thinking_threshold: float = Field(default=2.5, ge=0.1, le=10.0)
    combined_threshold: float = Field(default=4.0, ge=0.1, le=20.0)
    cache_timeout_minutes: int = Field(default=5, ge=1, le=60)
    context_depth: int = Field(default=3, ge=1, le=10)
    custom_search_keywords: Dict[str, float] = Field(default_factory=dict)
    custom_thinking_keywords: Dict[str, float] = Field(default_factory=dict)
    disabled_keywords: List[str] = Field(default_factory=list)
    force_search_patterns: List[str] = Field(default_factory=list)
    force_thinking_patterns: List[str] = Field(default_factory=list)
    more_info_phrases: List[str] = Field(
        default_factory=lambda: ["需要更多信息", "最新数据", "need more information", "latest data"]
    )


class ServerSettings(BaseModel):
    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000


class AppSettings(BaseModel):
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    intent: IntentSettings = Field(default_factory=IntentSettings)
    settings: ServerSettings = Field(default_factory=ServerSettings)


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from the config.yaml file.

    The path defaults to ``config.yaml`` at the repository root and can be
    overridden with the ``ZBRIDGE_CONFIG`` environment variable.
    Returns an empty dictionary when the file cannot be read or parsed.
    """
    if path is None:
        path = Path(os.environ.get("ZBRIDGE_CONFIG", str(DEFAULT_CONFIG_PATH)))
    try:
        config = yaml.safe_load(path.read_text()) or {}
        if not isinstance(config, dict):
            raise ValueError("top level of the configuration must be a mapping")
        logger.info(f"Successfully loaded configuration from {path}")
        return config
    except Exception as e:
        logger.error(f"Error loading {path}: {str(e)}")
        return {}


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """
    Build validated settings from config.yaml plus environment overrides.

    ``ZBRIDGE_DEFAULT_KEY`` and ``ZBRIDGE_UPSTREAM_TOKEN`` take precedence over
    the file so secrets can stay out of it.
    """
    raw = load_config(path)
    proxy = dict(raw.get("proxy") or {})

    default_key = os.environ.get("ZBRIDGE_DEFAULT_KEY")
    if default_key:
        proxy["default_key"] = default_key
    upstream_token = os.environ.get("ZBRIDGE_UPSTREAM_TOKEN")
    if upstream_token:
        proxy["upstream_token"] = upstream_token

    try:
        settings = AppSettings(
            proxy=proxy,
            intent=raw.get("intent") or {},
            settings=raw.get("settings") or {},
        )
    except ValidationError as e:
        logger.error(f"Invalid configuration, using defaults: {e}")
        settings = AppSettings()

    if not settings.proxy.default_key:
        logger.warning("proxy.default_key is not set, every chat request will be rejected")
    return settings


def configure_logging(settings: ServerSettings) -> None:
    """Apply the configured level and attach the stream log file if one is set."""
    logging.getLogger().setLevel(settings.log_level.upper())

    if not settings.log_file:
        return
    log_path = Path(settings.log_file)
    for handler in stream_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path.resolve():
            return
    try:
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(str(log_path), mode="a")
    except OSError as e:
        logger.error(f"Failed to open log file {log_path}: {str(e)}")
        return
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    stream_logger.addHandler(file_handler)
    stream_logger.propagate = True
