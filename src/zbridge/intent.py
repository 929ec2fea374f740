"""Heuristic intent classification for the smart-dispatch model aliases."""

import hashlib
import logging
import re
import time
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .catalog import SEARCH_MCP_SERVER, features_for_model, requires_smart_dispatch
from .config import IntentSettings
from .models import ChatMessage, FeatureFlags

logger = logging.getLogger(__name__)

TIME_SENSITIVE_PATTERN = re.compile(
    r"\b(今天|现在|最新|最近|当前|实时|today|now|latest|recent|current|real-time)\b",
    re.IGNORECASE,
)
EXPLICIT_SEARCH_PATTERN = re.compile(
    r"\b(搜索.*?信息|查找.*?资料|search\s+for|find\s+information|最新.*?消息|最近.*?发展)\b",
    re.IGNORECASE,
)
COMPLEX_ANALYSIS_PATTERN = re.compile(
    r"\b(分析.*?影响|解释.*?原理|比较.*?区别|评估.*?效果|深入.*?研究|详细.*?说明|analyze.*?impact|explain.*?principle)\b",
    re.IGNORECASE,
)

TIME_SENSITIVE_BONUS = 2.0
EXPLICIT_SEARCH_BONUS = 3.0
COMPLEX_ANALYSIS_BONUS = 3.0
MORE_INFO_CONTEXT_BONUS = 1.0
LONG_TURN_CONTEXT_BONUS = 0.5
LONG_TURN_CHARS = 200
LONG_MESSAGE_BONUS = 0.5
LONG_MESSAGE_CHARS = 100

SEARCH_KEYWORDS = (
    "搜索", "查找", "查询", "search", "find", "lookup",
    "最新", "最近", "今天", "现在", "实时", "latest", "recent", "today", "now", "real-time",
    "新闻", "消息", "动态", "news", "update", "information",
    "当前", "目前", "现状", "current", "present", "status",
    "什么时候", "何时", "when", "时间", "time",
    "天气", "股价", "价格", "weather", "stock", "price",
    "发生了什么", "what happened", "最新发展", "recent development",
)

THINKING_KEYWORDS = (
    "分析", "解释", "说明", "analyze", "explain", "clarify",
    "为什么", "怎么", "如何", "why", "how", "what",
    "原理", "机制", "原因", "principle", "mechanism", "reason",
    "比较", "对比", "区别", "compare", "contrast", "difference",
    "优缺点", "利弊", "pros and cons", "advantages", "disadvantages",
    "思考", "推理", "逻辑", "think", "reasoning", "logic",
    "深入", "详细", "仔细", "detailed", "thorough", "careful",
    "复杂", "困难", "challenging", "complex", "difficult",
)


class UserIntent(str, Enum):
    BASIC = "basic"
    THINKING = "thinking"
    SEARCH = "search"
    THINKING_WITH_SEARCH = "thinking_with_search"


class IntentAnalysis(BaseModel):
    """Scores and decision for one message."""
    intent: UserIntent
    search_score: float = 0.0
    thinking_score: float = 0.0
    forced: bool = False

    @property
    def features(self) -> FeatureFlags:
        if self.intent in (UserIntent.SEARCH, UserIntent.THINKING_WITH_SEARCH):
            return FeatureFlags.with_search(SEARCH_MCP_SERVER)
        if self.intent is UserIntent.THINKING:
            return FeatureFlags.with_thinking()
        return FeatureFlags.basic()


def _truncate(text: str, limit: int = 100) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _compile_patterns(patterns: Sequence[str], kind: str) -> List[re.Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid %s pattern %r: %s", kind, pattern, e)
    return compiled


class IntentClassifier:
    """
    Decide which upstream features (thinking, web search) a conversation needs.

    Only the smart-dispatch aliases are analysed; every other alias gets the
    flags bound to it. Scoring is deterministic for a given configuration and
    input. Text-derived base scores are memoised for
    ``settings.cache_timeout_minutes``, keyed by a hash of the text.
    """

    def __init__(self, settings: IntentSettings, clock=time.monotonic):
        self.settings = settings
        self._clock = clock
        self._ttl = settings.cache_timeout_minutes * 60.0

        disabled = {keyword.lower() for keyword in settings.disabled_keywords}
        self._search_keywords = [k for k in SEARCH_KEYWORDS if k.lower() not in disabled]
        self._thinking_keywords = [k for k in THINKING_KEYWORDS if k.lower() not in disabled]
        self._custom_search = {k.lower(): w for k, w in settings.custom_search_keywords.items()}
        self._custom_thinking = {k.lower(): w for k, w in settings.custom_thinking_keywords.items()}
        self._force_search = _compile_patterns(settings.force_search_patterns, "force-search")
        self._force_thinking = _compile_patterns(settings.force_thinking_patterns, "force-thinking")
        self._more_info_phrases = [p.lower() for p in settings.more_info_phrases]

        self._score_cache: Dict[str, Tuple[float, Optional[UserIntent], float, float]] = {}

    def classify(self, messages: Sequence[ChatMessage], model_alias: str) -> FeatureFlags:
        if not messages:
            return FeatureFlags.basic()

        if not requires_smart_dispatch(model_alias):
            return features_for_model(model_alias)

        if not self.settings.enable_smart_dispatch:
            return FeatureFlags.basic()

        last_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if last_user is None:
            return FeatureFlags.basic()

        return self.analyze(last_user.content, messages).features

    def analyze(self, text: str, history: Sequence[ChatMessage] = ()) -> IntentAnalysis:
        forced, search_score, thinking_score = self._base_scores(text)
        if forced is not None:
            logger.info("Forced %s intent [Content: %s]", forced.value, _truncate(text))
            return IntentAnalysis(intent=forced, forced=True)

        if len(history) > 1:
            search_bonus, thinking_bonus = self._context_bonus(history)
            search_score += search_bonus
            thinking_score += thinking_bonus

        if len(text) > LONG_MESSAGE_CHARS:
            thinking_score += LONG_MESSAGE_BONUS

        requires_search = search_score >= self.settings.search_threshold
        requires_thinking = thinking_score >= self.settings.thinking_threshold

        if (
            requires_search
            and requires_thinking
            and search_score + thinking_score >= self.settings.combined_threshold
        ):
            intent = UserIntent.THINKING_WITH_SEARCH
        elif requires_search:
            intent = UserIntent.SEARCH
        elif requires_thinking:
            intent = UserIntent.THINKING
        else:
            intent = UserIntent.BASIC

        log = logger.debug if intent is UserIntent.BASIC else logger.info
        log(
            "Intent %s [Content: %s] [SearchScore: %.1f] [ThinkingScore: %.1f]",
            intent.value, _truncate(text), search_score, thinking_score,
        )
        return IntentAnalysis(
            intent=intent,
            search_score=search_score,
            thinking_score=thinking_score,
        )

    def _base_scores(self, text: str) -> Tuple[Optional[UserIntent], float, float]:
        key = hashlib.sha256(text.encode("utf-8")).hexdigest()
        now = self._clock()
        cached = self._score_cache.get(key)
        if cached is not None and cached[0] > now:
            return cached[1], cached[2], cached[3]

        forced = self._forced_intent(text)
        if forced is not None:
            search_score = thinking_score = 0.0
        else:
            lowered = text.lower()
            search_score = self._search_score(lowered)
            thinking_score = self._thinking_score(lowered)

        self._evict_expired(now)
        self._score_cache[key] = (now + self._ttl, forced, search_score, thinking_score)
        return forced, search_score, thinking_score

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, entry in self._score_cache.items() if entry[0] <= now]
        for key in expired:
            del self._score_cache[key]

    def _forced_intent(self, text: str) -> Optional[UserIntent]:
        if any(pattern.search(text) for pattern in self._force_search):
            return UserIntent.SEARCH
        if any(pattern.search(text) for pattern in self._force_thinking):
            return UserIntent.THINKING
        return None

    def _search_score(self, lowered: str) -> float:
        score = float(sum(1 for keyword in self._search_keywords if keyword.lower() in lowered))
        score += sum(weight for keyword, weight in self._custom_search.items() if keyword in lowered)
        if TIME_SENSITIVE_PATTERN.search(lowered):
            score += TIME_SENSITIVE_BONUS
        if EXPLICIT_SEARCH_PATTERN.search(lowered):
            score += EXPLICIT_SEARCH_BONUS
        return score

    def _thinking_score(self, lowered: str) -> float:
        score = float(sum(1 for keyword in self._thinking_keywords if keyword.lower() in lowered))
        score += sum(weight for keyword, weight in self._custom_thinking.items() if keyword in lowered)
        if COMPLEX_ANALYSIS_PATTERN.search(lowered):
            score += COMPLEX_ANALYSIS_BONUS
        return score

    def _context_bonus(self, history: Sequence[ChatMessage]) -> Tuple[float, float]:
        search_bonus = 0.0
        thinking_bonus = 0.0
        for message in list(history)[-self.settings.context_depth:]:
            if message.role != "assistant" or not message.content:
                continue
            lowered = message.content.lower()
            if any(phrase in lowered for phrase in self._more_info_phrases):
                search_bonus += MORE_INFO_CONTEXT_BONUS
            if len(message.content) > LONG_TURN_CHARS:
                thinking_bonus += LONG_TURN_CONTEXT_BONUS
        return search_bonus, thinking_bonus
