"""Rewriting of upstream "thinking" markup."""

import re
from typing import Optional, Tuple

THINK_TAGS_MODES = ("strip", "think", "keep")

SUMMARY_PATTERN = re.compile(r"<summary>.*?</summary>", re.DOTALL)
DETAILS_OPEN_PATTERN = re.compile(r"<details[^>]*>")
DETAILS_CLOSE = "</details>"
STRAY_MARKERS = ("</thinking>", "<Full>", "</Full>")
QUOTE_PREFIX = "> "
QUOTED_LINE_PATTERN = re.compile(r"\n(?:> )+")


class ContentTagTransformer:
    """
    Clean up thinking-phase fragments from the upstream.

    ``mode`` controls the ``<details>`` wrapper the upstream puts around its
    reasoning:

    - ``think``: rewrite it to ``<think>``/``</think>``
    - ``strip``: drop the wrapper tags and keep their text
    - ``keep``: leave the markup untouched

    Summaries, stray markers and markdown quote prefixes are removed in every
    mode. Fragments from any other phase pass through unchanged.
    """

    def __init__(self, mode: str = "strip"):
        if mode not in THINK_TAGS_MODES:
            raise ValueError(f"think_tags_mode must be one of {THINK_TAGS_MODES}, got {mode!r}")
        self.mode = mode

    def transform(self, fragment: str, phase: str) -> str:
        if phase != "thinking":
            return fragment

        # Every rewrite shortens the text, so this terminates at a fixed point.
        text = fragment
        while True:
            rewritten = self._rewrite(text)
            if rewritten == text:
                return rewritten
            text = rewritten

    def classify(self, delta: str, phase: str) -> Tuple[Optional[str], Optional[str]]:
        """Split a delta into ``(content, reasoning_content)``; empty sides are None."""
        if phase == "thinking":
            reasoning = self.transform(delta, phase)
            return None, reasoning or None
        return delta or None, None

    def _rewrite(self, text: str) -> str:
        text = SUMMARY_PATTERN.sub("", text)
        for marker in STRAY_MARKERS:
            text = text.replace(marker, "")
        text = text.strip()

        if self.mode == "think":
            text = DETAILS_OPEN_PATTERN.sub("<think>", text)
            text = text.replace(DETAILS_CLOSE, "</think>")
        elif self.mode == "strip":
            text = DETAILS_OPEN_PATTERN.sub("", text)
            text = text.replace(DETAILS_CLOSE, "")

        text = text.lstrip()
        while text.startswith(QUOTE_PREFIX):
            text = text[len(QUOTE_PREFIX):].lstrip()
        text = QUOTED_LINE_PATTERN.sub("\n", text)

        return text.strip()
