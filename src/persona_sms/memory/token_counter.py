"""Token counting for context budgets."""

from __future__ import annotations

import re

import tiktoken
from loguru import logger

_CJK = r"\u3040-\u30ff\u4e00-\u9fff\uac00-\ud7af"

# Runs of letters/digits, single CJK characters, and lone symbols (emoji, punctuation)
_PIECE_PATTERN = re.compile(rf"[{_CJK}]|[^\W_{_CJK}]+|[^\w\s]|_")

# Role and separator tokens added per chat message
MESSAGE_OVERHEAD = 4


class TokenCounter:
    """Measures text against the context budget.

    With ``model`` set, counts with that model's tiktoken encoding. With
    ``model=None``, or when the encoding cannot be loaded, it estimates from
    the text itself: a word costs one token per four characters, and every
    CJK character, emoji or punctuation mark costs one.
    """

    def __init__(self, model: str | None = "gpt-4"):
        self._encoding = None
        if model is None:
            return
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except Exception as e:
            logger.warning(f"No tiktoken encoding for {model!r} ({e}), estimating token counts")

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text))
        return estimate_tokens(text)

    def count_messages(self, messages: list[dict]) -> int:
        return sum(MESSAGE_OVERHEAD + self.count(m.get("content", "")) for m in messages)


def estimate_tokens(text: str) -> int:
    return sum((len(piece) + 3) // 4 for piece in _PIECE_PATTERN.findall(text))
