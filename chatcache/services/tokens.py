"""Approximate token counting.

This is not a tokenizer. It estimates cost from word and punctuation
counts so that compression decisions stay internally consistent: every
caller must size text through the same estimator.
"""

import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from fractions import Fraction
from functools import lru_cache

from chatcache.models import Message, MessageRole

WORD_PATTERN = re.compile(r"\b\w+\b")
PUNCTUATION_PATTERN = re.compile(r"[.,!?;:\"'()\[\]{}]")

# Exact ratio so ceil() is not thrown off by binary float error
TOKENS_PER_WORD = Fraction(13, 10)
MESSAGE_OVERHEAD_TOKENS = 3


@dataclass
class TokenSummary:
    """Token breakdown for a list of messages."""

    total: int
    user: int
    assistant: int
    message_count: int
    average: float
    efficiency_ratio: float

    def to_dict(self) -> dict[str, float | int]:
        return {
            "total": self.total,
            "user": self.user,
            "assistant": self.assistant,
            "message_count": self.message_count,
            "average": self.average,
            "efficiency_ratio": self.efficiency_ratio,
        }


class TokenEstimator:
    """Word/punctuation based token estimator."""

    def estimate_text(self, text: str | None) -> int:
        if text is None:
            return 0
        text = text.strip()
        if not text:
            return 0
        words = len(WORD_PATTERN.findall(text))
        punctuation = len(PUNCTUATION_PATTERN.findall(text))
        return max(1, math.ceil(words * TOKENS_PER_WORD) + punctuation)

    def estimate_message(self, message: Message | None) -> int:
        """Content estimate plus a fixed per-message role overhead."""
        if message is None:
            return 0
        return self.estimate_text(message.content) + MESSAGE_OVERHEAD_TOKENS

    def estimate_messages(self, messages: Iterable[Message] | None) -> int:
        if not messages:
            return 0
        return sum(self.estimate_message(m) for m in messages)

    def estimate(self, value: str | Message | Iterable[Message] | None) -> int:
        if value is None:
            return 0
        if isinstance(value, str):
            return self.estimate_text(value)
        if isinstance(value, Message):
            return self.estimate_message(value)
        return self.estimate_messages(value)

    def analyze_session(self, messages: Sequence[Message]) -> TokenSummary:
        if not messages:
            return TokenSummary(0, 0, 0, 0, 0.0, 0.0)

        user = assistant = 0
        for message in messages:
            cost = self.estimate_message(message)
            if message.role == MessageRole.USER:
                user += cost
            elif message.role == MessageRole.ASSISTANT:
                assistant += cost
        total = self.estimate_messages(messages)
        content_chars = sum(len(m.content) for m in messages)

        return TokenSummary(
            total=total,
            user=user,
            assistant=assistant,
            message_count=len(messages),
            average=round(total / len(messages), 2),
            # characters carried per estimated token
            efficiency_ratio=round(content_chars / total, 2) if total else 0.0,
        )

    def exceeds_window(self, messages: Sequence[Message], window: int) -> bool:
        return self.estimate_messages(messages) > window

    def tokens_to_trim(self, messages: Sequence[Message], target: int) -> int:
        """How many tokens must go for the messages to fit ``target``."""
        return max(0, self.estimate_messages(messages) - target)


@lru_cache
def get_token_estimator() -> TokenEstimator:
    """Get the shared estimator instance (cached)."""
    return TokenEstimator()
