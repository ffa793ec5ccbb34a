"""Token-budget-aware conversation compression.

When a session's messages cost more than the context budget, the oldest
ones are replaced by a short textual summary. The newest messages are
always kept verbatim so recent context survives.
"""

import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import lru_cache

from chatcache.core.logging import get_logger
from chatcache.models import Message, MessageRole
from chatcache.services.tokens import TokenEstimator, get_token_estimator

logger = get_logger(__name__)

DEFAULT_CONTEXT_WINDOW = 4000
COMPRESSION_TARGET_TOKENS = 2000
SUMMARY_RESERVE_TOKENS = 500
MIN_RECENT_MESSAGES = 10

MAX_TOPICS = 3
MAX_KEY_EXCHANGES = 5
EXCHANGE_PREVIEW_CHARS = 50
LONG_MESSAGE_CHARS = 100

IMPORTANT_KEYWORDS = ("how", "what", "why", "important", "problem", "error", "issue")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "been", "be", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might", "can",
        "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
        "my", "your", "his", "its", "our", "their", "this", "that", "these", "those",
    }
)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


@dataclass
class CompressionResult:
    """Outcome of a compression pass."""

    kept_messages: list[Message] = field(default_factory=list)
    summary: str = ""
    was_compressed: bool = False
    final_token_count: int = 0
    tokens_removed: int = 0

    @property
    def compression_ratio(self) -> float:
        if self.tokens_removed <= 0:
            return 0.0
        return self.tokens_removed / (self.final_token_count + self.tokens_removed)


@dataclass
class ContextAnalysis:
    total_tokens: int
    user_tokens: int
    assistant_tokens: int
    message_count: int
    average_tokens: float
    needs_compression: bool
    potential_savings: int
    recommendation: str


def _is_important(content: str) -> bool:
    lower = content.lower()
    return (
        "?" in content
        or any(keyword in lower for keyword in IMPORTANT_KEYWORDS)
        or len(content) > LONG_MESSAGE_CHARS
    )


def _truncate(content: str, limit: int = EXCHANGE_PREVIEW_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def _topic_words(content: str) -> list[str]:
    words = _NON_ALNUM.sub("", content.lower()).split()
    return [w for w in words if len(w) > 3 and w not in STOP_WORDS]


class ContextCompressor:
    """Compress message lists to fit a token budget."""

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self.estimator = estimator or get_token_estimator()

    def compress(
        self,
        messages: Sequence[Message] | None,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
    ) -> CompressionResult:
        if not messages:
            return CompressionResult()

        messages = list(messages)
        total = self.estimator.estimate_messages(messages)
        if total <= context_window:
            return CompressionResult(
                kept_messages=messages,
                was_compressed=False,
                final_token_count=total,
            )

        target = min(COMPRESSION_TARGET_TOKENS, context_window - SUMMARY_RESERVE_TOKENS)
        split = self._split_index(messages, target)
        kept, dropped = messages[split:], messages[:split]
        summary = self.summarize(dropped)

        final = self.estimator.estimate_messages(kept) + self.estimator.estimate_text(summary)
        result = CompressionResult(
            kept_messages=kept,
            summary=summary,
            was_compressed=True,
            final_token_count=final,
            tokens_removed=total - final,
        )
        logger.debug(
            "Context compressed",
            original_tokens=total,
            final_tokens=final,
            kept=len(kept),
            dropped=len(dropped),
        )
        return result

    def _split_index(self, messages: list[Message], target: int) -> int:
        """Index of the oldest kept message, walking newest to oldest."""
        if len(messages) <= MIN_RECENT_MESSAGES:
            return 0

        accumulated = 0
        kept = 0
        index = len(messages)
        while index > 0:
            cost = self.estimator.estimate_message(messages[index - 1])
            if kept >= MIN_RECENT_MESSAGES and accumulated + cost > target:
                break
            accumulated += cost
            kept += 1
            index -= 1
        return index

    def summarize(self, dropped: Sequence[Message]) -> str:
        if not dropped:
            return ""

        topics: Counter[str] = Counter()
        exchanges: list[str] = []
        user_count = assistant_count = 0

        for message in dropped:
            if message.role == MessageRole.USER:
                user_count += 1
                topics.update(_topic_words(message.content))
                label = "User"
            elif message.role == MessageRole.ASSISTANT:
                assistant_count += 1
                label = "Assistant"
            else:
                continue
            if _is_important(message.content):
                exchanges.append(f"{label}: {_truncate(message.content)}")

        lines = [
            f"Previous conversation summary ({len(dropped)} messages):",
            f"- {user_count} user messages, {assistant_count} assistant messages",
        ]
        if topics:
            top = ", ".join(word for word, _ in topics.most_common(MAX_TOPICS))
            lines.append(f"- Main topics: {top}")
        if exchanges:
            lines.append("- Key exchanges:")
            lines.extend(f"  {e}" for e in exchanges[:MAX_KEY_EXCHANGES])
        return "\n".join(lines) + "\n"

    def analyze(self, messages: Sequence[Message] | None) -> ContextAnalysis:
        summary = self.estimator.analyze_session(list(messages or []))
        needs_compression = summary.total > DEFAULT_CONTEXT_WINDOW
        savings = summary.total - COMPRESSION_TARGET_TOKENS if needs_compression else 0

        if summary.total < 1000:
            recommendation = "Context is small, no optimization needed."
        elif summary.total < 2000:
            recommendation = "Context size is moderate, monitoring recommended."
        elif needs_compression:
            recommendation = "Context size is large, compression recommended to improve performance."
        else:
            recommendation = "Context size is approaching limits, consider compression soon."

        return ContextAnalysis(
            total_tokens=summary.total,
            user_tokens=summary.user,
            assistant_tokens=summary.assistant,
            message_count=summary.message_count,
            average_tokens=summary.average,
            needs_compression=needs_compression,
            potential_savings=savings,
            recommendation=recommendation,
        )

    def build_context(
        self,
        messages: Sequence[Message],
        context_window: int = DEFAULT_CONTEXT_WINDOW,
    ) -> list[dict[str, str]]:
        """Role/content dicts for a downstream model call."""
        result = self.compress(messages, context_window)
        context = [{"role": m.role.value, "content": m.content} for m in result.kept_messages]
        if result.summary:
            context.insert(0, {"role": MessageRole.SYSTEM.value, "content": result.summary})
        return context


@lru_cache
def get_context_compressor() -> ContextCompressor:
    """Get the shared compressor instance (cached)."""
    return ContextCompressor()
