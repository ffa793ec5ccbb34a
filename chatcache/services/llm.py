"""Pattern-matched stand-in for a language model.

Replies are chosen from canned templates by matching the input against a
few intent patterns, then lightly adjusted for conversation length and
temperature. Output quality is not a goal; determinism under a seeded
``random.Random`` is.
"""

import random
import re
from collections.abc import Sequence
from functools import lru_cache

from chatcache.core.logging import get_logger
from chatcache.models import Message, MessageRole

logger = get_logger(__name__)

MODEL_ID = "mock-llm-v1"

# Checked in order; the first match wins.
INTENT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("greeting", re.compile(r"\b(hello|hi|hey|greetings|good morning|good afternoon|good evening)\b", re.I)),
    ("question", re.compile(r"\b(what|how|why|when|where|who|which|can you|could you)\b|\?", re.I)),
    ("goodbye", re.compile(r"\b(goodbye|bye|farewell|see you|talk soon|until next time)\b", re.I)),
    ("thanks", re.compile(r"\b(thank|thanks|appreciate|grateful)\b", re.I)),
    ("help", re.compile(r"\b(help|assist|support|guide)\b", re.I)),
)

RESPONSES: dict[str, tuple[str, ...]] = {
    "greeting": (
        "Hello! How can I help you today?",
        "Hi there! What can I do for you?",
        "Greetings! I'm here to assist you.",
        "Hello! It's great to chat with you.",
    ),
    "question": (
        "That's an interesting question. Let me think about that...",
        "Great question! Here's what I think:",
        "I'd be happy to help you with that.",
        "I can definitely help you understand that better.",
    ),
    "goodbye": (
        "Goodbye! Have a great day!",
        "See you later! Take care!",
        "Until next time! Have a wonderful day!",
    ),
    "thanks": (
        "You're very welcome!",
        "Happy to help!",
        "Glad I could assist you!",
    ),
    "help": (
        "I'm here to help! What do you need assistance with?",
        "Of course! How can I assist you?",
        "I'm ready to assist! What would you like to know?",
    ),
    "default": (
        "I understand. Could you tell me more about that?",
        "That's helpful to know. Please continue.",
        "I see. How can I help you with that?",
        "Thank you for sharing that. What would you like to explore next?",
    ),
}

TOPICS = (
    "technology", "science", "programming", "data", "artificial intelligence",
    "web development", "databases", "cloud computing", "security",
)


class MockLLMService:
    """Canned-reply generator."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def classify(self, text: str) -> str:
        for intent, pattern in INTENT_PATTERNS:
            if pattern.search(text):
                return intent
        return "default"

    def current_topic(self, context: Sequence[Message]) -> str | None:
        counts: dict[str, int] = {}
        for message in context:
            lower = message.content.lower()
            for topic in TOPICS:
                if topic in lower:
                    counts[topic] = counts.get(topic, 0) + 1
        if not counts:
            return None
        return max(counts, key=lambda t: counts[t])

    def generate(
        self,
        user_input: str,
        context: Sequence[Message] = (),
        temperature: float | None = None,
    ) -> str:
        intent = self.classify(user_input)
        reply = self.rng.choice(RESPONSES[intent])

        topic = self.current_topic(context)
        if topic and len(context) > 2:
            reply += f" Building on our earlier discussion about {topic}..."

        previous = next(
            (m.content for m in reversed(context) if m.role == MessageRole.USER and m.content != user_input),
            None,
        )
        if previous and self.rng.random() < 0.4:
            preview = previous if len(previous) <= 50 else previous[:47] + "..."
            reply += f" I remember you asked about {preview} earlier."

        if temperature is not None:
            if temperature > 0.8:
                reply = reply.replace("I am", "I'm").replace("Hello", "Hey")
            elif temperature < 0.3:
                reply = reply.replace("I'm", "I am").replace("Hi there", "Good day")

        if len(context) > 20:
            reply = "As we've been chatting, " + reply[0].lower() + reply[1:]
        elif len(context) > 10:
            reply = "Continuing our conversation, " + reply[0].lower() + reply[1:]
        elif len(context) < 3:
            reply = "Welcome! " + reply

        logger.debug("Mock reply generated", intent=intent, context_size=len(context))
        return reply


@lru_cache
def get_llm_service() -> MockLLMService:
    """Get the mock LLM service instance (cached)."""
    return MockLLMService()
