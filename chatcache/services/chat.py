"""Chat Orchestrator Service.

Coordinates one chat turn between:
- Rate limiting (per user, then per session)
- Session service (session lookup/creation, message persistence)
- Response cache (content-addressed reply lookup and store)
- Mock LLM (reply generation on cache miss)
- Context compressor (fitting history to the token budget)

If the store becomes unreachable mid-turn, the turn is replayed against
the in-memory session backend so the user's message is not lost.
"""

from dataclasses import dataclass, field
from functools import lru_cache

from chatcache.core.config import Settings, get_settings
from chatcache.core.exceptions import RateLimitError, StoreUnavailableError
from chatcache.core.logging import get_logger, turn_context
from chatcache.models import Message, MessageRole, clean_content, validate_user_id
from chatcache.services.compression import CompressionResult, ContextCompressor, get_context_compressor
from chatcache.services.llm import MockLLMService, get_llm_service
from chatcache.services.rate_limit import RateLimitService, get_rate_limit_service
from chatcache.services.response_cache import ResponseCache, get_response_cache
from chatcache.services.scripts import RateLimitDecision
from chatcache.services.sessions import LocalSessionService, SessionService, get_session_service

logger = get_logger(__name__)


@dataclass
class ChatResult:
    """Outcome of one chat turn."""

    session_id: str
    reply: str
    cached: bool
    user_message: Message
    assistant_message: Message
    context: CompressionResult = field(default_factory=CompressionResult)
    degraded: bool = False


class ChatOrchestrator:
    """Orchestrates a chat turn between services."""

    def __init__(
        self,
        sessions: SessionService | None = None,
        cache: ResponseCache | None = None,
        rate_limiter: RateLimitService | None = None,
        llm: MockLLMService | None = None,
        compressor: ContextCompressor | None = None,
        fallback_sessions: SessionService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sessions = sessions or get_session_service()
        self.cache = cache or get_response_cache()
        self.rate_limiter = rate_limiter or get_rate_limit_service()
        self.llm = llm or get_llm_service()
        self.compressor = compressor or get_context_compressor()
        self._fallback_sessions = fallback_sessions

    @property
    def fallback_sessions(self) -> SessionService:
        if self._fallback_sessions is None:
            self._fallback_sessions = LocalSessionService(settings=self.settings)
        return self._fallback_sessions

    async def process_message(
        self,
        user_id: str,
        message: str,
        session_id: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> ChatResult:
        """Run one turn: limit, persist, reply (cached or generated), compress.

        Raises:
            ValidationError: bad user id or message content
            RateLimitError: the user or session exceeded its window
            NotFoundError: ``session_id`` was given but does not exist
        """
        user_id = validate_user_id(user_id)
        message = clean_content(message)
        model = model or self.settings.default_model

        with turn_context(user_id=user_id):
            self._enforce(await self.rate_limiter.check_user_limit(user_id))

            try:
                return await self._turn(
                    self.sessions, user_id, message, session_id, model, temperature
                )
            except StoreUnavailableError as e:
                logger.warning("Session store unavailable, using local fallback", error=e.message)
                result = await self._turn(
                    self.fallback_sessions, user_id, message, None, model, temperature
                )
                result.degraded = True
                return result

    def _enforce(self, decision: RateLimitDecision, **context: str) -> None:
        if not decision.allowed:
            logger.info("Rate limit exceeded", retry_after=decision.retry_after, **context)
            raise RateLimitError(retry_after=decision.retry_after)

    async def _turn(
        self,
        sessions: SessionService,
        user_id: str,
        text: str,
        session_id: str | None,
        model: str,
        temperature: float | None,
    ) -> ChatResult:
        if session_id:
            session = await sessions.require_session(session_id)
            self._enforce(
                await self.rate_limiter.check_session_limit(session.id), session_id=session.id
            )
        else:
            session = await sessions.create_session(user_id)

        user_message = await sessions.append_message(session.id, MessageRole.USER, text)

        entry = await self.cache.lookup(user_message.content, model, temperature)
        if entry is not None:
            reply, cached = entry.response, True
        else:
            history = await sessions.recent_messages(session.id)
            reply = self.llm.generate(user_message.content, history[:-1], temperature)
            await self.cache.store(session.id, user_message.content, reply, model, temperature)
            cached = False

        assistant_message = await sessions.append_message(
            session.id,
            MessageRole.ASSISTANT,
            reply,
            metadata={"model": model, "cached": cached},
        )

        history = await sessions.get_messages(session.id)
        context = self.compressor.compress(history, self.settings.context_window_tokens)

        logger.info(
            "Chat turn completed",
            session_id=session.id,
            cached=cached,
            compressed=context.was_compressed,
        )
        return ChatResult(
            session_id=session.id,
            reply=reply,
            cached=cached,
            user_message=user_message,
            assistant_message=assistant_message,
            context=context,
        )


@lru_cache
def get_chat_orchestrator() -> ChatOrchestrator:
    """Get or create the chat orchestrator instance (cached)."""
    return ChatOrchestrator()
