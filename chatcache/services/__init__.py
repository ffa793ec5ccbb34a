"""Services module exports."""

from chatcache.services.activity import ActivityTracker, get_activity_tracker
from chatcache.services.chat import ChatOrchestrator, ChatResult, get_chat_orchestrator
from chatcache.services.compression import ContextCompressor, get_context_compressor
from chatcache.services.llm import MockLLMService, get_llm_service
from chatcache.services.rate_limit import RateLimitService, get_rate_limit_service
from chatcache.services.response_cache import ResponseCache, get_response_cache
from chatcache.services.scripts import AtomicScripts, get_atomic_scripts
from chatcache.services.sessions import SessionService, get_session_service
from chatcache.services.sweeper import StaleSweeper
from chatcache.services.tokens import TokenEstimator, get_token_estimator

__all__ = [
    # Activity
    "ActivityTracker",
    "get_activity_tracker",
    # Atomic scripts
    "AtomicScripts",
    "get_atomic_scripts",
    # Chat
    "ChatOrchestrator",
    "ChatResult",
    "get_chat_orchestrator",
    # Compression
    "ContextCompressor",
    "get_context_compressor",
    # LLM
    "MockLLMService",
    "get_llm_service",
    # Rate Limiting
    "RateLimitService",
    "get_rate_limit_service",
    # Response cache
    "ResponseCache",
    "get_response_cache",
    # Sessions
    "SessionService",
    "get_session_service",
    "StaleSweeper",
    # Tokens
    "TokenEstimator",
    "get_token_estimator",
]
