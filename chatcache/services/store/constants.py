"""Store key layout and fixed TTL constants.

Policy TTLs (cache lifetime, liveness window, session lifetime) live in
Settings; the values here are structural and not expected to change.
"""

# Fixed TTLs (in seconds)
TTL_USER_SESSIONS = 30 * 86400  # 30 days - per-user session membership set

# Key prefixes - using Redis naming conventions
KEY_PREFIX_SESSION = "session"  # session:{id} (hash)
KEY_PREFIX_MESSAGES = "messages"  # messages:{session_id} (list of message ids)
KEY_PREFIX_MESSAGE = "message"  # message:{id} (JSON string)
KEY_PREFIX_RESPONSE = "cache:response"  # cache:response:{sha256} (JSON string)
KEY_PREFIX_ACTIVITY_MARKER = "activity:session"  # activity:session:{id} -> last ping
KEY_PREFIX_USER_SESSIONS = "user:sessions"  # user:sessions:{user_id} (set)
KEY_PREFIX_RATE = "rate_limit"  # rate_limit:{user|session}:{id} (sorted set)

# Singleton keys
KEY_CACHE_STATS = "cache:stats"  # hash of global hit/miss/cached counters
KEY_ACTIVITY_SESSIONS = "activity:sessions"  # sorted set: session id -> last activity
KEY_ACTIVITY_USERS = "activity:users"  # sorted set: user id -> last activity
KEY_ACTIVITY_OWNERS = "activity:owners"  # hash: session id -> user id

# Counter fields in KEY_CACHE_STATS
STAT_HITS = "cache_hits"
STAT_MISSES = "cache_misses"
STAT_CACHED = "responses_cached"


def make_key(prefix: str, *parts: str | int) -> str:
    """Create a store key from prefix and parts."""
    return f"{prefix}:{':'.join(str(p) for p in parts)}"
