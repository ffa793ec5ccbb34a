"""Domain records shared by the services.

Sessions are stored as flat string hashes so the atomic scripts can
increment their counters in place; messages and cache entries are stored
as JSON strings.
"""

import json
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from chatcache.core.exceptions import DataCorruptionError, ValidationError

MAX_CONTENT_LENGTH = 10_000
MAX_USER_ID_LENGTH = 100
MAX_TITLE_LENGTH = 255
DEFAULT_SESSION_TITLE = "New Chat Session"

_SCRIPT_TAG = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# ========== Validation ==========

def validate_session_id(session_id: str | None) -> str:
    if session_id is None or not str(session_id).strip():
        raise ValidationError("Session ID cannot be null or empty")
    return str(session_id).strip()


def validate_user_id(user_id: str | None) -> str:
    if user_id is None or not str(user_id).strip():
        raise ValidationError("User ID cannot be null or empty")
    user_id = str(user_id).strip()
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError(
            f"User ID cannot exceed {MAX_USER_ID_LENGTH} characters",
            {"length": len(user_id)},
        )
    return user_id


def validate_title(title: str | None) -> str:
    title = (title or DEFAULT_SESSION_TITLE).strip() or DEFAULT_SESSION_TITLE
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Session title cannot exceed {MAX_TITLE_LENGTH} characters")
    return title


def validate_content(content: str | None) -> str:
    if content is None or not content.strip():
        raise ValidationError("Message content cannot be null or empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            "Message content cannot exceed 10,000 characters",
            {"length": len(content)},
        )
    return content


def sanitize_content(content: str) -> str:
    """Strip script blocks and HTML tags from user supplied text."""
    return _HTML_TAG.sub("", _SCRIPT_TAG.sub("", content.strip()))


def clean_content(content: str | None) -> str:
    """Validate, sanitize, then reject text that was nothing but markup."""
    cleaned = sanitize_content(validate_content(content))
    if not cleaned.strip():
        raise ValidationError("Message content is empty after sanitization")
    return cleaned


# ========== Records ==========

@dataclass
class Message:
    """A single chat message, owned by its session."""

    session_id: str
    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    created_at: float = field(default_factory=time.time)
    token_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def attach_metadata(self, **values: Any) -> None:
        """Late metadata attachment; the only mutation allowed after creation."""
        self.metadata.update(values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        try:
            return cls(
                id=str(data["id"]),
                session_id=str(data["session_id"]),
                role=MessageRole(data["role"]),
                content=str(data["content"]),
                created_at=float(data.get("created_at") or 0.0),
                token_count=(
                    int(data["token_count"]) if data.get("token_count") is not None else None
                ),
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataCorruptionError("message", str(e)) from e

    @classmethod
    def from_json(cls, raw: str) -> "Message":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise DataCorruptionError("message", str(e)) from e
        if not isinstance(data, dict):
            raise DataCorruptionError("message", "expected an object")
        return cls.from_dict(data)


@dataclass
class Session:
    """A chat session and its aggregate counters."""

    user_id: str
    title: str = DEFAULT_SESSION_TITLE
    id: str = field(default_factory=lambda: f"session_{uuid.uuid4().hex}")
    active: bool = True
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    message_count: int = 0
    token_count: int = 0
    settings: dict[str, Any] = field(default_factory=dict)

    def to_hash(self) -> dict[str, str]:
        """Flatten to string fields for HSET."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "active": "1" if self.active else "0",
            "created_at": repr(self.created_at),
            "last_activity": repr(self.last_activity),
            "message_count": str(self.message_count),
            "token_count": str(self.token_count),
            "settings": json.dumps(self.settings),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Session":
        try:
            return cls(
                id=data["id"],
                user_id=data["user_id"],
                title=data.get("title") or DEFAULT_SESSION_TITLE,
                active=data.get("active", "1") == "1",
                created_at=float(data.get("created_at") or 0.0),
                last_activity=float(data.get("last_activity") or 0.0),
                message_count=int(data.get("message_count") or 0),
                token_count=int(data.get("token_count") or 0),
                settings=json.loads(data.get("settings") or "{}"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataCorruptionError("session", str(e)) from e


@dataclass
class CacheEntry:
    """A cached reply addressed by the hash of its logical inputs."""

    key: str
    response: str
    session_id: str
    model: str
    temperature: float
    cached_at: float = field(default_factory=time.time)
    hit_count: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        try:
            data = json.loads(raw)
            return cls(
                key=str(data["key"]),
                response=str(data["response"]),
                session_id=str(data["session_id"]),
                model=str(data["model"]),
                temperature=float(data["temperature"]),
                cached_at=float(data.get("cached_at") or 0.0),
                hit_count=int(data.get("hit_count") or 0),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise DataCorruptionError("cache_entry", str(e)) from e
