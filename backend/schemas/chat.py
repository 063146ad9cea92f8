"""
Chat records as stored under users/<userId>/chats/<sessionId>/<messageId>.

Messages are written by the external agent, never by this client. Each stored
node is decoded on its own: a strict pass first, then a permissive field by
field pass with defaults. Nodes that are not objects at all are skipped.
"""

import logging
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class ChatStatus(str, Enum):
    NO_SESSION = "no_session"
    CREATING = "creating"
    ACTIVE = "active"
    AWAITING_AGENT_RESPONSE = "awaiting_agent_response"
    ERROR = "error"


def now_millis() -> int:
    return int(time.time() * 1000)


class StoredMessage(BaseModel):
    """Exact store shape. Used for the strict decode pass and for encoding."""

    model_config = ConfigDict(strict=True, extra="ignore")

    llm_response: str = ""
    query_user: str = ""
    timestamps: int
    llm_thinking: str = ""


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _millis(value: Any) -> int:
    if isinstance(value, bool):
        return now_millis()
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            pass
    return now_millis()


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_query: str = ""
    agent_response: str = ""
    agent_thinking: str = ""
    timestamp_millis: int = 0

    @property
    def is_thinking_only(self) -> bool:
        return bool(self.agent_thinking) and not self.agent_response

    @property
    def is_resolved(self) -> bool:
        return bool(self.agent_response)

    def to_store(self) -> dict:
        return StoredMessage(
            llm_response=self.agent_response,
            query_user=self.user_query,
            timestamps=self.timestamp_millis,
            llm_thinking=self.agent_thinking,
        ).model_dump()

    @classmethod
    def from_store(cls, message_id: str, value: Any) -> "ChatMessage | None":
        """Decode one stored node. Returns None (and logs) when it cannot be used."""
        try:
            stored = StoredMessage.model_validate(value)
            return cls(
                id=message_id,
                user_query=stored.query_user,
                agent_response=stored.llm_response,
                agent_thinking=stored.llm_thinking,
                timestamp_millis=stored.timestamps,
            )
        except ValidationError:
            pass

        if not isinstance(value, dict):
            logger.warning(
                "Skipping chat message %s: expected an object, got %s",
                message_id, type(value).__name__,
            )
            return None

        logger.warning("Chat message %s did not match the store shape; using field fallback", message_id)
        return cls(
            id=message_id,
            user_query=_text(value.get("query_user")),
            agent_response=_text(value.get("llm_response")),
            agent_thinking=_text(value.get("llm_thinking")),
            timestamp_millis=_millis(value.get("timestamps")),
        )


def decode_messages(raw: Any) -> dict[str, ChatMessage]:
    """Decode a session node ({messageId: node}) into messages keyed by id."""
    if not isinstance(raw, dict):
        if raw not in (None, "", True):
            logger.warning("Chat session node is %s, not an object; treating as empty", type(raw).__name__)
        return {}

    messages: dict[str, ChatMessage] = {}
    for message_id, value in raw.items():
        message = ChatMessage.from_store(str(message_id), value)
        if message is not None:
            messages[message.id] = message
    return messages


class ChatSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    session_name: str = ""
    messages: dict[str, ChatMessage] = Field(default_factory=dict)

    def ordered(self) -> list[ChatMessage]:
        return sorted(self.messages.values(), key=lambda m: (m.timestamp_millis, m.id))

    @property
    def last_message(self) -> ChatMessage | None:
        if not self.messages:
            return None
        return max(self.messages.values(), key=lambda m: m.timestamp_millis)

    @property
    def last_message_time(self) -> int:
        last = self.last_message
        return last.timestamp_millis if last else 0

    @property
    def display_name(self) -> str:
        if self.session_name.strip():
            return self.session_name
        parts = self.session_id.split("_")
        if len(parts) >= 3:
            return f"Chat {parts[-1][:8]}"
        return "Chat Session"


class UserChats(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    chats: dict[str, ChatSession] = Field(default_factory=dict)
    financial_summary: str = ""

    def sessions(self) -> list[ChatSession]:
        """Sessions, most recently active first."""
        return sorted(self.chats.values(), key=lambda s: s.last_message_time, reverse=True)

    @classmethod
    def from_store(cls, user_id: str, raw: Any) -> "UserChats":
        if not isinstance(raw, dict):
            return cls(user_id=user_id)

        chats_raw = raw.get("chats")
        chats: dict[str, ChatSession] = {}
        if isinstance(chats_raw, dict):
            for session_id, node in chats_raw.items():
                chats[str(session_id)] = ChatSession(
                    session_id=str(session_id),
                    messages=decode_messages(node),
                )
        return cls(
            user_id=user_id,
            chats=chats,
            financial_summary=_text(raw.get("financial_summary")),
        )
