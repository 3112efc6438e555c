"""Conversation types shared by the prompt codec, chat session and API.

Conversation storage lives outside this backend; it is reached through the
history provider and reply sink interfaces below.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    """Speaker of a conversation turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ConversationTurn:
    """A single message in a conversation."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ChatStreamChunk:
    """A chunk from a streamed reply.

    The final chunk has ``finish_reason`` set and carries the canonical
    ``full_text`` of the reply.
    """

    content: str
    finish_reason: str | None = None
    full_text: str | None = None
    error: str | None = None


class IHistoryProvider(ABC):
    """Read-only access to a conversation's messages."""

    @abstractmethod
    async def get_history(self, conversation_id: str) -> list[ConversationTurn]:
        """Return the turns of a conversation in chronological order."""
        ...


class IReplySink(ABC):
    """Append-only destination for finished assistant replies."""

    @abstractmethod
    async def append_reply(self, conversation_id: str, content: str) -> None:
        """Store the final assistant reply for a conversation."""
        ...
