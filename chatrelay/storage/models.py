from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

DEFAULT_CONVERSATION_TITLE = "New Chat"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
MESSAGE_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT})


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, email: str) -> "User":
        return cls(id=str(uuid.uuid4()), email=email)


@dataclass(frozen=True)
class Message:
    """One turn of a conversation. Frozen: messages never change once stored."""

    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: str = DEFAULT_CONVERSATION_TITLE
    thread_ref: Optional[str] = None
    messages: List[Message] = field(default_factory=list)

    @classmethod
    def new(cls, user_id: str) -> "Conversation":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )


def derive_title(content: str, max_length: int) -> str:
    """Title for a conversation whose first message is ``content``."""
    return content[:max_length]
