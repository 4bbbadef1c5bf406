from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import (
    MESSAGE_ROLES,
    Conversation,
    Message,
    User,
    derive_title,
)


class MemoryStore:
    """In-memory conversation store snapshotted to a JSON file on the shared fs."""

    def __init__(self, fs_root: str = "/tmp/chatrelay", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.conversations: Dict[str, Conversation] = {}
        # RLock so snapshot helpers can be called while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @staticmethod
    def _snapshot(conversation: Conversation) -> Conversation:
        return replace(conversation, messages=list(conversation.messages))

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise StorageError("state directory missing", {"path": str(self.fs_root)})

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        """Create a user, and its credential in the same snapshot when a hash is given."""
        with self._data_lock:
            if self.get_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email)
            self.users[user.id] = user
            if password_hash is not None:
                self.credentials[user.id] = (password_hash, password_algo or "")
            try:
                self._persist_state()
            except StorageError:
                self.users.pop(user.id, None)
                self.credentials.pop(user.id, None)
                raise
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == normalized), None)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            previous = self.credentials.get(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            try:
                self._persist_state()
            except StorageError:
                if previous is None:
                    self.credentials.pop(user_id, None)
                else:
                    self.credentials[user_id] = previous
                raise

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        return self.credentials.get(user_id)

    # conversations
    def create_conversation(self, user_id: str) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "conversation owner missing", {"user_id": user_id}
                )
            conv = Conversation.new(user_id)
            self.conversations[conv.id] = conv
            try:
                self._persist_state()
            except StorageError:
                self.conversations.pop(conv.id, None)
                raise
            return self._snapshot(conv)

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            if user_id and conv.user_id != user_id:
                return None
            return self._snapshot(conv)

    def list_conversations(self, user_id: str, limit: int = 100) -> List[Conversation]:
        with self._data_lock:
            convs = [c for c in self.conversations.values() if c.user_id == user_id]
            convs.sort(key=lambda c: c.updated_at, reverse=True)
            return [self._snapshot(c) for c in convs[:limit]]

    def list_messages(self, conversation_id: str, *, user_id: str) -> List[Message]:
        conv = self.get_conversation(conversation_id, user_id=user_id)
        return list(conv.messages) if conv else []

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        user_id: str,
        title_max_length: int = 30,
    ) -> Conversation:
        if role not in MESSAGE_ROLES:
            raise ConstraintViolation("invalid message role", {"role": role})
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or conv.user_id != user_id:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            now = datetime.utcnow()
            first = not conv.messages
            updated = replace(
                conv,
                messages=conv.messages + [Message(role=role, content=content, created_at=now)],
                updated_at=now,
                title=derive_title(content, title_max_length) if first else conv.title,
            )
            previous = self.conversations[conversation_id]
            self.conversations[conversation_id] = updated
            try:
                self._persist_state()
            except StorageError:
                self.conversations[conversation_id] = previous
                raise
            return self._snapshot(updated)

    def assign_thread_reference(
        self, conversation_id: str, thread_ref: str, *, user_id: str
    ) -> str:
        """Set the thread reference unless one exists; return the reference in effect."""
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or conv.user_id != user_id:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            if conv.thread_ref:
                return conv.thread_ref
            self.conversations[conversation_id] = replace(conv, thread_ref=thread_ref)
            try:
                self._persist_state()
            except StorageError:
                self.conversations[conversation_id] = conv
                raise
            return thread_ref

    # state snapshot
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state))
            os.replace(tmp_path, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise StorageError("failed to persist state") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc))
            raise StorageError("failed to load state") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.conversations = {
            c["id"]: self._deserialize_conversation(c)
            for c in data.get("conversations", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "user_id": conversation.user_id,
            "title": conversation.title,
            "thread_ref": conversation.thread_ref,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
            "messages": [self._serialize_message(m) for m in conversation.messages],
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            thread_ref=data.get("thread_ref"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            messages=[self._deserialize_message(m) for m in data.get("messages", [])],
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "role": message.role,
            "content": message.content,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            role=data["role"],
            content=data["content"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
