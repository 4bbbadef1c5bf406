from __future__ import annotations

import asyncio
from typing import Protocol

from chatrelay.logging import get_logger
from chatrelay.service.engine import GenerationEngine
from chatrelay.service.errors import NotFoundError, PersistenceError, UpstreamError
from chatrelay.service.locks import KeyedLock
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import Conversation

logger = get_logger(__name__)


class ThreadStore(Protocol):
    def get_conversation(self, conversation_id: str, *, user_id: str | None = None) -> Conversation | None: ...

    def assign_thread_reference(self, conversation_id: str, thread_ref: str, *, user_id: str) -> str: ...


class ThreadRegistry:
    """Map conversations to engine threads, creating each thread exactly once."""

    def __init__(self, store: ThreadStore, engine: GenerationEngine, locks: KeyedLock) -> None:
        self.store = store
        self.engine = engine
        self.locks = locks

    async def resolve_or_create(self, conversation: Conversation) -> str:
        if conversation.thread_ref:
            return conversation.thread_ref
        async with self.locks.hold(conversation.id):
            try:
                current = await asyncio.to_thread(
                    self.store.get_conversation, conversation.id, user_id=conversation.user_id
                )
            except StorageError as exc:
                raise PersistenceError("failed to load conversation") from exc
            if current is None:
                raise NotFoundError("conversation not found")
            if current.thread_ref:
                return current.thread_ref

            created = await self.engine.create_thread()
            try:
                winner = await asyncio.to_thread(
                    self.store.assign_thread_reference,
                    conversation.id,
                    created,
                    user_id=conversation.user_id,
                )
            except ConstraintViolation as exc:
                await self._discard(created)
                raise NotFoundError("conversation not found") from exc
            except StorageError as exc:
                await self._discard(created)
                raise PersistenceError("failed to store thread reference") from exc

        if winner != created:
            # Another process assigned first
            await self._discard(created)
            logger.info(
                "thread_reference_adopted",
                conversation_id=conversation.id,
                thread_ref=winner,
            )
        else:
            logger.info("thread_created", conversation_id=conversation.id, thread_ref=created)
        return winner

    async def _discard(self, thread_ref: str) -> None:
        try:
            await self.engine.delete_thread(thread_ref)
        except UpstreamError as exc:
            logger.warning("thread_discard_failed", thread_ref=thread_ref, error=str(exc))
