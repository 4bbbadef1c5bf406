from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, TypeVar

from chatrelay.config import Settings, TurnPolicy
from chatrelay.logging import get_logger
from chatrelay.service.assistant import AssistantHolder
from chatrelay.service.engine import GenerationEngine
from chatrelay.service.errors import (
    AuthError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from chatrelay.service.gate import ConnectionClosed, RelayConnection
from chatrelay.service.locks import KeyedLock
from chatrelay.service.reporter import ErrorReport, ErrorReporter
from chatrelay.service.threads import ThreadRegistry
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import ROLE_ASSISTANT, ROLE_USER, Conversation

logger = get_logger(__name__)

T = TypeVar("T")

MAX_MESSAGE_LENGTH = 32_000


class TurnState(str, Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    THREAD_READY = "thread_ready"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.FAILED, TurnState.CANCELLED})


@dataclass
class TurnResult:
    """Outcome of one message turn.

    ``content`` is the accumulated assistant text; on ``FAILED`` or
    ``CANCELLED`` it is what was shown to the client but never stored.
    """

    conversation_id: Optional[str] = None
    state: TurnState = TurnState.IDLE
    content: str = ""
    increments: int = 0
    error: Optional[ErrorReport] = None
    history: List[TurnState] = field(default_factory=lambda: [TurnState.IDLE])

    def advance(self, state: TurnState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"turn already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)


class StreamRelay:
    """Drive one message turn from a realtime connection to the engine and back."""

    def __init__(
        self,
        store: Any,
        threads: ThreadRegistry,
        engine: GenerationEngine,
        assistant: AssistantHolder,
        reporter: ErrorReporter,
        turn_locks: KeyedLock,
        settings: Settings,
    ) -> None:
        self.store = store
        self.threads = threads
        self.engine = engine
        self.assistant = assistant
        self.reporter = reporter
        self.turn_locks = turn_locks
        self.settings = settings

    async def handle_message(self, connection: RelayConnection, payload: Any) -> TurnResult:
        turn = TurnResult()
        try:
            conversation_id, content = self._parse_payload(payload)
            turn.conversation_id = conversation_id
            owner = connection.owner
            if owner is None:
                raise AuthError("connection not authenticated")

            turn.advance(TurnState.AUTHORIZING)
            conversation = await self._store_call(
                self.store.get_conversation, conversation_id, user_id=owner.user_id
            )
            if conversation is None:
                raise NotFoundError("conversation not found")
            wait = self.settings.turn_policy == TurnPolicy.QUEUE
            async with self.turn_locks.hold(conversation_id, wait=wait):
                await self._run_turn(connection, conversation, content, turn)
        except ConnectionClosed:
            self._cancel(turn, connection, reason="connection_closed")
        except asyncio.CancelledError:
            self._cancel(turn, connection, reason="task_cancelled")
            raise
        except Exception as exc:
            await self._fail(turn, connection, exc)
        return turn

    async def _run_turn(
        self,
        connection: RelayConnection,
        conversation: Conversation,
        content: str,
        turn: TurnResult,
    ) -> None:
        owner_id = conversation.user_id
        turn.advance(TurnState.THREAD_READY)
        profile = self.assistant.profile
        thread_ref = await self.threads.resolve_or_create(conversation)

        turn.advance(TurnState.SENDING)
        await self._append(conversation.id, ROLE_USER, content, owner_id)
        await self.engine.add_user_message(thread_ref, content)

        turn.advance(TurnState.STREAMING)
        async with contextlib.aclosing(
            self.engine.stream_run(thread_ref, profile.assistant_id)
        ) as stream:
            async for piece in stream:
                if not piece:
                    continue
                turn.content += piece
                turn.increments += 1
                await connection.send_event(
                    "response",
                    {"conversationId": conversation.id, "content": turn.content},
                )

        if turn.content:
            await self._append(conversation.id, ROLE_ASSISTANT, turn.content, owner_id)
        turn.advance(TurnState.COMPLETED)
        logger.info(
            "turn_completed",
            conversation_id=conversation.id,
            connection_id=connection.connection_id,
            increments=turn.increments,
            reply_chars=len(turn.content),
        )

    def _parse_payload(self, payload: Any) -> tuple[str, str]:
        if not isinstance(payload, dict):
            raise ValidationError("message payload must be an object")
        conversation_id = payload.get("conversationId")
        content = payload.get("content")
        if not isinstance(conversation_id, str) or not conversation_id.strip():
            raise ValidationError("conversationId is required", detail={"field": "conversationId"})
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required", detail={"field": "content"})
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError("content is too long", detail={"field": "content"})
        return conversation_id.strip(), content

    async def _append(self, conversation_id: str, role: str, content: str, user_id: str) -> None:
        try:
            await self._store_call(
                self.store.append_message,
                conversation_id,
                role,
                content,
                user_id=user_id,
                title_max_length=self.settings.title_max_length,
            )
        except ConstraintViolation as exc:
            raise NotFoundError("conversation not found") from exc

    async def _store_call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ConstraintViolation:
            raise
        except StorageError as exc:
            raise PersistenceError("storage operation failed") from exc

    def _cancel(self, turn: TurnResult, connection: RelayConnection, *, reason: str) -> None:
        if turn.state not in TERMINAL_STATES:
            turn.advance(TurnState.CANCELLED)
        logger.info(
            "turn_cancelled",
            conversation_id=turn.conversation_id,
            connection_id=connection.connection_id,
            reason=reason,
            shown_chars=len(turn.content),
        )

    async def _fail(self, turn: TurnResult, connection: RelayConnection, exc: Exception) -> None:
        report = self.reporter.report(
            exc,
            conversation_id=turn.conversation_id,
            connection_id=connection.connection_id,
            state=turn.state.value,
        )
        turn.error = report
        if turn.state not in TERMINAL_STATES:
            turn.advance(TurnState.FAILED)
        data = report.to_event()
        if turn.conversation_id:
            data["conversationId"] = turn.conversation_id
        try:
            await connection.send_event("error", data)
        except ConnectionClosed:
            logger.info("error_event_undeliverable", connection_id=connection.connection_id)
