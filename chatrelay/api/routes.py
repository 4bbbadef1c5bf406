from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Set

from fastapi import APIRouter, Depends, Header, Query, WebSocket, WebSocketDisconnect

from chatrelay.api.schemas import (
    AuthResponse,
    ConversationDetail,
    ConversationListResponse,
    ConversationSummary,
    Envelope,
    LoginRequest,
    SignupRequest,
)
from chatrelay.logging import (
    bind_connection_context,
    clear_connection_context,
    get_logger,
    set_correlation_id,
)
from chatrelay.service.auth import AuthContext
from chatrelay.service.errors import AuthError, NotFoundError, ValidationError
from chatrelay.service.gate import ConnectionClosed, RelayConnection
from chatrelay.service.runtime import get_runtime
from chatrelay.storage.models import Conversation

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

WS_CLOSE_UNAUTHORIZED = 4401


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise AuthError("invalid or missing access token")
    return ctx


async def _get_owned_conversation(runtime, conversation_id: str, principal: AuthContext) -> Conversation:
    conversation = await asyncio.to_thread(
        runtime.store.get_conversation, conversation_id, user_id=principal.user_id
    )
    if not conversation:
        raise NotFoundError("conversation not found")
    return conversation


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    user, tokens = await runtime.auth.signup(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            access_token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            access_token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        ),
    )


@router.post("/conversations", response_model=Envelope, status_code=201, tags=["conversations"])
async def create_conversation(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    conversation = await asyncio.to_thread(runtime.store.create_conversation, principal.user_id)
    logger.info("conversation_created", conversation_id=conversation.id, user_id=principal.user_id)
    return Envelope(status="ok", data=ConversationSummary.from_model(conversation))


@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(
    limit: Optional[int] = Query(None, ge=1),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    max_limit = runtime.settings.conversation_list_limit
    resolved_limit = min(limit or max_limit, max_limit)
    conversations = await asyncio.to_thread(
        runtime.store.list_conversations, principal.user_id, resolved_limit
    )
    return Envelope(
        status="ok",
        data=ConversationListResponse(
            items=[ConversationSummary.from_model(c) for c in conversations]
        ),
    )


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def get_conversation(conversation_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    conversation = await _get_owned_conversation(runtime, conversation_id, principal)
    return Envelope(status="ok", data=ConversationDetail.from_model(conversation))


async def _send_frame_error(runtime, connection: RelayConnection, message: str) -> None:
    report = runtime.reporter.report(
        ValidationError(message), connection_id=connection.connection_id
    )
    await connection.send_event("error", report.to_event())


@router.websocket("/chat/stream")
async def websocket_chat(ws: WebSocket):
    """Realtime chat: ``message`` frames start turns streamed back as ``response``."""
    runtime = get_runtime()
    connection = RelayConnection(ws)
    set_correlation_id(connection.connection_id)
    credential = runtime.gate.credential_from(
        ws.headers.get("authorization"), ws.query_params.get("token")
    )
    try:
        await runtime.gate.authenticate(connection, credential)
    except AuthError:
        await ws.close(code=WS_CLOSE_UNAUTHORIZED)
        return
    await ws.accept()
    bind_connection_context(connection.connection_id, connection.owner.user_id)

    turns: Set[asyncio.Task] = set()
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                await _send_frame_error(runtime, connection, "frame must be text")
                continue
            try:
                frame: Any = json.loads(raw)
            except json.JSONDecodeError:
                await _send_frame_error(runtime, connection, "frame is not valid JSON")
                continue
            event = frame.get("event") if isinstance(frame, dict) else None
            if event == "ping":
                await connection.send_event("pong", None)
            elif event == "message":
                task = asyncio.create_task(
                    runtime.relay.handle_message(connection, frame.get("data"))
                )
                turns.add(task)
                task.add_done_callback(turns.discard)
            else:
                await _send_frame_error(runtime, connection, "unknown event")
    except (WebSocketDisconnect, ConnectionClosed):
        pass
    finally:
        connection.mark_closed()
        for task in turns:
            task.cancel()
        if turns:
            await asyncio.gather(*turns, return_exceptions=True)
        logger.info("connection_closed")
        clear_connection_context()
