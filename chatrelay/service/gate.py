from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional

from starlette.websockets import WebSocketDisconnect

from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthContext, AuthService
from chatrelay.service.errors import AuthError

logger = get_logger(__name__)


class ConnectionClosed(Exception):
    """The peer went away; nothing more can be delivered on the connection."""


class RelayConnection:
    """One realtime connection plus the identity bound to it.

    Frames are ``{"event": ..., "data": ...}`` JSON objects. Sends are
    serialized so events from the turn task and the reader (``pong``) never
    interleave mid-frame.
    """

    def __init__(self, websocket: Any, connection_id: Optional[str] = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self._owner: Optional[AuthContext] = None
        self._send_lock = asyncio.Lock()
        self.closed = False

    @property
    def owner(self) -> Optional[AuthContext]:
        return self._owner

    def bind(self, identity: AuthContext) -> None:
        if self._owner is not None:
            raise AuthError("connection already authenticated")
        self._owner = identity

    def mark_closed(self) -> None:
        self.closed = True

    async def send_event(self, event: str, data: Any) -> None:
        if self.closed:
            raise ConnectionClosed(self.connection_id)
        async with self._send_lock:
            try:
                await self.websocket.send_json({"event": event, "data": data})
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                self.closed = True
                raise ConnectionClosed(self.connection_id) from exc


class ConnectionGate:
    """Authenticate realtime connections before any event is exchanged."""

    def __init__(self, auth: AuthService) -> None:
        self.auth = auth

    def credential_from(
        self, authorization: Optional[str], query_token: Optional[str]
    ) -> Optional[str]:
        """Bearer header first, then the ``token`` query parameter."""
        return self.auth._extract_bearer(authorization) or (query_token or None)

    async def authenticate(
        self, connection: RelayConnection, credential: Optional[str]
    ) -> AuthContext:
        if connection.owner is not None:
            raise AuthError("connection already authenticated")
        if not credential:
            raise AuthError("missing credential")
        ctx = await asyncio.to_thread(self.auth.authenticate_token, credential)
        if not ctx:
            logger.info("connection_rejected", connection_id=connection.connection_id)
            raise AuthError("invalid or expired credential")
        connection.bind(ctx)
        logger.info(
            "connection_authenticated",
            connection_id=connection.connection_id,
            user_id=ctx.user_id,
        )
        return ctx
