from __future__ import annotations

import contextlib
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    MESSAGE_ROLES,
    Conversation,
    Message,
    User,
    derive_title,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        title TEXT NOT NULL,
        thread_ref TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        conversation_id TEXT NOT NULL REFERENCES conversation(id),
        seq INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (conversation_id, seq)
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversation_user_updated_idx ON conversation (user_id, updated_at DESC)",
)


class PostgresStore:
    """Postgres-backed conversation store.

    Every append and thread assignment runs in one transaction holding a row
    lock on the conversation, which gives the single-document
    read-modify-write semantics the relay relies on.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("unique constraint violated") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced row missing") from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageError("database operation failed") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        user = User.new(email)
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "INSERT INTO app_user (id, email, created_at) VALUES (%s, %s, %s)",
                (user.id, email, user.created_at),
            )
            if password_hash is not None:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user.id, password_hash, password_algo or ""),
                )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash, password_algo = EXCLUDED.password_algo
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # conversations
    def create_conversation(self, user_id: str) -> Conversation:
        conv = Conversation.new(user_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO conversation (id, user_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                    (conv.id, user_id, DEFAULT_CONVERSATION_TITLE, conv.created_at, conv.updated_at),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "conversation owner missing", {"user_id": user_id}
            ) from exc
        return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            params: tuple[Any, ...] = (conversation_id,)
            query = "SELECT * FROM conversation WHERE id = %s"
            if user_id:
                query += " AND user_id = %s"
                params = (conversation_id, user_id)
            row = conn.execute(query, params).fetchone()
            if not row:
                return None
            messages = self._fetch_messages(conn, conversation_id)
        return self._row_to_conversation(row, messages)

    def list_conversations(self, user_id: str, limit: int = 100) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation
                WHERE user_id = %s
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_conversation(row, []) for row in rows]

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
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM conversation WHERE id = %s AND user_id = %s FOR UPDATE",
                    (conversation_id, user_id),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "conversation not found", {"conversation_id": conversation_id}
                    )
                seq_row = conn.execute(
                    "SELECT COUNT(*) AS c FROM message WHERE conversation_id = %s",
                    (conversation_id,),
                ).fetchone()
                seq = seq_row["c"] if seq_row else 0
                now = datetime.utcnow()
                conn.execute(
                    "INSERT INTO message (conversation_id, seq, role, content, created_at) VALUES (%s, %s, %s, %s, %s)",
                    (conversation_id, seq, role, content, now),
                )
                title = derive_title(content, title_max_length) if seq == 0 else row["title"]
                row = conn.execute(
                    "UPDATE conversation SET updated_at = %s, title = %s WHERE id = %s RETURNING *",
                    (now, title, conversation_id),
                ).fetchone()
                messages = self._fetch_messages(conn, conversation_id)
        return self._row_to_conversation(row, messages)

    def assign_thread_reference(
        self, conversation_id: str, thread_ref: str, *, user_id: str
    ) -> str:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT thread_ref FROM conversation WHERE id = %s AND user_id = %s FOR UPDATE",
                    (conversation_id, user_id),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "conversation not found", {"conversation_id": conversation_id}
                    )
                if row["thread_ref"]:
                    return row["thread_ref"]
                conn.execute(
                    "UPDATE conversation SET thread_ref = %s WHERE id = %s",
                    (thread_ref, conversation_id),
                )
        return thread_ref

    def _fetch_messages(self, conn: psycopg.Connection, conversation_id: str) -> List[Message]:
        rows = conn.execute(
            "SELECT role, content, created_at FROM message WHERE conversation_id = %s ORDER BY seq",
            (conversation_id,),
        ).fetchall()
        return [
            Message(role=r["role"], content=r["content"], created_at=r["created_at"])
            for r in rows
        ]

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(id=str(row["id"]), email=row["email"], created_at=row["created_at"])

    @staticmethod
    def _row_to_conversation(row: dict, messages: List[Message]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
            title=row.get("title") or DEFAULT_CONVERSATION_TITLE,
            thread_ref=row.get("thread_ref"),
            messages=messages,
        )
