from __future__ import annotations

import json
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from chatrelay.logging import get_logger
from chatrelay.parts import parts_from_dicts, parts_to_dicts
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.memory import CONVERSATION_MUTABLE_FIELDS
from chatrelay.storage.models import (
    Conversation,
    Message,
    Todo,
    User,
    UserPreferences,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    tier TEXT NOT NULL DEFAULT 'free',
    api_token TEXT UNIQUE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL
);
CREATE TABLE IF NOT EXISTS user_preferences (
    user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
    custom_instructions TEXT,
    memory_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    memories JSONB NOT NULL DEFAULT '[]'::jsonb
);
CREATE TABLE IF NOT EXISTS conversation (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    title TEXT,
    finish_reason TEXT,
    todos JSONB NOT NULL DEFAULT '[]'::jsonb,
    active_stream_id TEXT,
    canceled_at TIMESTAMP,
    summary_text TEXT,
    summary_cutoff_id TEXT,
    meta JSONB,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);
CREATE TABLE IF NOT EXISTS message (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversation(id) ON DELETE CASCADE,
    seq BIGSERIAL,
    role TEXT NOT NULL,
    parts JSONB NOT NULL,
    usage JSONB NOT NULL DEFAULT '{}'::jsonb,
    model TEXT,
    generation_time_ms INTEGER,
    finish_reason TEXT,
    file_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS message_conversation_seq ON message (conversation_id, seq);
"""


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return default
    return raw


class PostgresStore:
    """Postgres-backed persistence for users, conversations and messages."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # users
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            tier=row.get("tier") or "free",
            api_token=row.get("api_token"),
            created_at=row.get("created_at") or datetime.utcnow(),
            is_active=bool(row.get("is_active", True)),
        )

    def create_user(
        self,
        email: str,
        *,
        tier: str = "free",
        user_id: Optional[str] = None,
        api_token: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            tier=tier,
            api_token=api_token or secrets.token_urlsafe(32),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, email, tier, api_token, is_active, created_at) VALUES (%s, %s, %s, %s, %s, %s)",
                    (user.id, user.email, user.tier, user.api_token, True, user.created_at),
                )
                conn.execute(
                    "INSERT INTO user_preferences (user_id) VALUES (%s)", (user.id,)
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"email": email})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_token(self, token: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE api_token = %s AND is_active", (token,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_preferences(self, user_id: str) -> UserPreferences:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_preferences WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return UserPreferences(user_id=user_id)
        return UserPreferences(
            user_id=user_id,
            custom_instructions=row.get("custom_instructions"),
            memory_enabled=bool(row.get("memory_enabled", True)),
            memories=list(_load_json(row.get("memories"), [])),
        )

    def add_user_memory(self, user_id: str, content: str) -> UserPreferences:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_preferences (user_id, memories) VALUES (%s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET memories = user_preferences.memories || EXCLUDED.memories
                    """,
                    (user_id, Jsonb([content])),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self.get_user_preferences(user_id)

    # conversations
    def _row_to_conversation(self, row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            title=row.get("title"),
            finish_reason=row.get("finish_reason"),
            todos=[Todo.from_dict(t) for t in _load_json(row.get("todos"), [])],
            active_stream_id=row.get("active_stream_id"),
            canceled_at=row.get("canceled_at"),
            summary_text=row.get("summary_text"),
            summary_cutoff_id=row.get("summary_cutoff_id"),
            meta=_load_json(row.get("meta"), None),
        )

    def create_conversation(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        conv_id = conversation_id or str(uuid.uuid4())
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO conversation (id, user_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                    (conv_id, user_id, title, now, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "conversation already exists", {"conversation_id": conv_id}
            )
        return Conversation(id=conv_id, user_id=user_id, created_at=now, updated_at=now, title=title)

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        query = "SELECT * FROM conversation WHERE id = %s"
        params: tuple[Any, ...] = (conversation_id,)
        if user_id:
            query += " AND user_id = %s"
            params = (conversation_id, user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_conversation(row) if row else None

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        unknown = set(fields) - CONVERSATION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported conversation fields: {sorted(unknown)}")
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "todos":
                value = Jsonb([t.to_dict() if isinstance(t, Todo) else dict(t) for t in value])
            elif name == "meta" and value is not None:
                value = Jsonb(value)
            assignments.append(f"{name} = %s")
            params.append(value)
        assignments.append("updated_at = %s")
        params.append(datetime.utcnow())
        params.append(conversation_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE conversation SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return self._row_to_conversation(row)

    def start_stream(self, conversation_id: str, stream_id: str) -> None:
        self.update_conversation(
            conversation_id, active_stream_id=stream_id, canceled_at=None
        )

    def clear_active_stream(self, conversation_id: str) -> None:
        self.update_conversation(conversation_id, active_stream_id=None)

    def set_canceled(self, conversation_id: str) -> datetime:
        now = datetime.utcnow()
        self.update_conversation(conversation_id, canceled_at=now)
        return now

    def get_cancellation_status(self, conversation_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT canceled_at FROM conversation WHERE id = %s", (conversation_id,)
            ).fetchone()
        return row["canceled_at"] if row else None

    def save_conversation_summary(
        self, conversation_id: str, summary_text: str, cutoff_message_id: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversation SET summary_text = %s, summary_cutoff_id = %s, updated_at = %s WHERE id = %s",
                (summary_text, cutoff_message_id, datetime.utcnow(), conversation_id),
            )

    # messages
    def _row_to_message(self, row: Dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            parts=parts_from_dicts(_load_json(row.get("parts"), [])),
            created_at=row.get("created_at") or datetime.utcnow(),
            usage=dict(_load_json(row.get("usage"), {})),
            model=row.get("model"),
            generation_time_ms=row.get("generation_time_ms"),
            finish_reason=row.get("finish_reason"),
            file_ids=list(_load_json(row.get("file_ids"), [])),
        )

    def list_messages(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        query = (
            "SELECT m.* FROM message m JOIN conversation c ON c.id = m.conversation_id"
            " WHERE m.conversation_id = %s"
        )
        params: List[Any] = [conversation_id]
        if user_id:
            query += " AND c.user_id = %s"
            params.append(user_id)
        query += " ORDER BY m.seq"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        messages = [self._row_to_message(row) for row in rows]
        if limit is not None:
            messages = messages[-limit:]
        return messages

    def save_message(
        self, message: Message, *, extra_file_ids: Iterable[str] = ()
    ) -> Message:
        file_ids = list(dict.fromkeys(list(message.file_ids) + list(extra_file_ids)))
        try:
            with self._connect() as conn:
                # Existing rows only gain file ids; everything else is immutable.
                row = conn.execute(
                    """
                    INSERT INTO message (id, conversation_id, role, parts, usage, model,
                                         generation_time_ms, finish_reason, file_ids, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET file_ids = (
                        SELECT COALESCE(jsonb_agg(DISTINCT f), '[]'::jsonb)
                        FROM jsonb_array_elements(message.file_ids || EXCLUDED.file_ids) AS f
                    )
                    RETURNING *
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.role,
                        Jsonb(parts_to_dicts(message.parts)),
                        Jsonb(message.usage or {}),
                        message.model,
                        message.generation_time_ms,
                        message.finish_reason,
                        Jsonb(file_ids),
                        message.created_at,
                    ),
                ).fetchone()
                conn.execute(
                    "UPDATE conversation SET updated_at = %s WHERE id = %s",
                    (datetime.utcnow(), message.conversation_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": message.conversation_id}
            )
        return self._row_to_message(row)

    def delete_last_assistant_message(self, conversation_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, role FROM message WHERE conversation_id = %s ORDER BY seq DESC LIMIT 1",
                (conversation_id,),
            ).fetchone()
            if not row or row["role"] != "assistant":
                return None
            conn.execute("DELETE FROM message WHERE id = %s", (row["id"],))
        return str(row["id"])
