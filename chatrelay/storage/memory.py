from __future__ import annotations

import copy
import secrets
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    Conversation,
    Message,
    Todo,
    User,
    UserPreferences,
)

# Fields callers may change through ``update_conversation``.
CONVERSATION_MUTABLE_FIELDS = frozenset(
    {"title", "finish_reason", "todos", "active_stream_id", "canceled_at", "meta"}
)


class MemoryStore:
    """In-process store used for development and tests.

    Mirrors the persistence contract of :class:`PostgresStore`. All reads hand
    back copies so callers never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, str] = {}
        self.preferences: Dict[str, UserPreferences] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        tier: str = "free",
        user_id: Optional[str] = None,
        api_token: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"email": email})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                tier=tier,
                api_token=api_token or secrets.token_urlsafe(32),
            )
            self.users[user.id] = user
            self.tokens[user.api_token] = user.id
            self.preferences[user.id] = UserPreferences(user_id=user.id)
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.tokens.get(token)
            if not user_id:
                return None
            return self.get_user(user_id)

    def get_user_preferences(self, user_id: str) -> UserPreferences:
        with self._data_lock:
            prefs = self.preferences.get(user_id) or UserPreferences(user_id=user_id)
            return copy.deepcopy(prefs)

    def add_user_memory(self, user_id: str, content: str) -> UserPreferences:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            prefs = self.preferences.setdefault(user_id, UserPreferences(user_id=user_id))
            prefs.memories.append(content)
            return copy.deepcopy(prefs)

    # conversations
    def create_conversation(
        self,
        user_id: str,
        *,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "conversation owner missing", {"user_id": user_id}
                )
            conv_id = conversation_id or str(uuid.uuid4())
            if conv_id in self.conversations:
                raise ConstraintViolation(
                    "conversation already exists", {"conversation_id": conv_id}
                )
            now = datetime.utcnow()
            conv = Conversation(
                id=conv_id,
                user_id=user_id,
                created_at=now,
                updated_at=now,
                title=title,
            )
            self.conversations[conv_id] = conv
            self.messages[conv_id] = []
            return copy.deepcopy(conv)

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            if user_id and conv.user_id != user_id:
                return None
            return copy.deepcopy(conv)

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        unknown = set(fields) - CONVERSATION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported conversation fields: {sorted(unknown)}")
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            for name, value in fields.items():
                if name == "todos":
                    value = [t if isinstance(t, Todo) else Todo.from_dict(t) for t in value]
                setattr(conv, name, value)
            conv.updated_at = datetime.utcnow()
            return copy.deepcopy(conv)

    def start_stream(self, conversation_id: str, stream_id: str) -> None:
        """Mark ``stream_id`` as the active stream and drop stale cancellation."""
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
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            return conv.canceled_at if conv else None

    def save_conversation_summary(
        self, conversation_id: str, summary_text: str, cutoff_message_id: str
    ) -> None:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            conv.summary_text = summary_text
            conv.summary_cutoff_id = cutoff_message_id
            conv.updated_at = datetime.utcnow()

    # messages
    def list_messages(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or (user_id and conv.user_id != user_id):
                return []
            msgs = self.messages.get(conversation_id, [])
            if limit is not None:
                msgs = msgs[-limit:]
            return copy.deepcopy(msgs)

    def save_message(
        self, message: Message, *, extra_file_ids: Iterable[str] = ()
    ) -> Message:
        """Insert ``message``, or append file ids when it already exists.

        Persisted messages are immutable apart from their file references.
        """
        with self._data_lock:
            if message.conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found",
                    {"conversation_id": message.conversation_id},
                )
            msgs = self.messages.setdefault(message.conversation_id, [])
            incoming_ids = list(message.file_ids) + list(extra_file_ids)
            for existing in msgs:
                if existing.id == message.id:
                    for file_id in incoming_ids:
                        if file_id not in existing.file_ids:
                            existing.file_ids.append(file_id)
                    return copy.deepcopy(existing)
            stored = copy.deepcopy(message)
            stored.file_ids = list(dict.fromkeys(incoming_ids))
            msgs.append(stored)
            self.conversations[message.conversation_id].updated_at = datetime.utcnow()
            return copy.deepcopy(stored)

    def delete_last_assistant_message(self, conversation_id: str) -> Optional[str]:
        """Drop the trailing assistant message so it can be regenerated."""
        with self._data_lock:
            msgs = self.messages.get(conversation_id) or []
            if msgs and msgs[-1].role == "assistant":
                return msgs.pop().id
            return None
