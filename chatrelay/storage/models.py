from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from chatrelay.parts import Part


@dataclass
class User:
    id: str
    email: str
    tier: str = "free"
    api_token: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True


@dataclass
class UserPreferences:
    user_id: str
    custom_instructions: Optional[str] = None
    memory_enabled: bool = True
    memories: List[str] = field(default_factory=list)


@dataclass
class Todo:
    id: str
    content: str
    status: str = "pending"

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "content": self.content, "status": self.status}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Todo":
        return cls(
            id=str(raw.get("id") or uuid.uuid4()),
            content=str(raw.get("content") or ""),
            status=str(raw.get("status") or "pending"),
        )


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    finish_reason: Optional[str] = None
    todos: List[Todo] = field(default_factory=list)
    active_stream_id: Optional[str] = None
    canceled_at: Optional[datetime] = None
    summary_text: Optional[str] = None
    summary_cutoff_id: Optional[str] = None
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    parts: List[Part] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None
    generation_time_ms: Optional[int] = None
    finish_reason: Optional[str] = None
    file_ids: List[str] = field(default_factory=list)
