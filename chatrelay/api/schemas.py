from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

ERROR_CODES = frozenset(
    {
        "bad_request",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limit",
        "server_error",
        "provider_error",
        "service_unavailable",
        "offline",
    }
)


class ErrorBody(BaseModel):
    """Error payload with a stable ``code`` clients switch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ChatMessagePayload(BaseModel):
    id: Optional[str] = Field(None, max_length=128)
    role: str = Field(..., pattern="^(user|assistant|system)$")
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    content: Optional[str] = None


class TodoPayload(BaseModel):
    id: str = Field(..., max_length=128)
    content: str = ""
    status: str = "pending"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=128)
    messages: List[ChatMessagePayload] = Field(..., min_length=1)
    mode: str = Field("ask", pattern="^(ask|agent)$")
    todos: List[TodoPayload] = Field(default_factory=list)
    regenerate: bool = False
    temporary: bool = False


class StopResponse(BaseModel):
    chat_id: str
    canceled: bool
