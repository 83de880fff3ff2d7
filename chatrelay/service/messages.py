"""Conversions between stored messages and provider chat messages."""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List

from chatrelay.parts import (
    FilePart,
    ReasoningPart,
    StatusPart,
    StepStartPart,
    TextPart,
    ToolPart,
    ToolState,
    UnknownPartError,
    parts_from_dicts,
)
from chatrelay.service.errors import BadRequestError
from chatrelay.service.tokens import estimate_token_count, truncate_to_token_limit
from chatrelay.storage.models import Message

ALLOWED_ROLES = {"user", "assistant", "system"}


def _render_part(part) -> str:
    if isinstance(part, TextPart):
        return part.text
    if isinstance(part, ReasoningPart):
        # Reasoning is not replayed to the model.
        return ""
    if isinstance(part, FilePart):
        return f"[file: {part.filename or part.file_id or part.url}]"
    if isinstance(part, ToolPart):
        args = json.dumps(part.input or {}, sort_keys=True)
        if part.state == ToolState.OUTPUT_ERROR:
            return f"[tool {part.tool_name}({args}) failed: {part.error_text}]"
        if part.output is not None:
            return f"[tool {part.tool_name}({args}) -> {part.output}]"
        return f"[tool {part.tool_name}({args})]"
    if isinstance(part, (StepStartPart, StatusPart)):
        return ""
    raise UnknownPartError(f"unknown part {part!r}")


def to_model_message(message: Message) -> Dict[str, Any]:
    text = "\n".join(filter(None, (_render_part(part) for part in message.parts)))
    return {"role": message.role, "content": text}


def to_model_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """One provider message per stored message, index-aligned."""
    return [to_model_message(message) for message in messages]


def message_token_count(message: Message) -> int:
    return estimate_token_count(to_model_message(message)["content"])


def parse_request_messages(conversation_id: str, raw_messages: List[Dict[str, Any]]) -> List[Message]:
    """Build :class:`Message` objects from a request body.

    Raises :class:`BadRequestError` for unknown roles or part types, and when
    nothing with content is left after empty messages are dropped.
    """
    parsed: List[Message] = []
    for raw in raw_messages:
        role = raw.get("role")
        if role not in ALLOWED_ROLES:
            raise BadRequestError(f"unsupported message role: {role!r}")
        try:
            parts = parts_from_dicts(raw.get("parts") or [])
        except UnknownPartError as exc:
            raise BadRequestError(str(exc)) from exc
        if not parts and raw.get("content"):
            parts = [TextPart(text=str(raw["content"]))]
        message = Message(
            id=str(raw.get("id") or uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            parts=parts,
        )
        if to_model_message(message)["content"].strip() or any(
            isinstance(part, FilePart) for part in parts
        ):
            parsed.append(message)
    if not parsed:
        raise BadRequestError("Your message could not be processed. Please add some text and try again.")
    return parsed


def truncate_history(messages: List[Message], max_tokens: int) -> List[Message]:
    """Keep the newest messages that fit in ``max_tokens``; never drop the last one."""
    if not messages:
        return messages
    kept = truncate_to_token_limit(
        messages, [message_token_count(m) for m in messages], max_tokens
    )
    return kept or messages[-1:]
