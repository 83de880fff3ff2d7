"""Typed message parts.

Messages carry an ordered list of parts drawn from a closed set of variants.
Parsing from the wire happens in :func:`part_from_dict`; everything past that
point dispatches on the dataclass type and rejects anything outside the set.

Tool parts move through ``input-streaming -> input-available ->
output-available | output-error``. A tool part still in one of the first two
states when a stream ends is repaired by :func:`repair_incomplete_tool_parts`
before it is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union


class ToolState(str, Enum):
    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"

    @property
    def terminal(self) -> bool:
        return self in (ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_ERROR)


@dataclass
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass
class ReasoningPart:
    text: str
    type: str = field(default="reasoning", init=False)


@dataclass
class FilePart:
    media_type: str
    url: str
    file_id: Optional[str] = None
    filename: Optional[str] = None
    type: str = field(default="file", init=False)


@dataclass
class StepStartPart:
    type: str = field(default="step-start", init=False)


@dataclass
class StatusPart:
    """Out-of-band status payload (``data-*`` frames) kept in history."""

    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    type: str = field(default="data", init=False)


@dataclass
class ToolPart:
    tool_call_id: str
    tool_name: str
    state: ToolState = ToolState.INPUT_STREAMING
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error_text: Optional[str] = None

    @property
    def type(self) -> str:
        return f"tool-{self.tool_name}"

    def complete(self, output: Any) -> None:
        self.output = output
        self.state = ToolState.OUTPUT_AVAILABLE

    def fail(self, error_text: str) -> None:
        self.error_text = error_text
        self.state = ToolState.OUTPUT_ERROR


Part = Union[TextPart, ReasoningPart, FilePart, StepStartPart, StatusPart, ToolPart]


class UnknownPartError(ValueError):
    """Raised for a part outside the closed set of variants."""


def part_from_dict(raw: Dict[str, Any]) -> Part:
    kind = raw.get("type")
    if not isinstance(kind, str):
        raise UnknownPartError(f"part without type: {raw!r}")
    if kind == "text":
        return TextPart(text=str(raw.get("text") or ""))
    if kind == "reasoning":
        return ReasoningPart(text=str(raw.get("text") or ""))
    if kind == "file":
        return FilePart(
            media_type=raw.get("mediaType") or raw.get("media_type") or "application/octet-stream",
            url=raw.get("url") or "",
            file_id=raw.get("fileId") or raw.get("file_id"),
            filename=raw.get("filename") or raw.get("name"),
        )
    if kind == "step-start":
        return StepStartPart()
    if kind.startswith("data-"):
        data = raw.get("data")
        return StatusPart(name=kind[len("data-"):], data=data if isinstance(data, dict) else {"value": data})
    if kind.startswith("tool-"):
        state = raw.get("state") or ToolState.INPUT_STREAMING.value
        try:
            parsed_state = ToolState(state)
        except ValueError as exc:
            raise UnknownPartError(f"unknown tool state {state!r}") from exc
        return ToolPart(
            tool_call_id=str(raw.get("toolCallId") or raw.get("tool_call_id") or ""),
            tool_name=kind[len("tool-"):],
            state=parsed_state,
            input=raw.get("input"),
            output=raw.get("output"),
            error_text=raw.get("errorText") or raw.get("error_text"),
        )
    raise UnknownPartError(f"unknown part type {kind!r}")


def part_to_dict(part: Part) -> Dict[str, Any]:
    if isinstance(part, (TextPart, ReasoningPart)):
        return {"type": part.type, "text": part.text}
    if isinstance(part, FilePart):
        payload: Dict[str, Any] = {"type": "file", "mediaType": part.media_type, "url": part.url}
        if part.file_id:
            payload["fileId"] = part.file_id
        if part.filename:
            payload["filename"] = part.filename
        return payload
    if isinstance(part, StepStartPart):
        return {"type": "step-start"}
    if isinstance(part, StatusPart):
        return {"type": f"data-{part.name}", "data": dict(part.data)}
    if isinstance(part, ToolPart):
        payload = {
            "type": part.type,
            "toolCallId": part.tool_call_id,
            "state": part.state.value,
        }
        if part.input is not None:
            payload["input"] = part.input
        if part.output is not None:
            payload["output"] = part.output
        if part.error_text is not None:
            payload["errorText"] = part.error_text
        return payload
    raise UnknownPartError(f"unknown part {part!r}")


def parts_from_dicts(raw_parts: Iterable[Dict[str, Any]]) -> List[Part]:
    return [part_from_dict(raw) for raw in raw_parts]


def parts_to_dicts(parts: Iterable[Part]) -> List[Dict[str, Any]]:
    return [part_to_dict(part) for part in parts]


def text_of(parts: Iterable[Part]) -> str:
    """Join the text and reasoning content of ``parts`` for token counting."""
    chunks: List[str] = []
    for part in parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            chunks.append(part.text)
        elif isinstance(part, ToolPart):
            if part.output is not None:
                chunks.append(str(part.output))
        elif isinstance(part, (FilePart, StepStartPart, StatusPart)):
            continue
        else:
            raise UnknownPartError(f"unknown part {part!r}")
    return " ".join(chunk for chunk in chunks if chunk)


def has_usable_content(parts: Iterable[Part]) -> bool:
    """True when ``parts`` holds anything beyond step markers and status data."""
    for part in parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            if part.text.strip():
                return True
        elif isinstance(part, ToolPart):
            return True
        elif isinstance(part, (FilePart, StepStartPart, StatusPart)):
            continue
        else:
            raise UnknownPartError(f"unknown part {part!r}")
    return False


def incomplete_tool_parts(parts: Iterable[Part]) -> List[ToolPart]:
    return [
        part
        for part in parts
        if isinstance(part, ToolPart) and not part.state.terminal
    ]


def repair_incomplete_tool_parts(parts: List[Part]) -> List[Part]:
    """Return ``parts`` with every non-terminal tool part resolved.

    A part that already produced output is promoted to ``output-available``
    with that output untouched. A part that never ran is dropped together
    with the step-start marker directly before it.
    """
    repaired: List[Part] = []
    for part in parts:
        if isinstance(part, ToolPart) and not part.state.terminal:
            if part.output is not None:
                repaired.append(
                    ToolPart(
                        tool_call_id=part.tool_call_id,
                        tool_name=part.tool_name,
                        state=ToolState.OUTPUT_AVAILABLE,
                        input=part.input,
                        output=part.output,
                    )
                )
                continue
            if repaired and isinstance(repaired[-1], StepStartPart):
                repaired.pop()
            continue
        repaired.append(part)
    return repaired


def file_ids_of(parts: Iterable[Part]) -> List[str]:
    return [part.file_id for part in parts if isinstance(part, FilePart) and part.file_id]
