"""Multi-step generation loop.

One turn is a sequence of model steps. A step streams text, reasoning and
tool calls; every tool call of the step is executed and its result fed back
before the next step starts. The loop ends when the model answers without
tool calls, the step ceiling is reached, or the abort signal fires.

A retryable provider failure, or a primary attempt that produced nothing
usable, is retried once on the fallback model under a new message id.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.parts import (
    Part,
    ReasoningPart,
    StepStartPart,
    TextPart,
    ToolPart,
    ToolState,
    has_usable_content,
)
from chatrelay.service.cancellation import AbortSignal, StreamAborted
from chatrelay.service.errors import ProviderError
from chatrelay.service.prompts import build_system_prompt
from chatrelay.service.providers import (
    ProviderRegistry,
    ReasoningDelta,
    StepFinished,
    StepRequest,
    TextDelta,
    ToolCall,
    ToolCallReady,
    Usage,
)
from chatrelay.service.stream import StreamEvent
from chatrelay.service.tokens import truncate_tool_output
from chatrelay.service.tools import ToolError, ToolInterrupted, ToolSession, interrupted_output
from chatrelay.storage.models import Message, UserPreferences

logger = get_logger(__name__)


_EXHAUSTED = object()


async def _next_event(stream):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class FallbackState(str, Enum):
    PRIMARY = "primary"
    FALLBACK_ATTEMPTED = "fallback-attempted"


class UsageAccumulator:
    """Token usage and finish reasons summed over every step of a turn.

    ``ready`` is set once no further usage can arrive, including after an
    abort, so the finalizer can wait on it with a bound.
    """

    def __init__(self) -> None:
        self.usage = Usage()
        self.finish_reasons: List[str] = []
        self.ready = asyncio.Event()

    @property
    def steps(self) -> int:
        return len(self.finish_reasons)

    @property
    def last_finish_reason(self) -> Optional[str]:
        return self.finish_reasons[-1] if self.finish_reasons else None

    def add(self, finish_reason: str, usage: Usage) -> None:
        self.usage = self.usage + usage
        self.finish_reasons.append(finish_reason)

    async def wait(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class AssistantDraft:
    message_id: str
    model: str
    parts: List[Part] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    finish_reason: Optional[str] = None

    def append_text(self, delta: str, *, reasoning: bool = False) -> None:
        kind = ReasoningPart if reasoning else TextPart
        if self.parts and type(self.parts[-1]) is kind:
            self.parts[-1].text += delta
        else:
            self.parts.append(kind(text=delta))

    def to_message(self, conversation_id: str, usage: Usage, file_ids: List[str]) -> Message:
        return Message(
            id=self.message_id,
            conversation_id=conversation_id,
            role="assistant",
            parts=list(self.parts),
            usage=usage.to_dict(),
            model=self.model,
            generation_time_ms=int((time.monotonic() - self.started_at) * 1000),
            finish_reason=self.finish_reason,
            file_ids=list(file_ids),
        )


class SystemContext:
    """Cached system prompt; state-mutating tools invalidate it."""

    def __init__(self, mode: str, *, store=None, user_id: Optional[str] = None, tools: Optional[ToolSession] = None):
        self.mode = mode
        self.store = store
        self.user_id = user_id
        self.tools = tools
        self.builds = 0
        self._cached: Optional[str] = None

    async def get(self) -> str:
        if self._cached is None:
            preferences: Optional[UserPreferences] = None
            if self.store is not None and self.user_id:
                preferences = await asyncio.to_thread(self.store.get_user_preferences, self.user_id)
            todos = self.tools.todos.items if self.tools is not None else ()
            self._cached = build_system_prompt(self.mode, preferences=preferences, todos=todos)
            self.builds += 1
        return self._cached

    def invalidate(self) -> None:
        self._cached = None


@dataclass
class Turn:
    conversation_id: str
    user_id: str
    mode: str
    model: str
    fallback_model: Optional[str]
    messages: List[Dict[str, Any]]
    signal: AbortSignal
    tools: ToolSession
    system: SystemContext
    max_steps: int
    usage: UsageAccumulator = field(default_factory=UsageAccumulator)
    fallback: FallbackState = FallbackState.PRIMARY
    draft: Optional[AssistantDraft] = None
    discarded_message_ids: List[str] = field(default_factory=list)
    aborted: bool = False


class StepDriver:
    def __init__(self, providers: ProviderRegistry, settings: Settings) -> None:
        self.providers = providers
        self.settings = settings

    async def run(self, turn: Turn) -> AsyncIterator[StreamEvent]:
        model = turn.model
        try:
            while True:
                base_messages = list(turn.messages)
                turn.draft = AssistantDraft(message_id=str(uuid.uuid4()), model=model)
                yield StreamEvent("start", {"messageId": turn.draft.message_id, "model": model})
                try:
                    async for event in self._steps(turn, base_messages):
                        yield event
                except ProviderError as exc:
                    if not (exc.retryable and self._can_fall_back(turn)):
                        raise
                    logger.warning(
                        "provider_fallback",
                        conversation_id=turn.conversation_id,
                        model=model,
                        provider_status=exc.provider_status,
                        body=exc.body,
                    )
                    model = self._begin_fallback(turn)
                    continue
                if turn.aborted or has_usable_content(turn.draft.parts):
                    return
                if not self._can_fall_back(turn):
                    return
                logger.warning("empty_model_response", conversation_id=turn.conversation_id, model=model)
                model = self._begin_fallback(turn)
        finally:
            turn.usage.ready.set()

    def _can_fall_back(self, turn: Turn) -> bool:
        return (
            turn.fallback == FallbackState.PRIMARY
            and bool(turn.fallback_model)
            and not turn.signal.aborted
        )

    def _begin_fallback(self, turn: Turn) -> str:
        turn.fallback = FallbackState.FALLBACK_ATTEMPTED
        if turn.draft is not None:
            turn.discarded_message_ids.append(turn.draft.message_id)
        return turn.fallback_model

    async def _steps(self, turn: Turn, messages: List[Dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        draft = turn.draft
        for _ in range(turn.max_steps):
            if turn.signal.aborted:
                turn.aborted = True
                return
            try:
                system = await turn.signal.run(turn.system.get())
            except StreamAborted:
                turn.aborted = True
                return
            draft.parts.append(StepStartPart())
            request = StepRequest(
                model=draft.model,
                system=system,
                messages=messages,
                tools=turn.tools.definitions(),
            )
            calls: List[ToolCall] = []
            text_start = len(draft.parts)
            finished: Optional[StepFinished] = None

            stream = self.providers.for_model(draft.model).stream_step(request)
            try:
                while True:
                    event = await turn.signal.run(_next_event(stream))
                    if event is _EXHAUSTED:
                        break
                    if isinstance(event, TextDelta):
                        draft.append_text(event.text)
                        yield StreamEvent("text-delta", {"id": draft.message_id, "delta": event.text})
                    elif isinstance(event, ReasoningDelta):
                        draft.append_text(event.text, reasoning=True)
                        yield StreamEvent("reasoning-delta", {"id": draft.message_id, "delta": event.text})
                    elif isinstance(event, ToolCallReady):
                        calls.append(event.call)
                        draft.parts.append(
                            ToolPart(
                                tool_call_id=event.call.id,
                                tool_name=event.call.name,
                                state=ToolState.INPUT_AVAILABLE,
                                input=event.call.arguments,
                            )
                        )
                        yield StreamEvent(
                            "tool-input-available",
                            {
                                "toolCallId": event.call.id,
                                "toolName": event.call.name,
                                "input": event.call.arguments,
                            },
                        )
                    elif isinstance(event, StepFinished):
                        finished = event
            except StreamAborted:
                turn.aborted = True
                return
            finally:
                with contextlib.suppress(Exception):
                    await stream.aclose()

            if finished is not None:
                turn.usage.add(finished.finish_reason, finished.usage)
                draft.finish_reason = finished.finish_reason
            if not calls:
                return

            step_text = "".join(
                part.text for part in draft.parts[text_start:] if isinstance(part, TextPart)
            )
            messages.append(
                {
                    "role": "assistant",
                    "content": step_text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in calls
                    ],
                }
            )
            mutated = False
            for call in calls:
                part = self._tool_part(draft, call.id)
                async for event in self._execute_tool(turn, call, part, messages):
                    yield event
                if turn.aborted:
                    return
                if part.state == ToolState.OUTPUT_AVAILABLE and turn.tools.mutates_state(call.name):
                    mutated = True
            if mutated:
                turn.system.invalidate()
        logger.info("step_ceiling_reached", conversation_id=turn.conversation_id, steps=turn.max_steps)

    @staticmethod
    def _tool_part(draft: AssistantDraft, tool_call_id: str) -> ToolPart:
        for part in reversed(draft.parts):
            if isinstance(part, ToolPart) and part.tool_call_id == tool_call_id:
                return part
        raise KeyError(tool_call_id)

    async def _execute_tool(
        self,
        turn: Turn,
        call: ToolCall,
        part: ToolPart,
        messages: List[Dict[str, Any]],
    ) -> AsyncIterator[StreamEvent]:
        files_before = set(turn.tools.get_accumulated_files())
        try:
            output = await turn.signal.run(turn.tools.execute(call.name, call.arguments))
        except StreamAborted:
            # Promoted to output-available when the turn is finalized.
            part.output = interrupted_output(call.name)
            turn.aborted = True
            return
        except ToolInterrupted:
            output = interrupted_output(call.name)
        except ToolError as exc:
            part.fail(str(exc))
            messages.append({"role": "tool", "tool_call_id": call.id, "content": f"Error: {exc}"})
            yield StreamEvent("tool-output-error", {"toolCallId": call.id, "errorText": str(exc)})
            return

        part.complete(output)
        rendered = output if isinstance(output, str) else json.dumps(output, default=str)
        messages.append(
            {"role": "tool", "tool_call_id": call.id, "content": truncate_tool_output(rendered)}
        )
        yield StreamEvent("tool-output-available", {"toolCallId": call.id, "output": output})
        new_files = [f for f in turn.tools.get_accumulated_files() if f not in files_before]
        if new_files:
            yield StreamEvent("data-file-metadata", {"fileIds": new_files, "toolCallId": call.id})
