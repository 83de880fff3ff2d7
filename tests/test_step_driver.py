"""Tests for the multi-step generation loop and fallback handling."""

from __future__ import annotations

import asyncio

import pytest

from chatrelay.config import Settings
from chatrelay.parts import StepStartPart, TextPart, ToolPart, ToolState
from chatrelay.service.cancellation import USER_STOP, AbortSignal
from chatrelay.service.errors import ProviderError
from chatrelay.service.providers import (
    ProviderRegistry,
    StepFinished,
    TextDelta,
    ToolCall,
    ToolCallReady,
    Usage,
)
from chatrelay.service.steps import FallbackState, StepDriver, SystemContext, Turn
from chatrelay.service.tools import (
    INTERRUPTED_OUTPUT,
    ToolContext,
    ToolSession,
    ToolSpec,
    default_tool_registry,
)
from chatrelay.storage.memory import MemoryStore


class ScriptedProvider:
    """Plays back one scripted step per ``stream_step`` call.

    A script is a list of model events, an exception to raise, or a float
    meaning "stall for this many seconds".
    """

    name = "scripted"

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.requests = []

    async def stream_step(self, request):
        self.requests.append(
            {"model": request.model, "system": request.system, "messages": list(request.messages)}
        )
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        for item in script:
            if isinstance(item, float):
                await asyncio.sleep(item)
            else:
                yield item

    async def complete(self, *, model, system, messages, max_tokens=None):
        return "", Usage()

    async def aclose(self):
        return None


def _text_step(text, input_tokens=10, output_tokens=5):
    return [TextDelta(text), StepFinished("stop", Usage(input_tokens, output_tokens))]


def _tool_step(call_id, name, arguments):
    return [
        ToolCallReady(ToolCall(id=call_id, name=name, arguments=arguments)),
        StepFinished("tool_calls", Usage(20, 10)),
    ]


def _validation_error():
    return ProviderError(
        "model provider rejected the request (400)",
        provider_status=400,
        body='{"error": {"status": "INVALID_ARGUMENT"}}',
        retryable=True,
    )


async def _slow_tool(arguments, context):
    await asyncio.sleep(10)
    return "done"


SLOW_TOOL = ToolSpec(
    name="slow_lookup",
    description="Takes a long time.",
    parameters={"type": "object", "properties": {}},
    handler=_slow_tool,
)


def _turn(max_steps=5, fallback_model="fallback-model", registry=None):
    store = MemoryStore()
    user = store.create_user("driver@example.com", tier="pro")
    session = ToolSession(
        registry or default_tool_registry(),
        ToolContext(user_id=user.id, conversation_id="c1", store=store),
    )
    return Turn(
        conversation_id="c1",
        user_id=user.id,
        mode="agent",
        model="primary-model",
        fallback_model=fallback_model,
        messages=[{"role": "user", "content": "hello"}],
        signal=AbortSignal(),
        tools=session,
        system=SystemContext("agent", store=store, user_id=user.id, tools=session),
        max_steps=max_steps,
    )


async def _drive(provider, turn):
    driver = StepDriver(ProviderRegistry(provider), Settings())
    return [event async for event in driver.run(turn)]


class TestSingleStep:
    async def test_text_answer_streams_and_records_usage(self):
        provider = ScriptedProvider([_text_step("Hi there")])
        turn = _turn()

        events = await _drive(provider, turn)

        assert [e.event for e in events] == ["start", "text-delta"]
        assert events[0].data == {"messageId": turn.draft.message_id, "model": "primary-model"}
        assert events[1].data["delta"] == "Hi there"
        assert isinstance(turn.draft.parts[0], StepStartPart)
        assert turn.draft.parts[1] == TextPart(text="Hi there")
        assert turn.usage.usage.input_tokens == 10
        assert turn.usage.last_finish_reason == "stop"
        assert turn.usage.ready.is_set()
        assert turn.fallback == FallbackState.PRIMARY

    async def test_consecutive_deltas_merge_into_one_text_part(self):
        provider = ScriptedProvider(
            [[TextDelta("Hel"), TextDelta("lo"), StepFinished("stop", Usage(1, 1))]]
        )
        turn = _turn()

        await _drive(provider, turn)

        assert [p for p in turn.draft.parts if isinstance(p, TextPart)] == [TextPart(text="Hello")]


class TestToolSteps:
    async def test_tool_result_is_fed_into_next_step(self):
        provider = ScriptedProvider(
            [
                _tool_step("call_1", "todo_write", {"todos": [{"id": "t1", "content": "plan", "status": "pending"}]}),
                _text_step("Planned."),
            ]
        )
        turn = _turn()

        events = await _drive(provider, turn)

        names = [e.event for e in events]
        assert names == ["start", "tool-input-available", "tool-output-available", "text-delta"]
        assert len(provider.requests) == 2
        follow_up = provider.requests[1]["messages"]
        assert follow_up[1]["role"] == "assistant"
        assert follow_up[1]["tool_calls"][0]["id"] == "call_1"
        assert follow_up[2]["role"] == "tool"
        assert follow_up[2]["tool_call_id"] == "call_1"

        tool_part = next(p for p in turn.draft.parts if isinstance(p, ToolPart))
        assert tool_part.state == ToolState.OUTPUT_AVAILABLE
        assert turn.tools.todos.changed
        assert [t.id for t in turn.tools.todos.items] == ["t1"]
        assert turn.usage.steps == 2
        assert turn.usage.usage.input_tokens == 30

    async def test_state_mutating_tool_rebuilds_system_context(self):
        provider = ScriptedProvider(
            [
                _tool_step("call_1", "update_memory", {"content": "prefers tea"}),
                _text_step("Noted."),
            ]
        )
        turn = _turn()

        await _drive(provider, turn)

        assert turn.system.builds == 2
        assert "prefers tea" not in provider.requests[0]["system"]
        assert "prefers tea" in provider.requests[1]["system"]

    async def test_non_mutating_tool_reuses_system_context(self):
        provider = ScriptedProvider(
            [
                _tool_step("call_1", "todo_write", {"todos": [{"id": "t1", "content": "a"}]}),
                _text_step("ok"),
            ]
        )
        turn = _turn()

        await _drive(provider, turn)

        assert turn.system.builds == 1

    async def test_invalid_tool_arguments_become_output_error(self):
        provider = ScriptedProvider(
            [_tool_step("call_1", "todo_write", {}), _text_step("Sorry.")]
        )
        turn = _turn()

        events = await _drive(provider, turn)

        error = next(e for e in events if e.event == "tool-output-error")
        assert error.data["toolCallId"] == "call_1"
        assert "invalid arguments" in error.data["errorText"]
        tool_part = next(p for p in turn.draft.parts if isinstance(p, ToolPart))
        assert tool_part.state == ToolState.OUTPUT_ERROR
        assert provider.requests[1]["messages"][2]["content"].startswith("Error:")

    async def test_step_ceiling_stops_the_loop(self):
        provider = ScriptedProvider(
            [
                _tool_step(f"call_{i}", "todo_write", {"todos": [{"id": f"t{i}", "content": "x"}]})
                for i in range(5)
            ]
        )
        turn = _turn(max_steps=2)

        events = await _drive(provider, turn)

        assert len(provider.requests) == 2
        assert sum(1 for e in events if e.event == "tool-output-available") == 2
        assert turn.usage.steps == 2


class TestFallback:
    async def test_validation_error_retries_once_on_fallback_model(self):
        provider = ScriptedProvider([_validation_error(), _text_step("From fallback")])
        turn = _turn()

        events = await _drive(provider, turn)

        starts = [e for e in events if e.event == "start"]
        assert len(starts) == 2
        assert starts[0].data["messageId"] != starts[1].data["messageId"]
        assert starts[1].data["model"] == "fallback-model"
        assert [r["model"] for r in provider.requests] == ["primary-model", "fallback-model"]
        assert turn.fallback == FallbackState.FALLBACK_ATTEMPTED
        assert turn.discarded_message_ids == [starts[0].data["messageId"]]
        assert turn.draft.message_id == starts[1].data["messageId"]
        assert turn.draft.model == "fallback-model"
        assert TextPart(text="From fallback") in turn.draft.parts

    async def test_second_validation_error_propagates(self):
        provider = ScriptedProvider([_validation_error(), _validation_error()])
        turn = _turn()

        with pytest.raises(ProviderError):
            await _drive(provider, turn)

        assert len(provider.requests) == 2
        assert turn.usage.ready.is_set()

    async def test_non_retryable_error_does_not_fall_back(self):
        provider = ScriptedProvider([ProviderError("upstream down", provider_status=503)])
        turn = _turn()

        with pytest.raises(ProviderError):
            await _drive(provider, turn)

        assert len(provider.requests) == 1
        assert turn.fallback == FallbackState.PRIMARY

    async def test_empty_primary_answer_falls_back(self):
        provider = ScriptedProvider(
            [[StepFinished("stop", Usage(5, 0))], _text_step("Second try")]
        )
        turn = _turn()

        await _drive(provider, turn)

        assert [r["model"] for r in provider.requests] == ["primary-model", "fallback-model"]
        assert TextPart(text="Second try") in turn.draft.parts

    async def test_no_fallback_model_configured(self):
        provider = ScriptedProvider([_validation_error()])
        turn = _turn(fallback_model=None)

        with pytest.raises(ProviderError):
            await _drive(provider, turn)


class TestAbort:
    async def test_abort_mid_stream_keeps_partial_text(self):
        provider = ScriptedProvider([[TextDelta("partial "), 10.0, TextDelta("never")]])
        turn = _turn()
        asyncio.get_running_loop().call_later(0.05, turn.signal.abort, USER_STOP)

        events = await _drive(provider, turn)

        assert [e.event for e in events] == ["start", "text-delta"]
        assert turn.aborted is True
        assert TextPart(text="partial ") in turn.draft.parts
        assert turn.usage.ready.is_set()
        assert turn.fallback == FallbackState.PRIMARY

    async def test_abort_during_tool_marks_output_interrupted(self):
        provider = ScriptedProvider([_tool_step("call_1", "slow_lookup", {})])
        turn = _turn(registry=default_tool_registry([SLOW_TOOL]))
        asyncio.get_running_loop().call_later(0.05, turn.signal.abort, USER_STOP)

        events = await _drive(provider, turn)

        assert "tool-output-available" not in [e.event for e in events]
        part = next(p for p in turn.draft.parts if isinstance(p, ToolPart))
        assert part.state == ToolState.INPUT_AVAILABLE
        assert part.output == INTERRUPTED_OUTPUT
        assert turn.aborted is True
        assert len(provider.requests) == 1

    async def test_already_aborted_turn_makes_no_provider_call(self):
        provider = ScriptedProvider([_text_step("unused")])
        turn = _turn()
        turn.signal.abort(USER_STOP)

        events = await _drive(provider, turn)

        assert [e.event for e in events] == ["start"]
        assert provider.requests == []
