"""Tests for end-of-stream reconciliation."""

from __future__ import annotations

import asyncio

import pytest

from chatrelay.config import Settings
from chatrelay.parts import StepStartPart, TextPart, ToolPart, ToolState
from chatrelay.service.budget import SESSION, BudgetLedger
from chatrelay.service.cancellation import USER_STOP, AbortSignal
from chatrelay.service.deadline import PreemptiveDeadline
from chatrelay.service.finalizer import PersistenceFinalizer, Termination
from chatrelay.service.providers import Usage
from chatrelay.service.steps import AssistantDraft, SystemContext, Turn
from chatrelay.service.tools import (
    INTERRUPTED_OUTPUT,
    FileAccumulator,
    TodoManager,
    ToolContext,
    ToolSession,
    default_tool_registry,
)
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import Todo
from chatrelay.storage.redis_cache import LocalCache


class FlakyStore(MemoryStore):
    """Memory store whose message writes fail."""

    def __init__(self):
        super().__init__()
        self.save_attempts = 0

    def save_message(self, message, *, extra_file_ids=()):
        self.save_attempts += 1
        raise RuntimeError("disk full")


class RecordingSubscription:
    def __init__(self):
        self.stops = 0

    async def stop(self):
        self.stops += 1


async def _setup(store=None, tier="ultra", todos=()):
    store = store or MemoryStore()
    user = store.create_user("fin@example.com", tier=tier)
    store.create_conversation(user.id, conversation_id="c1")
    store.start_stream("c1", "s1")
    ledger = BudgetLedger(LocalCache(), Settings())
    rate_limit = await ledger.check_admission(user.id, tier, "ask", 1000)
    session = ToolSession(
        default_tool_registry(),
        ToolContext(
            user_id=user.id,
            conversation_id="c1",
            store=store,
            todos=TodoManager(todos),
            files=FileAccumulator(),
        ),
    )
    turn = Turn(
        conversation_id="c1",
        user_id=user.id,
        mode="ask",
        model="primary-model",
        fallback_model=None,
        messages=[],
        signal=AbortSignal(),
        tools=session,
        system=SystemContext("ask", tools=session),
        max_steps=5,
    )
    turn.draft = AssistantDraft(message_id="a1", model="primary-model")
    return store, ledger, rate_limit, user, turn


def _complete_turn(turn, text="All done.", usage=None):
    turn.draft.parts.extend([StepStartPart(), TextPart(text=text)])
    turn.usage.add("stop", usage or Usage(1000, 500_000))
    turn.usage.ready.set()


def _finalizer(store, ledger, rate_limit, user, turn, **kwargs):
    kwargs.setdefault("settings", Settings(usage_wait_timeout_seconds=0.05))
    return PersistenceFinalizer(
        store=store,
        ledger=ledger,
        turn=turn,
        user_id=user.id,
        tier=user.tier,
        rate_limit=rate_limit,
        **kwargs,
    )


class TestCompletedStream:
    async def test_persists_message_and_charges_usage(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn)
        subscription = RecordingSubscription()
        deadline = PreemptiveDeadline("c1", turn.signal, 60).start()
        finalizer = _finalizer(store, ledger, rate_limit, user, turn, subscription=subscription, deadline=deadline)
        finalizer.set_title("Greeting")

        result = await finalizer.finalize()

        assert result.termination == Termination.COMPLETED
        assert result.persisted is True
        assert result.message_id == "a1"
        assert result.finish_reason == "stop"
        assert result.charged == 15000
        assert subscription.stops == 1
        assert deadline.active is False

        messages = store.list_messages("c1")
        assert [m.id for m in messages] == ["a1"]
        assert messages[0].usage["outputTokens"] == 500_000
        assert messages[0].finish_reason == "stop"
        conversation = store.get_conversation("c1")
        assert conversation.title == "Greeting"
        assert conversation.finish_reason == "stop"
        assert conversation.active_stream_id is None

    async def test_concurrent_calls_finalize_once(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn)
        finalizer = _finalizer(store, ledger, rate_limit, user, turn)

        results = await asyncio.gather(*(finalizer.finalize() for _ in range(3)))

        assert results[0] is results[1] is results[2]
        assert len(store.list_messages("c1")) == 1
        session = await ledger.peek(user.id, user.tier, SESSION)
        assert session.remaining == pytest.approx(66667 - 5 - 15000, abs=1)

    async def test_changed_todos_are_merged_into_conversation(self):
        store, ledger, rate_limit, user, turn = await _setup(
            todos=[Todo(id="t1", content="draft", status="pending")]
        )
        turn.tools.todos.apply([Todo(id="t1", content="draft", status="completed"), Todo(id="t2", content="review")])
        _complete_turn(turn)

        await _finalizer(
            store, ledger, rate_limit, user, turn,
            conversation_todos=[Todo(id="t1", content="draft", status="pending")],
        ).finalize()

        todos = store.get_conversation("c1").todos
        assert [(t.id, t.status) for t in todos] == [("t1", "completed"), ("t2", "pending")]


class TestUserAbort:
    async def test_clean_abort_skips_persistence(self):
        store, ledger, rate_limit, user, turn = await _setup()
        turn.signal.abort(USER_STOP)
        turn.usage.ready.set()

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize()

        assert result.termination == Termination.USER_ABORT
        assert result.persisted is False
        assert result.finish_reason is None
        assert store.list_messages("c1") == []
        assert store.get_conversation("c1").active_stream_id is None

    async def test_abort_with_partial_output_persists_without_finish_reason(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn, text="Half an ans", usage=Usage(1000, 10))
        turn.signal.abort(USER_STOP)

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize()

        assert result.persisted is True
        assert result.finish_reason is None
        conversation = store.get_conversation("c1")
        assert conversation.finish_reason is None
        assert conversation.active_stream_id is None

    async def test_interrupted_tool_is_promoted_before_save(self):
        store, ledger, rate_limit, user, turn = await _setup()
        turn.draft.parts.extend(
            [
                StepStartPart(),
                ToolPart(
                    tool_call_id="call_1",
                    tool_name="slow_lookup",
                    state=ToolState.INPUT_AVAILABLE,
                    input={},
                    output=INTERRUPTED_OUTPUT,
                ),
                StepStartPart(),
                ToolPart(tool_call_id="call_2", tool_name="slow_lookup", state=ToolState.INPUT_STREAMING),
            ]
        )
        turn.signal.abort(USER_STOP)
        turn.usage.ready.set()

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize()

        assert result.persisted is True
        saved = store.list_messages("c1")[0]
        tool_parts = [p for p in saved.parts if isinstance(p, ToolPart)]
        assert len(tool_parts) == 1
        assert tool_parts[0].state == ToolState.OUTPUT_AVAILABLE
        assert tool_parts[0].output == INTERRUPTED_OUTPUT
        assert len(saved.parts) == 2


class TestOtherTerminations:
    async def test_preemptive_timeout_records_timeout_reason(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn)
        deadline = PreemptiveDeadline("c1", turn.signal, 0).start()
        await asyncio.sleep(0.01)

        result = await _finalizer(store, ledger, rate_limit, user, turn, deadline=deadline).finalize()

        assert result.termination == Termination.TIMEOUT
        assert result.finish_reason == "timeout"
        assert store.get_conversation("c1").finish_reason == "timeout"
        assert result.charged > 0

    async def test_error_skips_usage_charge(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn)

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize(error=RuntimeError("boom"))

        assert result.termination == Termination.ERROR
        assert result.finish_reason == "error"
        assert result.charged == 0

    async def test_temporary_chat_is_not_persisted(self):
        store, ledger, rate_limit, user, turn = await _setup()
        _complete_turn(turn)

        result = await _finalizer(store, ledger, rate_limit, user, turn, temporary=True).finalize()

        assert result.persisted is False
        assert store.list_messages("c1") == []
        assert result.charged == 15000

    async def test_missing_usage_signal_times_out(self):
        store, ledger, rate_limit, user, turn = await _setup()
        turn.draft.parts.append(TextPart(text="no usage ever came"))

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize()

        assert result.persisted is True
        assert result.charged == 0


class TestStepIsolation:
    async def test_failed_save_does_not_block_later_steps(self):
        store, ledger, rate_limit, user, turn = await _setup(store=FlakyStore())
        _complete_turn(turn)

        result = await _finalizer(store, ledger, rate_limit, user, turn).finalize()

        assert store.save_attempts == 1
        assert result.persisted is False
        assert result.charged == 15000
        conversation = store.get_conversation("c1")
        assert conversation.finish_reason == "stop"
        assert conversation.active_stream_id is None
