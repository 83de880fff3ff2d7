"""Tests for the abort signal, stop delivery and the preemptive deadline."""

from __future__ import annotations

import asyncio

import pytest

from chatrelay.service.cancellation import (
    PREEMPTIVE_TIMEOUT,
    USER_STOP,
    AbortSignal,
    PollingCancellationSubscriber,
    PubSubCancellationSubscriber,
    StreamAborted,
    clear_cancellation,
    request_cancellation,
    subscribe_cancellation,
)
from chatrelay.service.deadline import PreemptiveDeadline, start_preemptive_deadline
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.redis_cache import LocalCache, cancel_channel


def _store_with_conversation(conversation_id: str = "c1") -> MemoryStore:
    store = MemoryStore()
    user = store.create_user("owner@example.com", tier="pro")
    store.create_conversation(user.id, conversation_id=conversation_id)
    return store


class TestAbortSignal:
    async def test_first_abort_wins(self):
        signal = AbortSignal()
        assert signal.abort(USER_STOP) is True
        assert signal.abort(PREEMPTIVE_TIMEOUT) is False
        assert signal.aborted
        assert signal.reason == USER_STOP

    async def test_listeners_fire_once(self):
        signal = AbortSignal()
        calls = []
        signal.add_listener(calls.append)
        signal.abort(USER_STOP)
        signal.abort(USER_STOP)
        assert calls == [USER_STOP]

    async def test_listener_added_after_abort_runs_immediately(self):
        signal = AbortSignal()
        signal.abort(PREEMPTIVE_TIMEOUT)
        calls = []
        signal.add_listener(calls.append)
        assert calls == [PREEMPTIVE_TIMEOUT]

    async def test_removed_listener_is_not_called(self):
        signal = AbortSignal()
        calls = []
        remove = signal.add_listener(calls.append)
        remove()
        signal.abort(USER_STOP)
        assert calls == []

    async def test_failing_listener_does_not_block_others(self):
        signal = AbortSignal()
        calls = []

        def boom(reason):
            raise RuntimeError("listener exploded")

        signal.add_listener(boom)
        signal.add_listener(calls.append)
        signal.abort(USER_STOP)
        assert calls == [USER_STOP]

    async def test_run_returns_result_when_not_aborted(self):
        signal = AbortSignal()

        async def work():
            await asyncio.sleep(0)
            return 42

        assert await signal.run(work()) == 42

    async def test_run_cancels_pending_work_on_abort(self):
        signal = AbortSignal()
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.01, signal.abort, USER_STOP)
        with pytest.raises(StreamAborted) as exc_info:
            await signal.run(slow())
        assert exc_info.value.reason == USER_STOP
        assert cancelled.is_set()

    async def test_run_raises_immediately_when_already_aborted(self):
        signal = AbortSignal()
        signal.abort(USER_STOP)

        async def work():
            return 1

        coro = work()
        with pytest.raises(StreamAborted):
            await signal.run(coro)
        coro.close()


class TestPubSubDelivery:
    async def test_published_stop_aborts_signal(self):
        cache = LocalCache()
        store = _store_with_conversation()
        signal = AbortSignal()
        sub = await PubSubCancellationSubscriber("c1", signal, cache=cache).start()

        await request_cancellation("c1", store=store, cache=cache)
        await asyncio.wait_for(signal.wait(), timeout=1)

        assert signal.reason == USER_STOP
        assert store.get_cancellation_status("c1") is not None
        await sub.stop()

    async def test_stop_issued_before_subscribe_is_honoured(self):
        cache = LocalCache()
        await cache.set_cancel_flag("c1", 60)
        signal = AbortSignal()

        sub = await PubSubCancellationSubscriber("c1", signal, cache=cache).start()

        assert signal.aborted
        await sub.stop()

    async def test_cleared_flag_does_not_abort_new_stream(self):
        cache = LocalCache()
        await cache.set_cancel_flag("c1", 60)
        await clear_cancellation("c1", cache=cache)
        signal = AbortSignal()

        sub = await PubSubCancellationSubscriber("c1", signal, cache=cache).start()

        assert not signal.aborted
        await sub.stop()

    async def test_unrelated_payload_is_ignored(self):
        cache = LocalCache()
        signal = AbortSignal()
        sub = await PubSubCancellationSubscriber("c1", signal, cache=cache).start()

        await cache.publish(cancel_channel("c1"), {"canceled": False})
        await asyncio.sleep(0.01)

        assert not signal.aborted
        await sub.stop()

    async def test_stop_releases_subscription(self):
        cache = LocalCache()
        signal = AbortSignal()
        sub = await PubSubCancellationSubscriber("c1", signal, cache=cache).start()
        task = sub._task

        await sub.stop()
        await sub.stop()

        assert task.done()
        assert not cache._subscribers.get(cancel_channel("c1"))
        assert await cache.publish(cancel_channel("c1"), {"canceled": True}) == 0
        assert not signal.aborted


class TestPollingDelivery:
    async def test_poll_picks_up_stored_flag(self):
        store = _store_with_conversation()
        signal = AbortSignal()
        sub = await PollingCancellationSubscriber(
            "c1", signal, store=store, poll_interval=0.01
        ).start()

        await request_cancellation("c1", store=store, cache=None)
        await asyncio.wait_for(signal.wait(), timeout=1)

        assert signal.reason == USER_STOP
        await sub.stop()

    async def test_subscribe_without_pubsub_falls_back_to_polling(self):
        store = _store_with_conversation()
        signal = AbortSignal()

        sub = await subscribe_cancellation("c1", signal, store=store, poll_interval=0.01)

        assert isinstance(sub, PollingCancellationSubscriber)
        await sub.stop()
        assert sub._task is None

    async def test_polling_needs_a_store(self):
        with pytest.raises(ValueError):
            await subscribe_cancellation("c1", AbortSignal())


class TestExactlyOnce:
    async def test_both_mechanisms_trigger_one_stop(self):
        cache = LocalCache()
        store = _store_with_conversation()
        signal = AbortSignal()
        stopped = []

        def on_stopped():
            stopped.append(True)

        pubsub = await PubSubCancellationSubscriber("c1", signal, on_stopped, cache=cache).start()
        poller = await PollingCancellationSubscriber(
            "c1", signal, on_stopped, store=store, poll_interval=0.01
        ).start()

        await request_cancellation("c1", store=store, cache=cache)
        await asyncio.wait_for(signal.wait(), timeout=1)
        await asyncio.sleep(0.05)

        assert stopped == [True]
        await pubsub.stop()
        await poller.stop()

    async def test_deadline_after_user_stop_is_ignored(self):
        signal = AbortSignal()
        signal.abort(USER_STOP)
        deadline = PreemptiveDeadline("c1", signal, 0).start()
        await asyncio.sleep(0.01)

        assert signal.reason == USER_STOP
        assert deadline.is_preemptive is False


class TestPreemptiveDeadline:
    async def test_fires_with_timeout_reason(self):
        signal = AbortSignal()
        deadline = PreemptiveDeadline("c1", signal, 0.01).start()
        await asyncio.wait_for(signal.wait(), timeout=1)

        assert signal.reason == PREEMPTIVE_TIMEOUT
        assert deadline.is_preemptive is True
        assert deadline.active is False

    async def test_clear_prevents_firing(self):
        signal = AbortSignal()
        deadline = PreemptiveDeadline("c1", signal, 0.01).start()
        deadline.clear()
        deadline.clear()
        await asyncio.sleep(0.03)

        assert not signal.aborted
        assert deadline.active is False

    async def test_delay_is_host_limit_minus_buffer(self):
        chat = start_preemptive_deadline("c1", "chat", AbortSignal(), 10)
        agent = start_preemptive_deadline("c1", "agent", AbortSignal(), 10)
        unknown = start_preemptive_deadline("c1", "other", AbortSignal(), 10)
        try:
            assert chat.delay_seconds == 170
            assert agent.delay_seconds == 790
            assert unknown.delay_seconds == 170
        finally:
            for deadline in (chat, agent, unknown):
                deadline.clear()
