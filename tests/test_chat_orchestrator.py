"""Pipeline tests driving ChatOrchestrator directly with scripted providers."""

from __future__ import annotations

import asyncio
import json

import pytest

from chatrelay.config import Settings
from chatrelay.parts import TextPart
from chatrelay.service.budget import SESSION, BudgetLedger
from chatrelay.service.chat import OFFLINE_MESSAGE, ChatOrchestrator, ChatRequest
from chatrelay.service.errors import NotFoundError, ProviderError, RateLimitedError
from chatrelay.service.providers import ProviderRegistry, StepFinished, TextDelta, Usage
from chatrelay.service.tools import default_tool_registry
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import Message
from chatrelay.storage.redis_cache import LocalCache


class StallingProvider:
    """Streams one delta and then hangs until cancelled."""

    name = "stalling"

    async def stream_step(self, request):
        yield TextDelta("thinking ")
        await asyncio.sleep(30)
        yield StepFinished("stop", Usage(1, 1))

    async def complete(self, *, model, system, messages, max_tokens=None):
        return "Stalled Chat", Usage()

    async def aclose(self):
        return None


class FailingProvider:
    name = "failing"

    def __init__(self, error):
        self.error = error

    async def stream_step(self, request):
        raise self.error
        yield  # pragma: no cover

    async def complete(self, *, model, system, messages, max_tokens=None):
        return "", Usage()

    async def aclose(self):
        return None


def _orchestrator(provider, **settings):
    settings = Settings(**settings)
    store = MemoryStore()
    cache = LocalCache()
    orchestrator = ChatOrchestrator(
        settings=settings,
        store=store,
        cache=cache,
        providers=ProviderRegistry(provider),
        ledger=BudgetLedger(cache, settings),
        tools=default_tool_registry(),
    )
    user = store.create_user("orch@example.com", tier="pro")
    return orchestrator, store, cache, user


def _request(chat_id="c1", text="please help", **extra):
    return ChatRequest(
        chat_id=chat_id,
        messages=[{"id": "u1", "role": "user", "parts": [{"type": "text", "text": text}]}],
        **extra,
    )


def _events(frames):
    out = []
    for frame in frames:
        name = data = None
        for line in frame.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        out.append((name, data))
    return out


async def _wait_for_frame(cache, stream_id, event, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        frames = await cache.read_stream_frames(stream_id)
        if any(f"event: {event}\n" in frame for frame in frames):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{event} frame never arrived")


async def _collect(iterator):
    return [frame async for frame in iterator]


async def test_stop_mid_stream_finishes_without_reason():
    orchestrator, store, cache, user = _orchestrator(StallingProvider())
    session = await orchestrator.handle(_request(), user)
    reader = asyncio.create_task(_collect(session.frames()))
    await _wait_for_frame(cache, session.stream_id, "text-delta")

    await orchestrator.stop("c1", user)
    frames = await asyncio.wait_for(reader, timeout=2)

    events = _events(frames)
    assert events[-1][0] == "finish"
    assert events[-1][1]["finishReason"] is None
    conversation = store.get_conversation("c1")
    assert conversation.active_stream_id is None
    assert conversation.finish_reason is None
    assert conversation.title == "Stalled Chat"
    # Nothing was charged, so the clean abort leaves persistence to the client.
    assert [m.role for m in store.list_messages("c1")] == ["user"]


async def test_resume_replays_and_tails_live_stream():
    orchestrator, store, cache, user = _orchestrator(StallingProvider())
    session = await orchestrator.handle(_request(), user)
    original = asyncio.create_task(_collect(session.frames()))
    await _wait_for_frame(cache, session.stream_id, "text-delta")

    resumed_iter = await orchestrator.resume("c1", user)
    resumed = asyncio.create_task(_collect(resumed_iter))
    await asyncio.sleep(0.05)
    await orchestrator.stop("c1", user)

    original_frames = await asyncio.wait_for(original, timeout=2)
    resumed_frames = await asyncio.wait_for(resumed, timeout=2)
    assert resumed_frames == original_frames


async def test_resume_unknown_conversation_is_not_found():
    orchestrator, store, cache, user = _orchestrator(StallingProvider())
    with pytest.raises(NotFoundError):
        await orchestrator.resume("missing", user)


async def test_preemptive_deadline_finishes_with_timeout():
    # The chat endpoint allows 180s; a 179s buffer arms a 1s deadline.
    orchestrator, store, cache, user = _orchestrator(
        StallingProvider(), preemptive_safety_buffer_seconds=179
    )
    session = await orchestrator.handle(_request(), user)

    frames = await asyncio.wait_for(_collect(session.frames()), timeout=5)

    events = _events(frames)
    assert events[-1][0] == "finish"
    assert events[-1][1]["finishReason"] == "timeout"
    messages = store.list_messages("c1")
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].finish_reason == "timeout"
    assert store.get_conversation("c1").finish_reason == "timeout"


async def test_provider_error_ends_with_error_frame_and_refund():
    orchestrator, store, cache, user = _orchestrator(
        FailingProvider(ProviderError("model provider rejected the request (500)", provider_status=500))
    )
    session = await orchestrator.handle(_request(text="x" * 4000), user)

    frames = await asyncio.wait_for(_collect(session.frames()), timeout=2)

    name, data = _events(frames)[-1]
    assert name == "error"
    assert data["code"] == "provider_error"
    bucket = await orchestrator.ledger.peek(user.id, user.tier, SESSION)
    assert bucket.remaining == pytest.approx(8333, abs=1)
    assert store.get_conversation("c1").finish_reason == "error"


async def test_unexpected_error_is_reported_as_offline():
    orchestrator, store, cache, user = _orchestrator(FailingProvider(RuntimeError("socket closed")))
    session = await orchestrator.handle(_request(), user)

    frames = await asyncio.wait_for(_collect(session.frames()), timeout=2)

    name, data = _events(frames)[-1]
    assert name == "error"
    assert data == {"code": "offline", "message": OFFLINE_MESSAGE}


async def test_rejected_admission_writes_nothing():
    orchestrator, store, cache, user = _orchestrator(StallingProvider())
    await orchestrator.ledger.deduct(user.id, user.tier, SESSION, 8333)

    with pytest.raises(RateLimitedError):
        await orchestrator.handle(_request(text="x" * 4000), user)

    assert store.get_conversation("c1") is None


async def test_regenerate_is_not_applied_when_admission_fails():
    orchestrator, store, cache, user = _orchestrator(StallingProvider())
    store.create_conversation(user.id, conversation_id="c1")
    store.save_message(Message(id="u1", conversation_id="c1", role="user", parts=[TextPart(text="x" * 4000)]))
    store.save_message(Message(id="a1", conversation_id="c1", role="assistant", parts=[TextPart(text="old")]))
    await orchestrator.ledger.deduct(user.id, user.tier, SESSION, 8333)

    with pytest.raises(RateLimitedError):
        await orchestrator.handle(_request(regenerate=True), user)

    assert [m.id for m in store.list_messages("c1")] == ["u1", "a1"]


class HangingSummaryProvider:
    """Streams normally but never answers summarization requests."""

    name = "hanging-summary"

    def __init__(self):
        self.summarizing = asyncio.Event()

    async def stream_step(self, request):
        yield TextDelta("done")
        yield StepFinished("stop", Usage(1, 1))

    async def complete(self, *, model, system, messages, max_tokens=None):
        self.summarizing.set()
        await asyncio.sleep(30)
        return "never", Usage()

    async def aclose(self):
        return None


async def test_stop_during_summarization_finalizes_promptly():
    provider = HangingSummaryProvider()
    orchestrator, store, cache, user = _orchestrator(provider)
    store.create_conversation(user.id, conversation_id="c1")
    # Four 8000-token messages push the pro context past its summarization threshold.
    for i in range(4):
        store.save_message(
            Message(
                id=f"m{i}",
                conversation_id="c1",
                role="user" if i % 2 == 0 else "assistant",
                parts=[TextPart(text="x" * 32000)],
            )
        )

    session = await orchestrator.handle(_request(), user)
    await asyncio.wait_for(provider.summarizing.wait(), timeout=1)
    await orchestrator.stop("c1", user)

    # The finalizer must not sit out the usage wait when no step ever ran.
    await asyncio.wait_for(session.wait(), timeout=2)

    events = _events(await cache.read_stream_frames(session.stream_id))
    assert events[-1][0] == "finish"
    assert not any(name == "text-delta" for name, _ in events)
    assert store.get_conversation("c1").active_stream_id is None
