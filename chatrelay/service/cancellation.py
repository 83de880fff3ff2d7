"""Cooperative cancellation for in-flight streams.

An :class:`AbortSignal` is threaded through a stream's stages. Both a user
stop (delivered over pub/sub, or found by polling the stored flag) and the
preemptive deadline resolve to the same ``abort()`` call, and every stage
observes that one signal at its suspension points.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Callable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.redis_cache import cancel_channel

logger = get_logger(__name__)

USER_STOP = "user_stop"
PREEMPTIVE_TIMEOUT = "preemptive_timeout"
CANCEL_FLAG_TTL_SECONDS = 60 * 60


class StreamAborted(Exception):
    """Raised at a suspension point once the signal has fired."""

    def __init__(self, reason: Optional[str]) -> None:
        super().__init__(reason or "aborted")
        self.reason = reason


class AbortSignal:
    """Cancellation token; the first ``abort()`` wins and listeners fire once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self._listeners: List[Callable[[str], Any]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception as exc:
                logger.error("abort_listener_failed", reason=reason, error=str(exc))
        return True

    def add_listener(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        """Register ``listener`` to run once on abort. Returns a remover."""
        if self.aborted:
            listener(self.reason or "aborted")
            return lambda: None
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise StreamAborted(self.reason)

    async def run(self, awaitable):
        """Await ``awaitable`` unless the signal fires first.

        On abort the pending work is cancelled and :class:`StreamAborted`
        is raised.
        """
        self.raise_if_aborted()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        raise StreamAborted(self.reason)


class _Subscriber:
    kind = "base"

    def __init__(
        self,
        conversation_id: str,
        signal: AbortSignal,
        on_stopped: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.signal = signal
        self.on_stopped = on_stopped
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def _trigger(self) -> None:
        # abort() returns False when another mechanism already fired.
        if not self.signal.abort(USER_STOP):
            return
        logger.info("stream_cancel_received", conversation_id=self.conversation_id, via=self.kind)
        if self.on_stopped is not None:
            try:
                self.on_stopped()
            except Exception as exc:
                logger.error("on_stopped_failed", conversation_id=self.conversation_id, error=str(exc))

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        await self._cancel_task()


class PubSubCancellationSubscriber(_Subscriber):
    """Listens on ``cancel:{conversation_id}`` for ``{"canceled": true}``."""

    kind = "pubsub"

    def __init__(self, conversation_id, signal, on_stopped=None, *, cache) -> None:
        super().__init__(conversation_id, signal, on_stopped)
        self.cache = cache
        self._subscription = None

    async def start(self) -> "PubSubCancellationSubscriber":
        self._subscription = await self.cache.subscribe(cancel_channel(self.conversation_id))
        # A stop issued before the subscription existed only left the flag.
        if await self.cache.get_cancel_flag(self.conversation_id):
            self._trigger()
        self._task = asyncio.create_task(self._listen())
        return self

    async def _listen(self) -> None:
        try:
            async for payload in self._subscription.messages():
                if payload.get("canceled"):
                    self._trigger()
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "cancel_subscription_failed",
                conversation_id=self.conversation_id,
                error=str(exc),
            )

    async def stop(self) -> None:
        if self._stopped:
            return
        await super().stop()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as exc:
                logger.warning(
                    "cancel_unsubscribe_failed",
                    conversation_id=self.conversation_id,
                    error=str(exc),
                )


class PollingCancellationSubscriber(_Subscriber):
    """Reads the stored cancellation flag every ``poll_interval`` seconds."""

    kind = "poll"

    def __init__(
        self, conversation_id, signal, on_stopped=None, *, store, poll_interval: float = 1.0
    ) -> None:
        super().__init__(conversation_id, signal, on_stopped)
        self.store = store
        self.poll_interval = poll_interval

    async def start(self) -> "PollingCancellationSubscriber":
        self._task = asyncio.create_task(self._poll())
        return self

    async def _poll(self) -> None:
        while not self._stopped and not self.signal.aborted:
            await asyncio.sleep(self.poll_interval)
            try:
                canceled_at = await asyncio.to_thread(
                    self.store.get_cancellation_status, self.conversation_id
                )
            except Exception as exc:
                logger.warning(
                    "cancel_poll_failed", conversation_id=self.conversation_id, error=str(exc)
                )
                continue
            if canceled_at is not None:
                self._trigger()
                return


async def subscribe_cancellation(
    conversation_id: str,
    signal: AbortSignal,
    on_stopped: Optional[Callable[[], Any]] = None,
    *,
    cache=None,
    store=None,
    poll_interval: float = 1.0,
):
    """Start the push subscriber when a pub/sub cache is available, else poll."""
    if cache is not None and getattr(cache, "supports_pubsub", False):
        try:
            return await PubSubCancellationSubscriber(
                conversation_id, signal, on_stopped, cache=cache
            ).start()
        except Exception as exc:
            logger.warning(
                "cancel_pubsub_unavailable", conversation_id=conversation_id, error=str(exc)
            )
    if store is None:
        raise ValueError("polling cancellation needs a store")
    return await PollingCancellationSubscriber(
        conversation_id, signal, on_stopped, store=store, poll_interval=poll_interval
    ).start()


async def request_cancellation(conversation_id: str, *, store, cache=None) -> None:
    """Stop action: record the flag, then notify any live subscriber."""
    await asyncio.to_thread(store.set_canceled, conversation_id)
    if cache is None:
        return
    await cache.set_cancel_flag(conversation_id, CANCEL_FLAG_TTL_SECONDS)
    receivers = await cache.publish(cancel_channel(conversation_id), {"canceled": True})
    logger.info("stream_cancel_requested", conversation_id=conversation_id, receivers=receivers)


async def clear_cancellation(conversation_id: str, *, cache=None) -> None:
    """Drop a stale flag before a new stream on the conversation starts."""
    if cache is not None:
        await cache.clear_cancel_flag(conversation_id)
