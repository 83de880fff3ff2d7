from __future__ import annotations

import asyncio
from typing import Optional

from chatrelay.config import HOST_MAX_DURATION_SECONDS
from chatrelay.logging import get_logger
from chatrelay.service.cancellation import PREEMPTIVE_TIMEOUT, AbortSignal

logger = get_logger(__name__)


class PreemptiveDeadline:
    """One-shot timer that aborts a stream shortly before the host kills it.

    ``is_preemptive`` tells the finalizer the abort came from the platform
    deadline rather than the user, so a finish reason is still recorded.
    """

    def __init__(
        self,
        conversation_id: str,
        signal: AbortSignal,
        delay_seconds: float,
    ) -> None:
        self.conversation_id = conversation_id
        self.signal = signal
        self.delay_seconds = max(0.0, delay_seconds)
        self.is_preemptive = False
        self._handle: Optional[asyncio.TimerHandle] = None

    def start(self) -> "PreemptiveDeadline":
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_seconds, self._fire)
        return self

    def _fire(self) -> None:
        self._handle = None
        if self.signal.abort(PREEMPTIVE_TIMEOUT):
            self.is_preemptive = True
            logger.warning(
                "preemptive_timeout_fired",
                conversation_id=self.conversation_id,
                delay_seconds=self.delay_seconds,
            )

    def clear(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    @property
    def active(self) -> bool:
        return self._handle is not None


def start_preemptive_deadline(
    conversation_id: str,
    endpoint: str,
    signal: AbortSignal,
    safety_buffer_seconds: float = 10,
) -> PreemptiveDeadline:
    """Arm a deadline at the endpoint's host limit minus ``safety_buffer_seconds``."""
    host_max = HOST_MAX_DURATION_SECONDS.get(endpoint, HOST_MAX_DURATION_SECONDS["chat"])
    return PreemptiveDeadline(
        conversation_id, signal, host_max - safety_buffer_seconds
    ).start()
