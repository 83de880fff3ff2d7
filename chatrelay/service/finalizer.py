"""Exactly-once reconciliation at the end of a stream.

:class:`PersistenceFinalizer` is created per stream and may be invoked from
several exit paths; only the first call does any work. Each step runs in
isolation so one failing step never prevents the ones after it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.parts import has_usable_content, incomplete_tool_parts, repair_incomplete_tool_parts
from chatrelay.service.budget import BudgetLedger, RateLimitInfo
from chatrelay.service.cancellation import PREEMPTIVE_TIMEOUT, USER_STOP
from chatrelay.service.deadline import PreemptiveDeadline
from chatrelay.service.steps import Turn
from chatrelay.service.tools import merge_todos
from chatrelay.storage.models import Todo

logger = get_logger(__name__)

TIMEOUT_FINISH_REASON = "timeout"
ERROR_FINISH_REASON = "error"


class Termination(str, Enum):
    COMPLETED = "completed"
    USER_ABORT = "user_abort"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class FinalizeResult:
    termination: Termination
    persisted: bool = False
    message_id: Optional[str] = None
    finish_reason: Optional[str] = None
    charged: int = 0


class PersistenceFinalizer:
    def __init__(
        self,
        *,
        store,
        ledger: Optional[BudgetLedger],
        settings: Settings,
        turn: Turn,
        user_id: str,
        tier: str,
        rate_limit: Optional[RateLimitInfo] = None,
        deadline: Optional[PreemptiveDeadline] = None,
        subscription=None,
        temporary: bool = False,
        conversation_todos: Optional[List[Todo]] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.settings = settings
        self.turn = turn
        self.user_id = user_id
        self.tier = tier
        self.rate_limit = rate_limit
        self.deadline = deadline
        self.subscription = subscription
        self.temporary = temporary
        self.conversation_todos = list(conversation_todos or [])
        self.title: Optional[str] = None
        self.finalized = False
        self.deducted = False
        self.result: Optional[FinalizeResult] = None
        self._lock = asyncio.Lock()

    @property
    def conversation_id(self) -> str:
        return self.turn.conversation_id

    def set_title(self, title: Optional[str]) -> None:
        self.title = title

    def termination(self, error: Optional[BaseException]) -> Termination:
        if self.deadline is not None and self.deadline.is_preemptive:
            return Termination.TIMEOUT
        if self.turn.signal.aborted:
            if self.turn.signal.reason == PREEMPTIVE_TIMEOUT:
                return Termination.TIMEOUT
            if self.turn.signal.reason == USER_STOP:
                return Termination.USER_ABORT
        if error is not None:
            return Termination.ERROR
        return Termination.COMPLETED

    async def _step(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fn()
        except Exception as exc:
            logger.error(
                "finalize_step_failed",
                step=name,
                conversation_id=self.conversation_id,
                error=str(exc),
            )
            return None

    async def finalize(self, *, error: Optional[BaseException] = None) -> FinalizeResult:
        async with self._lock:
            if self.finalized:
                return self.result
            self.finalized = True
            self.result = await self._run(error)
            return self.result

    async def _run(self, error: Optional[BaseException]) -> FinalizeResult:
        termination = self.termination(error)
        result = FinalizeResult(termination=termination)

        await self._step("stop_timers", self._stop_timers)
        await self._step("await_usage", self._await_usage)

        draft = self.turn.draft
        parts = list(draft.parts) if draft is not None else []
        file_ids = self.turn.tools.get_accumulated_files()
        usage = self.turn.usage.usage

        skip = (
            termination == Termination.USER_ABORT
            and not file_ids
            and not incomplete_tool_parts(parts)
            and usage.empty
        )
        result.finish_reason = self._finish_reason(termination)

        if self.temporary:
            logger.info("finalize_temporary", conversation_id=self.conversation_id)
        elif skip:
            logger.info("finalize_skipped_clean_abort", conversation_id=self.conversation_id)
            await self._step(
                "update_conversation", lambda: self._update_conversation(None, None)
            )
        else:
            repaired = await self._step("repair_tool_parts", lambda: self._repair(parts))
            if repaired is not None:
                parts = repaired
            todos = await self._step("merge_todos", self._merge_todos)
            saved = await self._step(
                "save_message",
                lambda: self._save_message(parts, file_ids, result.finish_reason),
            )
            if saved:
                result.persisted = True
                result.message_id = saved
            await self._step(
                "update_conversation",
                lambda: self._update_conversation(result.finish_reason, todos),
            )

        if termination != Termination.ERROR:
            charged = await self._step("deduct_usage", self._deduct_usage)
            result.charged = charged or 0

        logger.info(
            "stream_finalized",
            conversation_id=self.conversation_id,
            termination=termination.value,
            persisted=result.persisted,
            finish_reason=result.finish_reason,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return result

    def _finish_reason(self, termination: Termination) -> Optional[str]:
        if termination == Termination.USER_ABORT:
            return None
        if termination == Termination.TIMEOUT:
            return TIMEOUT_FINISH_REASON
        if termination == Termination.ERROR:
            return ERROR_FINISH_REASON
        return self.turn.usage.last_finish_reason or "stop"

    async def _stop_timers(self) -> None:
        if self.deadline is not None:
            self.deadline.clear()
        if self.subscription is not None:
            await self.subscription.stop()

    async def _await_usage(self) -> None:
        if not await self.turn.usage.wait(self.settings.usage_wait_timeout_seconds):
            logger.warning("usage_wait_timed_out", conversation_id=self.conversation_id)

    async def _repair(self, parts):
        dangling = incomplete_tool_parts(parts)
        if dangling:
            logger.info(
                "repairing_tool_parts",
                conversation_id=self.conversation_id,
                tool_call_ids=[part.tool_call_id for part in dangling],
            )
        return repair_incomplete_tool_parts(parts)

    async def _merge_todos(self) -> Optional[List[Todo]]:
        manager = self.turn.tools.todos
        if not manager.changed:
            return None
        return merge_todos(self.conversation_todos, manager.items)

    async def _save_message(self, parts, file_ids: List[str], finish_reason: Optional[str]) -> Optional[str]:
        draft = self.turn.draft
        if draft is None or not (has_usable_content(parts) or file_ids):
            return None
        draft.parts = parts
        draft.finish_reason = finish_reason
        message = draft.to_message(self.conversation_id, self.turn.usage.usage, file_ids)
        await asyncio.to_thread(self.store.save_message, message)
        return message.id

    async def _update_conversation(self, finish_reason: Optional[str], todos: Optional[List[Todo]]) -> None:
        fields: Dict[str, Any] = {}
        if self.title:
            fields["title"] = self.title
        if finish_reason is not None:
            fields["finish_reason"] = finish_reason
        if todos is not None:
            fields["todos"] = todos
        if not fields:
            await self._clear_active_stream()
            return
        fields["active_stream_id"] = None
        await asyncio.to_thread(self.store.update_conversation, self.conversation_id, **fields)

    async def _clear_active_stream(self) -> None:
        await asyncio.to_thread(self.store.clear_active_stream, self.conversation_id)

    async def _deduct_usage(self) -> int:
        if self.deducted or self.ledger is None or self.rate_limit is None:
            return 0
        self.deducted = True
        usage = self.turn.usage.usage
        return await self.ledger.deduct_usage(
            self.rate_limit,
            user_id=self.user_id,
            tier=self.tier,
            actual_input_tokens=usage.input_tokens,
            actual_output_tokens=usage.output_tokens,
        )
