"""Per-request chat orchestration.

``handle`` performs every check that can fail with a plain HTTP error
(validation, conversation lookup, budget admission) before any frame is
written, then starts the ``generate -> merge -> finalize`` pipeline as a task
feeding a :class:`StreamAssembler`. Failures after that point reach the
client as a terminal ``error`` frame.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from chatrelay.config import ChatMode, Settings, enum_value
from chatrelay.logging import bind_conversation, get_logger, sanitize_error_message
from chatrelay.parts import FilePart, file_ids_of, text_of
from chatrelay.service.budget import BudgetLedger, RateLimitInfo, rate_limit_warnings
from chatrelay.service.cancellation import (
    USER_STOP,
    AbortSignal,
    StreamAborted,
    clear_cancellation,
    request_cancellation,
    subscribe_cancellation,
)
from chatrelay.service.deadline import start_preemptive_deadline
from chatrelay.service.errors import (
    BadRequestError,
    NotFoundError,
    OfflineError,
    ServiceError,
)
from chatrelay.service.finalizer import PersistenceFinalizer
from chatrelay.service.messages import (
    parse_request_messages,
    to_model_messages,
    truncate_history,
)
from chatrelay.service.prompts import TITLE_PROMPT
from chatrelay.service.providers import ProviderRegistry
from chatrelay.service.steps import StepDriver, SystemContext, Turn
from chatrelay.service.stream import StreamAssembler, StreamEvent, resume_stream
from chatrelay.service.summarizer import ContextSummarizer, apply_stored_summary
from chatrelay.service.tokens import count_model_message_tokens
from chatrelay.service.tools import ToolContext, ToolRegistry, ToolSession, TodoManager
from chatrelay.storage.models import Conversation, Message, Todo, User

logger = get_logger(__name__)

OFFLINE_MESSAGE = "Something went wrong. Please try again later."
TITLE_MAX_CHARS = 80
SIDE_TASK_GRACE_SECONDS = 5.0


@dataclass
class ChatRequest:
    chat_id: str
    messages: List[Dict[str, Any]]
    mode: str = ChatMode.ASK.value
    todos: List[Dict[str, Any]] = field(default_factory=list)
    regenerate: bool = False
    temporary: bool = False


class StreamingSession:
    """Handle on a running stream; the HTTP layer drains ``frames()``."""

    def __init__(
        self,
        conversation_id: str,
        stream_id: str,
        assembler: StreamAssembler,
        signal: AbortSignal,
    ) -> None:
        self.conversation_id = conversation_id
        self.stream_id = stream_id
        self.assembler = assembler
        self.signal = signal
        self.task: Optional[asyncio.Task] = None

    async def frames(self) -> AsyncIterator[str]:
        try:
            async for frame in self.assembler.frames():
                yield frame
        finally:
            # Non-resumable streams cannot be picked up again after a disconnect.
            if not self.assembler.resumable and self.task is not None and not self.task.done():
                self.signal.abort(USER_STOP)

    async def wait(self) -> None:
        if self.task is not None:
            await self.task


@dataclass
class _PipelineState:
    request: ChatRequest
    user: User
    mode: str
    history: List[Message]
    new_conversation: bool
    rate_limit: RateLimitInfo
    assembler: StreamAssembler
    turn: Turn
    finalizer: PersistenceFinalizer
    uploads: List[FilePart]


class ChatOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        store,
        cache,
        providers: ProviderRegistry,
        ledger: BudgetLedger,
        tools: ToolRegistry,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.providers = providers
        self.ledger = ledger
        self.tools = tools
        self.summarizer = ContextSummarizer(providers, settings, store=store)
        self.driver = StepDriver(providers, settings)

    def model_for(self, mode: str) -> str:
        if mode == ChatMode.AGENT.value:
            return self.settings.agent_model
        return self.settings.primary_model

    async def _load_conversation(self, chat_id: str, user: User) -> Optional[Conversation]:
        conversation = await asyncio.to_thread(self.store.get_conversation, chat_id, user_id=user.id)
        if conversation is not None:
            return conversation
        other = await asyncio.to_thread(self.store.get_conversation, chat_id)
        if other is not None:
            raise NotFoundError("conversation not found", detail={"chat_id": chat_id})
        return None

    async def _build_history(
        self,
        request: ChatRequest,
        conversation: Optional[Conversation],
        incoming: List[Message],
        user: User,
    ) -> tuple[List[Message], List[Message]]:
        """Return ``(history, unsaved)``; ``unsaved`` are new user messages.

        With ``regenerate`` the trailing assistant message is left out here
        and deleted from the store only once the request is admitted.
        """
        stored: List[Message] = []
        if conversation is not None and not request.temporary:
            stored = await asyncio.to_thread(self.store.list_messages, conversation.id, user_id=user.id)
        stored_ids = {m.id for m in stored}
        unsaved = [m for m in incoming if m.id not in stored_ids]
        history = stored + unsaved
        if request.regenerate:
            while history and history[-1].role == "assistant":
                history.pop()
        if not history:
            raise BadRequestError("Your message could not be processed. Please add some text and try again.")
        if conversation is not None:
            history = apply_stored_summary(
                history, conversation.summary_text, conversation.summary_cutoff_id
            )
        return history, [m for m in unsaved if m.role == "user"]

    async def handle(self, request: ChatRequest, user: User) -> StreamingSession:
        bind_conversation(request.chat_id)
        mode = enum_value(request.mode)
        if mode not in {m.value for m in ChatMode}:
            raise BadRequestError(f"unsupported mode: {mode!r}")

        incoming = parse_request_messages(request.chat_id, request.messages)
        for message in incoming:
            message.file_ids = file_ids_of(message.parts)
        conversation = await self._load_conversation(request.chat_id, user)
        history, unsaved = await self._build_history(request, conversation, incoming, user)
        history = truncate_history(history, self.settings.history_max_tokens)
        estimated = count_model_message_tokens(to_model_messages(history))

        rate_limit = await self.ledger.check_admission(user.id, user.tier, mode, estimated)
        try:
            return await self._start(request, user, mode, conversation, history, unsaved, rate_limit)
        except BaseException:
            if rate_limit.tracker is not None:
                await rate_limit.tracker.refund_all()
            raise

    async def _start(
        self,
        request: ChatRequest,
        user: User,
        mode: str,
        conversation: Optional[Conversation],
        history: List[Message],
        unsaved: List[Message],
        rate_limit: RateLimitInfo,
    ) -> StreamingSession:
        chat_id = request.chat_id
        new_conversation = conversation is None
        conversation_todos: List[Todo] = list(conversation.todos) if conversation else []
        if request.todos:
            conversation_todos = [Todo.from_dict(raw) for raw in request.todos]

        stream_id = str(uuid.uuid4())
        if not request.temporary:
            if conversation is None:
                conversation = await asyncio.to_thread(
                    self.store.create_conversation, user.id, conversation_id=chat_id
                )
            if request.regenerate:
                await asyncio.to_thread(self.store.delete_last_assistant_message, chat_id)
            for message in unsaved:
                await asyncio.to_thread(self.store.save_message, message)
            await clear_cancellation(chat_id, cache=self.cache)
            await asyncio.to_thread(self.store.start_stream, chat_id, stream_id)

        signal = AbortSignal()
        assembler = StreamAssembler(
            stream_id,
            cache=self.cache,
            ttl_seconds=self.settings.stream_ttl_seconds,
            resumable=not request.temporary,
        )
        deadline = start_preemptive_deadline(
            chat_id,
            "agent" if mode == ChatMode.AGENT.value else "chat",
            signal,
            self.settings.preemptive_safety_buffer_seconds,
        )
        subscription = None
        if not request.temporary:
            subscription = await subscribe_cancellation(
                chat_id,
                signal,
                lambda: logger.info("stream_stopped_by_user", conversation_id=chat_id),
                cache=self.cache,
                store=self.store,
                poll_interval=self.settings.cancellation_poll_interval_seconds,
            )

        tool_session = ToolSession(
            self.tools,
            ToolContext(
                user_id=user.id,
                conversation_id=chat_id,
                store=self.store,
                temporary=request.temporary,
                todos=TodoManager(conversation_todos),
            ),
        )
        turn = Turn(
            conversation_id=chat_id,
            user_id=user.id,
            mode=mode,
            model=self.model_for(mode),
            fallback_model=self.settings.fallback_model,
            messages=to_model_messages(history),
            signal=signal,
            tools=tool_session,
            system=SystemContext(mode, store=self.store, user_id=user.id, tools=tool_session),
            max_steps=self.settings.max_steps_for(mode),
        )
        finalizer = PersistenceFinalizer(
            store=self.store,
            ledger=self.ledger,
            settings=self.settings,
            turn=turn,
            user_id=user.id,
            tier=user.tier,
            rate_limit=rate_limit,
            deadline=deadline,
            subscription=subscription,
            temporary=request.temporary,
            conversation_todos=conversation_todos,
        )
        state = _PipelineState(
            request=request,
            user=user,
            mode=mode,
            history=history,
            new_conversation=new_conversation,
            rate_limit=rate_limit,
            assembler=assembler,
            turn=turn,
            finalizer=finalizer,
            uploads=[p for m in unsaved for p in m.parts if isinstance(p, FilePart)],
        )
        session = StreamingSession(chat_id, stream_id, assembler, signal)
        session.task = asyncio.create_task(self._pipeline(state), name=f"chat:{chat_id}")
        logger.info(
            "stream_started",
            conversation_id=chat_id,
            stream_id=stream_id,
            mode=mode,
            tier=user.tier,
            estimated_input_tokens=rate_limit.estimated_input_tokens,
        )
        return session

    async def _pipeline(self, state: _PipelineState) -> None:
        bind_conversation(state.turn.conversation_id)
        assembler = state.assembler
        error: Optional[BaseException] = None
        try:
            await self._announce(state)
            await self._summarize(state)
            async for event in self.driver.run(state.turn):
                await assembler.emit(event)
        except StreamAborted:
            state.turn.aborted = True
        except asyncio.CancelledError as exc:
            error = exc
            raise
        except Exception as exc:
            error = exc
        finally:
            # No step is running any more, so no further usage can arrive.
            state.turn.usage.ready.set()
            await assembler.drain_side_tasks(SIDE_TASK_GRACE_SECONDS)
            result = await state.finalizer.finalize(error=error)
            if error is not None:
                await self._fail(state, error)
            else:
                draft = state.turn.draft
                await assembler.finish(
                    messageId=result.message_id or (draft.message_id if draft else None),
                    finishReason=result.finish_reason,
                    usage=state.turn.usage.usage.to_dict(),
                )

    async def _announce(self, state: _PipelineState) -> None:
        assembler = state.assembler
        for warning in rate_limit_warnings(state.rate_limit, state.user.tier, state.mode):
            await assembler.data("rate-limit-warning", warning)
        if state.uploads:
            await assembler.data("upload-status", {"status": "processing", "count": len(state.uploads)})
            await assembler.data(
                "upload-status",
                {
                    "status": "complete",
                    "count": len(state.uploads),
                    "fileIds": [p.file_id for p in state.uploads if p.file_id],
                },
            )
        if state.new_conversation and not state.request.temporary:
            assembler.spawn(self._generate_title(state), name="title")

    async def _generate_title(self, state: _PipelineState) -> Optional[StreamEvent]:
        first_user = next((m for m in state.history if m.role == "user"), None)
        if first_user is None:
            return None
        model = self.settings.title_model
        title, _usage = await self.providers.for_model(model).complete(
            model=model,
            system=TITLE_PROMPT,
            messages=[{"role": "user", "content": text_of(first_user.parts)}],
            max_tokens=32,
        )
        title = title.strip().strip('"')[:TITLE_MAX_CHARS]
        if not title:
            return None
        state.finalizer.set_title(title)
        return StreamEvent("data-title", {"chatId": state.turn.conversation_id, "title": title})

    async def _summarize(self, state: _PipelineState) -> None:
        turn = state.turn
        result = await turn.signal.run(
            self.summarizer.maybe_summarize(
                turn.messages,
                state.history,
                state.user.tier,
                self.settings.summarization_model,
                state.mode,
                conversation_id=turn.conversation_id,
                todos=turn.tools.todos.items,
                persist=not state.request.temporary,
            )
        )
        if result.needed:
            turn.messages = result.messages
            await state.assembler.data(
                "summarization",
                {"status": "completed", "messages": sum(c.source_count for c in result.chunks)},
            )

    async def _fail(self, state: _PipelineState, error: BaseException) -> None:
        tracker = state.rate_limit.tracker
        if tracker is not None:
            await tracker.refund_all()
        if isinstance(error, ServiceError):
            code, message = error.error_code, sanitize_error_message(error.message)
            logger.error(
                "stream_failed",
                conversation_id=state.turn.conversation_id,
                error_code=code,
                error=error.message,
                provider_body=getattr(error, "body", None),
                retryable=getattr(error, "retryable", None),
            )
        else:
            code, message = OfflineError.error_code, OFFLINE_MESSAGE
            logger.error(
                "stream_failed_unexpected",
                conversation_id=state.turn.conversation_id,
                error=repr(error),
                exc_info=error,
            )
        await state.assembler.error(code, message)

    async def stop(self, chat_id: str, user: User) -> None:
        conversation = await asyncio.to_thread(self.store.get_conversation, chat_id, user_id=user.id)
        if conversation is None:
            raise NotFoundError("conversation not found", detail={"chat_id": chat_id})
        await request_cancellation(chat_id, store=self.store, cache=self.cache)

    async def resume(self, chat_id: str, user: User) -> Optional[AsyncIterator[str]]:
        conversation = await asyncio.to_thread(self.store.get_conversation, chat_id, user_id=user.id)
        if conversation is None:
            raise NotFoundError("conversation not found", detail={"chat_id": chat_id})
        stream_id = conversation.active_stream_id
        if not stream_id or self.cache is None:
            return None
        if not await self.cache.stream_exists(stream_id):
            return None
        return resume_stream(stream_id, self.cache)
