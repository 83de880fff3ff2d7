"""Context-window summarization.

When the projected context passes a fraction of the tier's budget, older raw
messages are compressed into summary messages while the most recent turns
stay verbatim. Summaries are ordinary messages wrapped in
``<context_summary>`` so later passes recognise and keep them.
"""

from __future__ import annotations

import asyncio
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from chatrelay.config import Settings, get_context_budget
from chatrelay.logging import get_logger
from chatrelay.parts import TextPart
from chatrelay.service.messages import to_model_message
from chatrelay.service.prompts import (
    SUMMARIZATION_INSTRUCTION,
    render_todos,
    summarization_prompt,
)
from chatrelay.service.providers import ProviderRegistry
from chatrelay.service.tokens import count_model_message_tokens
from chatrelay.storage.models import Message, Todo

logger = get_logger(__name__)

SUMMARY_OPEN = "<context_summary>"
SUMMARY_CLOSE = "</context_summary>"


@dataclass
class SummaryChunk:
    cutoff_message_id: str
    text: str
    source_count: int
    failed: bool = False


@dataclass
class SummarizationResult:
    needed: bool
    messages: List[Dict[str, Any]]
    ui_messages: List[Message]
    cutoff_message_id: Optional[str] = None
    chunks: List[SummaryChunk] = field(default_factory=list)


def is_summary_message(message: Message) -> bool:
    for part in message.parts:
        if isinstance(part, TextPart):
            return part.text.lstrip().startswith(SUMMARY_OPEN)
    return False


def build_summary_message(
    conversation_id: str, summary_text: str, todos: Iterable[Todo] = ()
) -> Message:
    text = f"{SUMMARY_OPEN}\n{summary_text}\n{SUMMARY_CLOSE}"
    todo_list = list(todos)
    if todo_list:
        text += f"\n<current_todos>\n{render_todos(todo_list)}\n</current_todos>"
    return Message(
        id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        role="user",
        parts=[TextPart(text=text)],
    )


def summary_body(message: Message) -> str:
    """Text between the summary markers, without any trailing todo block."""
    for part in message.parts:
        if isinstance(part, TextPart):
            text = part.text.strip()
            start = text.find(SUMMARY_OPEN)
            end = text.find(SUMMARY_CLOSE)
            if start < 0 or end < start:
                return text
            return text[start + len(SUMMARY_OPEN):end].strip()
    return ""


def apply_stored_summary(
    messages: List[Message], summary_text: Optional[str], cutoff_message_id: Optional[str]
) -> List[Message]:
    """Swap history up to a persisted cutoff for its stored summary.

    Returns ``messages`` unchanged when the cutoff is not in the list.
    """
    if not summary_text or not cutoff_message_id:
        return messages
    for index, message in enumerate(messages):
        if message.id == cutoff_message_id:
            conversation_id = message.conversation_id
            return [build_summary_message(conversation_id, summary_text)] + messages[index + 1:]
    return messages


class ContextSummarizer:
    def __init__(self, providers: ProviderRegistry, settings: Settings, *, store=None) -> None:
        self.providers = providers
        self.settings = settings
        self.store = store

    def threshold_for(self, tier: str) -> int:
        return math.floor(get_context_budget(tier) * self.settings.summarization_threshold)

    async def maybe_summarize(
        self,
        model_messages: List[Dict[str, Any]],
        ui_messages: List[Message],
        tier: str,
        model: str,
        mode: str,
        *,
        conversation_id: Optional[str] = None,
        todos: Iterable[Todo] = (),
        persist: bool = True,
    ) -> SummarizationResult:
        """Summarize older history when it no longer fits the tier budget.

        ``model_messages`` must be index-aligned with ``ui_messages``; the
        verbatim tail is copied from ``model_messages`` unchanged.
        """
        if len(model_messages) != len(ui_messages):
            raise ValueError("model and ui messages must be index-aligned")
        unchanged = SummarizationResult(False, list(model_messages), list(ui_messages))
        tail = self.settings.summarization_tail_messages

        summary_indices = [i for i, m in enumerate(ui_messages) if is_summary_message(m)]
        raw_indices = [i for i, m in enumerate(ui_messages) if not is_summary_message(m)]
        if len(raw_indices) <= tail:
            return unchanged
        if count_model_message_tokens(model_messages) <= self.threshold_for(tier):
            return unchanged

        candidates = raw_indices[:-tail]
        tail_indices = raw_indices[-tail:]
        if not candidates:
            return unchanged

        size = self.settings.summarization_chunk_size
        groups = [candidates[i:i + size] for i in range(0, len(candidates), size)]
        logger.info(
            "summarization_started",
            conversation_id=conversation_id,
            chunks=len(groups),
            messages=len(candidates),
        )
        chunks = list(
            await asyncio.gather(
                *(
                    self._summarize_chunk(
                        [model_messages[i] for i in group],
                        ui_messages[group[-1]].id,
                        model,
                        mode,
                    )
                    for group in groups
                )
            )
        )

        conv_id = conversation_id or ui_messages[0].conversation_id
        todo_list = list(todos)
        summaries = [
            build_summary_message(
                conv_id, chunk.text, todo_list if index == len(chunks) - 1 else ()
            )
            for index, chunk in enumerate(chunks)
        ]
        cutoff = chunks[-1].cutoff_message_id

        if persist and self.store is not None and conversation_id:
            prior = [summary_body(ui_messages[i]) for i in summary_indices]
            await self._persist(conversation_id, prior, chunks, cutoff)

        return SummarizationResult(
            needed=True,
            messages=[model_messages[i] for i in summary_indices]
            + [to_model_message(s) for s in summaries]
            + [model_messages[i] for i in tail_indices],
            ui_messages=[ui_messages[i] for i in summary_indices]
            + summaries
            + [ui_messages[i] for i in tail_indices],
            cutoff_message_id=cutoff,
            chunks=chunks,
        )

    async def _summarize_chunk(
        self,
        messages: List[Dict[str, Any]],
        cutoff_message_id: str,
        model: str,
        mode: str,
    ) -> SummaryChunk:
        provider = self.providers.for_model(model)
        try:
            text, _usage = await provider.complete(
                model=model,
                system=summarization_prompt(mode),
                messages=[*messages, {"role": "user", "content": SUMMARIZATION_INSTRUCTION}],
            )
        except Exception as exc:
            logger.warning(
                "summarization_chunk_failed",
                cutoff_message_id=cutoff_message_id,
                error=str(exc),
            )
            text = ""
        if not text.strip():
            return SummaryChunk(
                cutoff_message_id=cutoff_message_id,
                text=f"[Summary of {len(messages)} messages in conversation]",
                source_count=len(messages),
                failed=True,
            )
        return SummaryChunk(cutoff_message_id, text.strip(), len(messages))

    async def _persist(
        self,
        conversation_id: str,
        prior: List[str],
        chunks: List[SummaryChunk],
        cutoff: str,
    ) -> None:
        # Stored text stands in for everything up to the cutoff, earlier summaries included.
        texts = [text for text in prior if text] + [chunk.text for chunk in chunks]
        summary_text = "\n\n".join(texts)
        try:
            await asyncio.to_thread(
                self.store.save_conversation_summary, conversation_id, summary_text, cutoff
            )
        except Exception as exc:
            logger.error(
                "summary_persist_failed", conversation_id=conversation_id, error=str(exc)
            )
