from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List

TOOL_OUTPUT_MAX_TOKENS = 4096
TRUNCATION_MARKER = "...\n\n[Output truncated because too long]"


def estimate_token_count(text: str) -> int:
    """Cheap token estimate used for context budgets and admission costs.

    Takes the larger of the whitespace-delimited word count and a
    four-characters-per-token estimate so dense text is not undercounted.
    """
    if not text:
        return 0
    normalized = text.strip()
    wordish = len(re.findall(r"\S+", normalized))
    char_estimate = math.ceil(len(normalized) / 4)
    return max(wordish, char_estimate)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(item.get("text") or "") for item in content if isinstance(item, dict)
        )
    return ""


def count_model_message_tokens(messages: Iterable[Dict[str, Any]]) -> int:
    total = 0
    for message in messages:
        total += estimate_token_count(_content_text(message.get("content")))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            total += estimate_token_count(str(function.get("arguments") or ""))
    return total


def truncate_tool_output(output: str, *, max_tokens: int = TOOL_OUTPUT_MAX_TOKENS) -> str:
    """Keep the head and tail of an oversized tool result (60/40 split)."""
    if estimate_token_count(output) <= max_tokens:
        return output
    budget_chars = max(0, (max_tokens - estimate_token_count(TRUNCATION_MARKER)) * 4)
    head = int(budget_chars * 0.6)
    tail = budget_chars - head
    return output[:head] + TRUNCATION_MARKER + (output[-tail:] if tail else "")


def truncate_to_token_limit(items: List[Any], counts: List[int], max_tokens: int) -> List[Any]:
    """Keep the newest ``items`` whose summed ``counts`` fit in ``max_tokens``."""
    kept: List[Any] = []
    total = 0
    for item, count in zip(reversed(items), reversed(counts)):
        if total + count > max_tokens:
            break
        total += count
        kept.append(item)
    kept.reverse()
    return kept
