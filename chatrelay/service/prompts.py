from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from chatrelay.config import ChatMode, enum_value
from chatrelay.storage.models import Todo, UserPreferences

AGENT_SUMMARIZATION_PROMPT = (
    "You condense a conversation between a user and an autonomous agent. Output only a "
    "structured summary with the sections: Target & Scope, Key Findings, Progress & "
    "Decisions, Failed Attempts, Next Steps. Keep exact technical details such as URLs, "
    "paths, commands, versions and error messages. Never continue the conversation."
)

ASK_SUMMARIZATION_PROMPT = (
    "You condense a conversation between a user and an assistant so it can continue "
    "seamlessly. Keep the user's questions and the answers given, decisions reached, "
    "technical details and any open threads. Output only the summary."
)

SUMMARIZATION_INSTRUCTION = (
    "Summarize the conversation segment above. Be precise and concise."
)

TITLE_PROMPT = (
    "Write a short title (at most six words) for a conversation that starts with the "
    "following message. Reply with the title only."
)


def summarization_prompt(mode: str) -> str:
    if enum_value(mode) == ChatMode.AGENT.value:
        return AGENT_SUMMARIZATION_PROMPT
    return ASK_SUMMARIZATION_PROMPT


def render_todos(todos: Iterable[Todo]) -> str:
    return "\n".join(f"- [{todo.status}] {todo.content}" for todo in todos)


def build_system_prompt(
    mode: str,
    *,
    preferences: Optional[UserPreferences] = None,
    todos: Iterable[Todo] = (),
    now: Optional[datetime] = None,
) -> str:
    """Assemble the per-step system context from user state."""
    now = now or datetime.utcnow()
    sections = [
        "You are a helpful assistant."
        if enum_value(mode) == ChatMode.ASK.value
        else "You are an autonomous agent. Use the available tools to complete the task.",
        f"Current date: {now.strftime('%Y-%m-%d')}",
    ]
    if preferences is not None:
        if preferences.custom_instructions:
            sections.append(f"<user_instructions>\n{preferences.custom_instructions}\n</user_instructions>")
        if preferences.memory_enabled and preferences.memories:
            memories = "\n".join(f"- {memory}" for memory in preferences.memories)
            sections.append(f"<memories>\n{memories}\n</memories>")
    todo_list = list(todos)
    if todo_list:
        sections.append(f"<current_todos>\n{render_todos(todo_list)}\n</current_todos>")
    return "\n\n".join(sections)
