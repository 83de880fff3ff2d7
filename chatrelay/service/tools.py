"""Request-scoped tool execution.

The step driver only sees a :class:`ToolSession`: it executes calls by name
and exposes the files accumulated while doing so. Tool arguments are checked
against each tool's JSON schema before the handler runs.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from chatrelay.logging import get_logger
from chatrelay.storage.models import Todo

logger = get_logger(__name__)

# Tools whose side effects change what the system context would contain.
STATE_MUTATING_TOOLS = frozenset({"update_memory", "edit_note"})

# Sandbox command tools report interruption with a shell-style exit code.
TERMINAL_TOOLS = frozenset({"run_terminal_cmd", "exec_command"})

INTERRUPTED_OUTPUT = "Operation was interrupted by user"
INTERRUPTED_EXIT_CODE = 130

DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0

TODO_STATUSES = ("pending", "in_progress", "completed", "cancelled")

ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Union[Any, Awaitable[Any]]]


class ToolError(Exception):
    """Tool failed; rendered as an ``output-error`` part."""


class ToolInterrupted(Exception):
    """Tool stopped early because the user interrupted it."""


def interrupted_output(tool_name: str) -> Any:
    if tool_name in TERMINAL_TOOLS:
        return {"output": INTERRUPTED_OUTPUT, "exitCode": INTERRUPTED_EXIT_CODE}
    return INTERRUPTED_OUTPUT


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    mutates_state: Optional[bool] = None
    timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.mutates_state is None:
            self.mutates_state = self.name in STATE_MUTATING_TOOLS

    def definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        try:
            Draft202012Validator.check_schema(spec.parameters)
        except SchemaError as exc:
            raise ValueError(f"invalid parameter schema for tool {spec.name}: {exc.message}") from exc
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def names(self) -> List[str]:
        return list(self._specs)

    def definitions(self) -> List[Dict[str, Any]]:
        return [spec.definition() for spec in self._specs.values()]

    def validate(self, name: str, arguments: Any) -> Optional[List[str]]:
        spec = self._specs.get(name)
        if spec is None:
            return [f"unknown tool {name}"]
        validator = Draft202012Validator(spec.parameters)
        errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
        if errors:
            return [e.message for e in errors]
        return None


class TodoManager:
    """Todo list for one request; merged into the conversation at the end."""

    def __init__(self, initial: Iterable[Todo] = ()) -> None:
        self._todos: List[Todo] = [Todo(t.id, t.content, t.status) for t in initial]
        self.changed = False

    @property
    def items(self) -> List[Todo]:
        return list(self._todos)

    def apply(self, todos: Iterable[Todo], *, merge: bool = True) -> List[Todo]:
        incoming = list(todos)
        self.changed = True
        if not merge:
            self._todos = incoming
            return self.items
        self._todos = merge_todos(self._todos, incoming)
        return self.items


def merge_todos(existing: Iterable[Todo], updates: Iterable[Todo]) -> List[Todo]:
    """Merge ``updates`` into ``existing`` by id, keeping first-seen order."""
    merged: Dict[str, Todo] = {todo.id: todo for todo in existing}
    for todo in updates:
        current = merged.get(todo.id)
        if current is None:
            merged[todo.id] = todo
            continue
        merged[todo.id] = Todo(
            id=todo.id,
            content=todo.content or current.content,
            status=todo.status or current.status,
        )
    return list(merged.values())


class FileAccumulator:
    def __init__(self) -> None:
        self._file_ids: List[str] = []

    def add(self, file_id: str) -> bool:
        if not file_id or file_id in self._file_ids:
            return False
        self._file_ids.append(file_id)
        return True

    def get_accumulated_files(self) -> List[str]:
        return list(self._file_ids)


@dataclass
class ToolContext:
    user_id: str
    conversation_id: str
    store: Any = None
    temporary: bool = False
    todos: TodoManager = field(default_factory=TodoManager)
    files: FileAccumulator = field(default_factory=FileAccumulator)


class ToolSession:
    """Tools bound to a single request."""

    def __init__(self, registry: ToolRegistry, context: ToolContext) -> None:
        self.registry = registry
        self.context = context

    @property
    def todos(self) -> TodoManager:
        return self.context.todos

    def definitions(self) -> List[Dict[str, Any]]:
        return self.registry.definitions()

    def mutates_state(self, name: str) -> bool:
        spec = self.registry.get(name)
        return bool(spec and spec.mutates_state)

    def get_accumulated_files(self) -> List[str]:
        return self.context.files.get_accumulated_files()

    async def execute(self, name: str, arguments: Dict[str, Any]) -> Any:
        """Run tool ``name``. Raises :class:`ToolError` on any failure."""
        spec = self.registry.get(name)
        if spec is None:
            raise ToolError(f"unknown tool {name}")
        errors = self.registry.validate(name, arguments)
        if errors:
            raise ToolError("invalid arguments: " + "; ".join(errors))

        if inspect.iscoroutinefunction(spec.handler):
            work = spec.handler(arguments, self.context)
        else:
            work = asyncio.to_thread(spec.handler, arguments, self.context)
        try:
            return await asyncio.wait_for(work, timeout=spec.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("tool_timeout", tool=name, timeout=spec.timeout_seconds)
            raise ToolError(f"tool {name} timed out") from exc
        except (ToolError, ToolInterrupted):
            raise
        except Exception as exc:
            logger.warning("tool_failed", tool=name, error=str(exc))
            raise ToolError(str(exc) or type(exc).__name__) from exc


def _todo_write(arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    todos = [Todo.from_dict(raw) for raw in arguments["todos"]]
    items = context.todos.apply(todos, merge=arguments.get("merge", True))
    return {"todos": [todo.to_dict() for todo in items]}


def _update_memory(arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    content = arguments["content"].strip()
    if not content:
        raise ToolError("memory content is empty")
    if context.temporary or context.store is None:
        return {"saved": False, "reason": "memory is disabled for temporary chats"}
    context.store.add_user_memory(context.user_id, content)
    return {"saved": True, "id": str(uuid.uuid4())}


TODO_WRITE = ToolSpec(
    name="todo_write",
    description="Create or update the task list for the current conversation.",
    parameters={
        "type": "object",
        "properties": {
            "merge": {"type": "boolean"},
            "todos": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "content": {"type": "string"},
                        "status": {"enum": list(TODO_STATUSES)},
                    },
                    "required": ["id"],
                },
            },
        },
        "required": ["todos"],
    },
    handler=_todo_write,
)

UPDATE_MEMORY = ToolSpec(
    name="update_memory",
    description="Remember a durable fact or preference about the user.",
    parameters={
        "type": "object",
        "properties": {"content": {"type": "string", "minLength": 1}},
        "required": ["content"],
    },
    handler=_update_memory,
)


def default_tool_registry(extra: Iterable[ToolSpec] = ()) -> ToolRegistry:
    return ToolRegistry([TODO_WRITE, UPDATE_MEMORY, *extra])
