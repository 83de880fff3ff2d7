from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

import httpx
import openai
from openai import AsyncOpenAI

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import ProviderError
from chatrelay.service.tokens import count_model_message_tokens, estimate_token_count

logger = get_logger(__name__)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=self.cost + other.cost,
        )

    @property
    def empty(self) -> bool:
        return not (self.input_tokens or self.output_tokens or self.cost)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.input_tokens + self.output_tokens,
            "cost": self.cost,
        }


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepRequest:
    model: str
    system: str
    messages: List[Dict[str, Any]]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    max_output_tokens: Optional[int] = None


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallReady:
    call: ToolCall


@dataclass
class StepFinished:
    finish_reason: str
    usage: Usage


ModelEvent = Union[TextDelta, ReasoningDelta, ToolCallReady, StepFinished]


class ModelProvider(Protocol):
    """Interface for pluggable model providers."""

    name: str

    def stream_step(self, request: StepRequest) -> AsyncIterator[ModelEvent]:
        ...

    async def complete(
        self,
        *,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, Usage]:
        ...

    async def aclose(self) -> None:
        ...


def is_retryable_provider_error(status: Optional[int], body: Optional[str]) -> bool:
    """Structural rejections (400 INVALID_ARGUMENT, 422) earn one fallback retry."""
    if status == 422:
        return True
    return status == 400 and "INVALID_ARGUMENT" in (body or "")


class OpenAIProvider:
    """Provider backed by any OpenAI-compatible chat completions endpoint."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            http_client=httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)),
        )

    @staticmethod
    def _wrap_error(exc: Exception, model: str) -> ProviderError:
        if isinstance(exc, openai.APIStatusError):
            body = exc.response.text if exc.response is not None else str(exc.body)
            return ProviderError(
                f"model provider rejected the request ({exc.status_code})",
                provider_status=exc.status_code,
                body=body,
                retryable=is_retryable_provider_error(exc.status_code, body),
                model=model,
            )
        return ProviderError(f"model provider unavailable: {type(exc).__name__}", model=model)

    async def stream_step(self, request: StepRequest) -> AsyncIterator[ModelEvent]:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "system", "content": request.system}, *request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            kwargs["tools"] = request.tools
        if request.max_output_tokens:
            kwargs["max_tokens"] = request.max_output_tokens

        pending: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage = Usage()
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = Usage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                for choice in chunk.choices:
                    delta = choice.delta
                    if delta is not None:
                        reasoning = getattr(delta, "reasoning_content", None)
                        if reasoning:
                            yield ReasoningDelta(reasoning)
                        if delta.content:
                            yield TextDelta(delta.content)
                        for tool_delta in delta.tool_calls or []:
                            entry = pending.setdefault(
                                tool_delta.index, {"id": "", "name": "", "arguments": ""}
                            )
                            if tool_delta.id:
                                entry["id"] = tool_delta.id
                            if tool_delta.function is not None:
                                entry["name"] += tool_delta.function.name or ""
                                entry["arguments"] += tool_delta.function.arguments or ""
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
        except openai.OpenAIError as exc:
            raise self._wrap_error(exc, request.model) from exc

        for index in sorted(pending):
            entry = pending[index]
            try:
                arguments = json.loads(entry["arguments"] or "{}")
            except ValueError as exc:
                raise ProviderError(
                    f"model produced malformed arguments for tool {entry['name']!r}",
                    body=entry["arguments"],
                    retryable=True,
                    model=request.model,
                ) from exc
            yield ToolCallReady(
                ToolCall(id=entry["id"] or f"call_{uuid.uuid4().hex[:12]}", name=entry["name"], arguments=arguments)
            )
        yield StepFinished(finish_reason or "stop", usage)

    async def complete(
        self,
        *,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, Usage]:
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise self._wrap_error(exc, model) from exc
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("completion_without_choices", model=model)
            content = ""
        else:
            content = first_choice.message.content or ""
        usage = Usage(
            input_tokens=getattr(completion.usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(completion.usage, "completion_tokens", 0) or 0,
        )
        return content, usage

    async def aclose(self) -> None:
        await self.client.close()


class EchoProvider:
    """Deterministic provider used when no API key is configured.

    Streams the latest user text back so the whole pipeline can run in
    development and tests without network access.
    """

    name = "echo"

    @staticmethod
    def _last_user_text(messages: List[Dict[str, Any]]) -> str:
        for message in reversed(messages):
            if message.get("role") == "user" and isinstance(message.get("content"), str):
                return message["content"]
        return ""

    async def stream_step(self, request: StepRequest) -> AsyncIterator[ModelEvent]:
        text = f"[{request.model}] {self._last_user_text(request.messages)}".strip()
        for word in text.split(" "):
            yield TextDelta(word + " ")
        yield StepFinished(
            "stop",
            Usage(
                input_tokens=count_model_message_tokens(request.messages)
                + estimate_token_count(request.system),
                output_tokens=estimate_token_count(text),
            ),
        )

    async def complete(
        self,
        *,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, Usage]:
        text = self._last_user_text(messages)[:200] or f"{len(messages)} messages"
        return text, Usage(
            input_tokens=count_model_message_tokens(messages),
            output_tokens=estimate_token_count(text),
        )

    async def aclose(self) -> None:
        return None


class ProviderRegistry:
    """Maps model ids to providers; owned by the runtime and closed with it."""

    def __init__(
        self,
        default: ModelProvider,
        overrides: Optional[Dict[str, ModelProvider]] = None,
    ) -> None:
        self.default = default
        self.overrides = dict(overrides or {})

    def for_model(self, model: str) -> ModelProvider:
        return self.overrides.get(model, self.default)

    async def aclose(self) -> None:
        seen: set[int] = set()
        for provider in [self.default, *self.overrides.values()]:
            if id(provider) in seen:
                continue
            seen.add(id(provider))
            try:
                await provider.aclose()
            except Exception as exc:
                logger.warning("provider_close_failed", provider=provider.name, error=str(exc))


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    if settings.model_api_key and not settings.test_mode:
        provider: ModelProvider = OpenAIProvider(
            api_key=settings.model_api_key,
            base_url=settings.model_base_url,
            timeout=settings.model_request_timeout_seconds,
        )
    else:
        provider = EchoProvider()
    logger.info("provider_registry_built", provider=provider.name)
    return ProviderRegistry(provider)
