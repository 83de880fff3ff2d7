from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class SubscriptionTier(str, Enum):
    """Subscription tiers known to the budget ledger."""

    FREE = "free"
    PRO = "pro"
    ULTRA = "ultra"
    TEAM = "team"


class ChatMode(str, Enum):
    ASK = "ask"
    AGENT = "agent"


# Monthly subscription price in USD per paid tier.
TIER_MONTHLY_PRICE: dict[str, float] = {
    SubscriptionTier.PRO.value: 25.0,
    SubscriptionTier.ULTRA.value: 200.0,
    SubscriptionTier.TEAM.value: 40.0,
}

# Context window budget (tokens) used by the summarizer and history truncation.
TIER_CONTEXT_BUDGET: dict[str, int] = {
    SubscriptionTier.FREE.value: 16000,
    SubscriptionTier.PRO.value: 32000,
    SubscriptionTier.ULTRA.value: 64000,
    SubscriptionTier.TEAM.value: 32000,
}

# Hard execution ceilings imposed by the host, per endpoint.
HOST_MAX_DURATION_SECONDS: dict[str, int] = {
    "chat": 180,
    "agent": 800,
}


def get_monthly_price(tier: str) -> float:
    return TIER_MONTHLY_PRICE.get(enum_value(tier).lower(), 0.0)


def get_context_budget(tier: str) -> int:
    return TIER_CONTEXT_BUDGET.get(
        enum_value(tier).lower(), TIER_CONTEXT_BUDGET[SubscriptionTier.FREE.value]
    )


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat orchestration service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    use_local_cache: bool = env_field(
        False,
        "USE_LOCAL_CACHE",
        description="Keep budgets, cancellation flags and stream logs in process memory.",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic model providers and resettable runtime for CI.",
    )

    # Model routing
    model_api_key: str | None = env_field(None, "MODEL_API_KEY")
    model_base_url: str | None = env_field(None, "MODEL_BASE_URL")
    primary_model: str = env_field("gpt-4o-mini", "PRIMARY_MODEL")
    agent_model: str = env_field("gpt-4o", "AGENT_MODEL")
    fallback_model: str = env_field("gpt-4o-mini", "FALLBACK_MODEL")
    summarization_model: str = env_field("gpt-4o-mini", "SUMMARIZATION_MODEL")
    title_model: str = env_field("gpt-4o-mini", "TITLE_MODEL")
    model_request_timeout_seconds: float = env_field(
        120.0, "MODEL_REQUEST_TIMEOUT_SECONDS"
    )

    # Budget ledger
    input_price_per_million: float = env_field(0.5, "INPUT_PRICE_PER_MILLION")
    output_price_per_million: float = env_field(3.0, "OUTPUT_PRICE_PER_MILLION")
    points_per_dollar: int = env_field(10_000, "POINTS_PER_DOLLAR")
    session_window_seconds: int = env_field(5 * 60 * 60, "SESSION_WINDOW_SECONDS")
    weekly_window_seconds: int = env_field(7 * 24 * 60 * 60, "WEEKLY_WINDOW_SECONDS")
    free_rate_limit_requests: int = env_field(10, "FREE_RATE_LIMIT_REQUESTS")
    free_rate_limit_window_seconds: int = env_field(
        5 * 60 * 60, "FREE_RATE_LIMIT_WINDOW_SECONDS"
    )
    budget_fail_open: bool = env_field(
        True,
        "BUDGET_FAIL_OPEN",
        description="Admit requests with a synthetic limit when the budget store is unreachable.",
    )

    # Summarization
    summarization_threshold: float = env_field(0.9, "SUMMARIZATION_THRESHOLD")
    summarization_tail_messages: int = env_field(2, "SUMMARIZATION_TAIL_MESSAGES")
    summarization_chunk_size: int = env_field(10, "SUMMARIZATION_CHUNK_SIZE")

    # Hard cap on replayed history before summarization is considered.
    history_max_tokens: int = env_field(200_000, "HISTORY_MAX_TOKENS")

    # Generation loop
    ask_max_steps: int = env_field(5, "ASK_MAX_STEPS")
    agent_max_steps: int = env_field(10, "AGENT_MAX_STEPS")

    # Cancellation and deadlines
    cancellation_poll_interval_seconds: float = env_field(
        1.0, "CANCELLATION_POLL_INTERVAL_SECONDS"
    )
    preemptive_safety_buffer_seconds: int = env_field(
        10, "PREEMPTIVE_SAFETY_BUFFER_SECONDS"
    )
    usage_wait_timeout_seconds: float = env_field(5.0, "USAGE_WAIT_TIMEOUT_SECONDS")

    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT")

    # Resumable streams
    stream_ttl_seconds: int = env_field(60 * 60, "STREAM_TTL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("input_price_per_million", "output_price_per_million")
    @classmethod
    def _positive_price(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("token prices must be positive")
        return value

    @field_validator("summarization_threshold")
    @classmethod
    def _threshold_in_range(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("summarization threshold must be in (0, 1]")
        return value

    @field_validator(
        "summarization_tail_messages",
        "summarization_chunk_size",
        "ask_max_steps",
        "agent_max_steps",
    )
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    def max_steps_for(self, mode: str) -> int:
        if enum_value(mode) == ChatMode.AGENT.value:
            return self.agent_max_steps
        return self.ask_max_steps


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


def enum_value(value: Any) -> str:
    """Plain string for an enum member or a raw string."""
    return value.value if isinstance(value, Enum) else str(value)
