"""Cost-based quota ledger.

Paid tiers hold two refillable point buckets per user: a short ``session``
window and a longer ``weekly`` window. Admission peeks both windows with a
zero-cost call before deducting from either, so a request that would exhaust
one window never leaves a partial deduction in the other. Free-tier users get
a plain request counter in ask mode and no access to agent mode.

Every mutation is a single atomic script call against the backing store; the
ledger itself holds no locks.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from chatrelay.config import (
    ChatMode,
    Settings,
    SubscriptionTier,
    enum_value,
    get_monthly_price,
)
from chatrelay.logging import get_logger
from chatrelay.service.errors import (
    ForbiddenError,
    RateLimitedError,
    ServiceUnavailableError,
)
from chatrelay.storage.errors import StoreUnavailable

logger = get_logger(__name__)

SESSION = "session"
WEEKLY = "weekly"
WINDOWS = (SESSION, WEEKLY)

# Synthetic allowance handed out when no budget store is configured.
FAIL_OPEN_LIMIT = 999_999
FAIL_OPEN_RESET = timedelta(hours=5)

WARNING_REMAINING_REQUESTS = 5
WARNING_REMAINING_PERCENT = 10

AGENT_UPGRADE_MESSAGE = (
    "Agent mode is only available for Pro users. Please upgrade to access this feature."
)


@dataclass(frozen=True)
class Pricing:
    input_per_million: float = 0.5
    output_per_million: float = 3.0
    points_per_dollar: int = 10_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pricing":
        return cls(
            input_per_million=settings.input_price_per_million,
            output_per_million=settings.output_price_per_million,
            points_per_dollar=settings.points_per_dollar,
        )


DEFAULT_PRICING = Pricing()


def calculate_token_cost(
    tokens: int, kind: str = "input", *, pricing: Pricing = DEFAULT_PRICING
) -> int:
    """Convert a token count into ledger points.

    Any positive token count costs at least one point.
    """
    if tokens <= 0:
        return 0
    price = pricing.input_per_million if kind == "input" else pricing.output_per_million
    cost = math.ceil((tokens / 1_000_000) * price * pricing.points_per_dollar)
    return max(1, cost)


def get_budget_limits(tier: str, *, pricing: Pricing = DEFAULT_PRICING) -> Dict[str, int]:
    """Session and weekly capacity in points for ``tier``.

    The session window holds a day's share of the monthly price, the weekly
    window seven days' share. Free tier gets nothing.
    """
    if enum_value(tier) == SubscriptionTier.FREE.value:
        return {SESSION: 0, WEEKLY: 0}
    monthly_points = get_monthly_price(tier) * pricing.points_per_dollar
    return {
        SESSION: round(monthly_points / 30),
        WEEKLY: round(monthly_points * 7 / 30),
    }


def format_time_remaining(reset_at: datetime, *, now: Optional[datetime] = None) -> str:
    """Render the time until ``reset_at`` as e.g. ``"2 hours and 5 minutes"``."""
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((reset_at - now).total_seconds()))
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours > 0:
        text = f"{hours} hour{'s' if hours > 1 else ''}"
        if minutes > 0:
            text += f" and {minutes} minute{'s' if minutes > 1 else ''}"
        return text
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


@dataclass
class BucketState:
    window: str
    remaining: int
    limit: int
    reset_at: datetime


@dataclass
class RateLimitInfo:
    remaining: int
    limit: int
    reset_at: datetime
    session: Optional[BucketState] = None
    weekly: Optional[BucketState] = None
    estimated_input_tokens: int = 0
    fail_open: bool = False
    tracker: Optional["UsageRefundTracker"] = None


class UsageRefundTracker:
    """Remembers what one request deducted so it can be given back once."""

    def __init__(self, ledger: "BudgetLedger", user_id: str, tier: str) -> None:
        self.ledger = ledger
        self.user_id = user_id
        self.tier = tier
        self.deducted: Dict[str, int] = {}
        self.refunded = False

    def record(self, window: str, amount: int) -> None:
        if amount > 0:
            self.deducted[window] = self.deducted.get(window, 0) + amount

    @property
    def has_deductions(self) -> bool:
        return any(amount > 0 for amount in self.deducted.values())

    async def refund_all(self) -> bool:
        """Restore every recorded deduction. Returns False if already done."""
        if self.refunded or not self.has_deductions:
            return False
        # Flip before awaiting so a concurrent caller sees the refund as taken.
        self.refunded = True
        owed = dict(self.deducted)
        results = await asyncio.gather(
            *(
                self.ledger.refund(self.user_id, self.tier, window, amount)
                for window, amount in owed.items()
            ),
            return_exceptions=True,
        )
        for window, result in zip(owed, results):
            if isinstance(result, BaseException):
                logger.error(
                    "budget_refund_failed",
                    user_id=self.user_id,
                    window=window,
                    amount=owed[window],
                    error=str(result),
                )
        return True


class BudgetLedger:
    def __init__(self, cache, settings: Settings) -> None:
        self.cache = cache
        self.settings = settings
        self.pricing = Pricing.from_settings(settings)
        self.window_seconds = {
            SESSION: settings.session_window_seconds,
            WEEKLY: settings.weekly_window_seconds,
        }

    @staticmethod
    def _subject(user_id: str, tier: str) -> str:
        return f"{user_id}:{enum_value(tier)}"

    def _capacity(self, tier: str, window: str) -> int:
        return get_budget_limits(tier, pricing=self.pricing)[window]

    def _state(self, window: str, tier: str, remaining: int, seconds: float) -> BucketState:
        return BucketState(
            window=window,
            remaining=remaining,
            limit=self._capacity(tier, window),
            reset_at=datetime.now(timezone.utc) + timedelta(seconds=max(0.0, seconds)),
        )

    async def peek(self, user_id: str, tier: str, window: str) -> BucketState:
        capacity = self._capacity(tier, window)
        if capacity <= 0:
            return self._state(window, tier, 0, 0)
        result = await self.cache.consume_bucket(
            f"usage:{window}",
            self._subject(user_id, tier),
            capacity=capacity,
            window_seconds=self.window_seconds[window],
            cost=0,
        )
        return self._state(window, tier, result.remaining, result.full_after)

    async def deduct(self, user_id: str, tier: str, window: str, cost: int) -> BucketState:
        """Atomically spend ``cost`` points; raises when it does not fit."""
        capacity = self._capacity(tier, window)
        result = await self.cache.consume_bucket(
            f"usage:{window}",
            self._subject(user_id, tier),
            capacity=capacity,
            window_seconds=self.window_seconds[window],
            cost=cost,
        )
        if not result.allowed:
            reset_at = datetime.now(timezone.utc) + timedelta(seconds=result.reset_after)
            raise RateLimitedError(
                self._limit_message(window, tier, reset_at),
                reset_at=reset_at,
                reset_in=format_time_remaining(reset_at),
                window=window,
            )
        return self._state(window, tier, result.remaining, result.full_after)

    async def refund(self, user_id: str, tier: str, window: str, amount: int) -> int:
        if amount <= 0:
            return 0
        capacity = self._capacity(tier, window)
        remaining = await self.cache.refund_bucket(
            f"usage:{window}",
            self._subject(user_id, tier),
            capacity=capacity,
            window_seconds=self.window_seconds[window],
            amount=amount,
        )
        logger.info("budget_refunded", user_id=user_id, window=window, amount=amount)
        return remaining

    def _limit_message(self, window: str, tier: str, reset_at: datetime) -> str:
        message = (
            f"You've hit your {window} usage limit.\n\n"
            f"Your limit resets in {format_time_remaining(reset_at)}."
        )
        if enum_value(tier) == SubscriptionTier.PRO.value:
            message += " Upgrade to Ultra for higher limits."
        return message

    def _fail_open(self, user_id: str, tier: str, estimated_input_tokens: int) -> RateLimitInfo:
        logger.warning("budget_fail_open", user_id=user_id, tier=tier)
        return RateLimitInfo(
            remaining=FAIL_OPEN_LIMIT,
            limit=FAIL_OPEN_LIMIT,
            reset_at=datetime.now(timezone.utc) + FAIL_OPEN_RESET,
            estimated_input_tokens=estimated_input_tokens,
            fail_open=True,
            tracker=UsageRefundTracker(self, user_id, tier),
        )

    async def check_admission(
        self,
        user_id: str,
        tier: str,
        mode: str,
        estimated_input_tokens: int = 0,
    ) -> RateLimitInfo:
        """Admit a request or raise ``ForbiddenError``/``RateLimitedError``."""
        tier = enum_value(tier)
        if tier == SubscriptionTier.FREE.value and enum_value(mode) == ChatMode.AGENT.value:
            raise ForbiddenError(AGENT_UPGRADE_MESSAGE, detail={"required_tier": "pro"})
        if self.cache is None:
            if self.settings.budget_fail_open:
                return self._fail_open(user_id, tier, estimated_input_tokens)
            raise ServiceUnavailableError("Rate limiting service unavailable")
        try:
            if tier == SubscriptionTier.FREE.value:
                return await self._check_free_window(user_id, tier)
            return await self._check_buckets(user_id, tier, estimated_input_tokens)
        except StoreUnavailable as exc:
            logger.error("budget_store_unavailable", user_id=user_id, error=str(exc))
            raise ServiceUnavailableError(
                f"Rate limiting service unavailable: {exc}"
            ) from exc

    async def _check_free_window(self, user_id: str, tier: str) -> RateLimitInfo:
        limit = self.settings.free_rate_limit_requests
        result = await self.cache.hit_sliding_window(
            "free_limit",
            self._subject(user_id, tier),
            limit=limit,
            window_seconds=self.settings.free_rate_limit_window_seconds,
        )
        reset_at = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, result.reset_after))
        if not result.allowed:
            reset_in = format_time_remaining(reset_at)
            raise RateLimitedError(
                f"You've reached your rate limit, please try again after {reset_in}.\n\n"
                "Upgrade plan for higher usage limits and more features.",
                reset_at=reset_at,
                reset_in=reset_in,
                window="sliding",
            )
        return RateLimitInfo(
            remaining=result.remaining,
            limit=limit,
            reset_at=reset_at,
            tracker=UsageRefundTracker(self, user_id, tier),
        )

    async def _check_buckets(
        self, user_id: str, tier: str, estimated_input_tokens: int
    ) -> RateLimitInfo:
        limits = get_budget_limits(tier, pricing=self.pricing)
        if limits[SESSION] <= 0:
            raise ForbiddenError(AGENT_UPGRADE_MESSAGE, detail={"required_tier": "pro"})
        cost = calculate_token_cost(estimated_input_tokens, "input", pricing=self.pricing)

        weekly, session = await asyncio.gather(
            self.peek(user_id, tier, WEEKLY),
            self.peek(user_id, tier, SESSION),
        )
        for state in (weekly, session):
            if cost > state.remaining:
                rate = limits[state.window] / self.window_seconds[state.window]
                reset_at = datetime.now(timezone.utc) + timedelta(
                    seconds=(cost - state.remaining) / rate
                )
                logger.info(
                    "budget_exhausted",
                    user_id=user_id,
                    window=state.window,
                    cost=cost,
                    remaining=state.remaining,
                )
                raise RateLimitedError(
                    self._limit_message(state.window, tier, reset_at),
                    reset_at=reset_at,
                    reset_in=format_time_remaining(reset_at),
                    window=state.window,
                )

        tracker = UsageRefundTracker(self, user_id, tier)
        if cost > 0:
            weekly, session = await self._deduct_both(user_id, tier, cost, tracker)

        return RateLimitInfo(
            remaining=min(session.remaining, weekly.remaining),
            limit=min(limits[SESSION], limits[WEEKLY]),
            reset_at=min(session.reset_at, weekly.reset_at),
            session=session,
            weekly=weekly,
            estimated_input_tokens=estimated_input_tokens,
            tracker=tracker,
        )

    async def _deduct_both(
        self, user_id: str, tier: str, cost: int, tracker: UsageRefundTracker
    ) -> tuple[BucketState, BucketState]:
        """Deduct ``cost`` from both windows concurrently; both must succeed."""
        results = await asyncio.gather(
            self.deduct(user_id, tier, WEEKLY, cost),
            self.deduct(user_id, tier, SESSION, cost),
            return_exceptions=True,
        )
        failure: Optional[BaseException] = None
        for window, result in zip((WEEKLY, SESSION), results):
            if isinstance(result, BaseException):
                failure = failure or result
            else:
                tracker.record(window, cost)
        if failure is not None:
            # Lost a race after the peek; undo the half that went through.
            await tracker.refund_all()
            raise failure
        return results[0], results[1]

    async def deduct_usage(
        self,
        info: RateLimitInfo,
        *,
        user_id: str,
        tier: str,
        actual_input_tokens: int,
        actual_output_tokens: int,
    ) -> int:
        """Charge actual usage beyond the admission estimate. Never raises."""
        if info.fail_open or self.cache is None or enum_value(tier) == SubscriptionTier.FREE.value:
            return 0
        estimated_cost = calculate_token_cost(
            info.estimated_input_tokens, "input", pricing=self.pricing
        )
        actual_input_cost = calculate_token_cost(
            actual_input_tokens, "input", pricing=self.pricing
        )
        output_cost = calculate_token_cost(
            actual_output_tokens, "output", pricing=self.pricing
        )
        additional = max(0, actual_input_cost - estimated_cost) + output_cost
        if additional <= 0:
            return 0
        try:
            session, weekly = await asyncio.gather(
                self.peek(user_id, tier, SESSION),
                self.peek(user_id, tier, WEEKLY),
            )
            charge = min(additional, session.remaining, weekly.remaining)
            if charge <= 0:
                logger.info("budget_usage_uncharged", user_id=user_id, cost=additional)
                return 0
            await self._deduct_both(
                user_id, tier, charge, UsageRefundTracker(self, user_id, tier)
            )
        except (StoreUnavailable, RateLimitedError) as exc:
            logger.error(
                "budget_deduct_failed", user_id=user_id, cost=additional, error=str(exc)
            )
            return 0
        logger.info("budget_usage_deducted", user_id=user_id, cost=charge)
        return charge


def rate_limit_warnings(info: RateLimitInfo, tier: str, mode: str) -> List[dict]:
    """Warnings to show the client when a quota is close to running out."""
    if info.fail_open:
        return []
    warnings: List[dict] = []
    if enum_value(tier) == SubscriptionTier.FREE.value:
        if info.remaining <= WARNING_REMAINING_REQUESTS:
            warnings.append(
                {
                    "warningType": "sliding-window",
                    "remaining": info.remaining,
                    "resetTime": info.reset_at.isoformat(),
                    "mode": enum_value(mode),
                    "subscription": enum_value(tier),
                }
            )
        return warnings
    for state in (info.session, info.weekly):
        if state is None or state.limit <= 0:
            continue
        percent = state.remaining / state.limit * 100
        if percent <= WARNING_REMAINING_PERCENT:
            warnings.append(
                {
                    "warningType": "token-bucket",
                    "bucketType": state.window,
                    "remainingPercent": round(percent),
                    "resetTime": state.reset_at.isoformat(),
                    "subscription": enum_value(tier),
                }
            )
    return warnings
