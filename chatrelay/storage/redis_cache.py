from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from chatrelay.logging import get_logger
from chatrelay.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@dataclass
class BucketResult:
    """Outcome of a token-bucket call.

    ``remaining`` is the balance after the call. ``reset_after`` is the number
    of seconds until the requested cost would fit (0 when allowed) and
    ``full_after`` the number of seconds until the bucket is back at capacity.
    """

    allowed: bool
    remaining: int
    reset_after: float
    full_after: float


@dataclass
class WindowResult:
    allowed: bool
    remaining: int
    reset_after: float


def cancel_channel(conversation_id: str) -> str:
    return f"cancel:{conversation_id}"


def _bucket_key(prefix: str, subject: str) -> str:
    # Hash the subject so user-controlled ids cannot collide across prefixes.
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"{prefix}:{digest}"


class RedisChannelSubscription:
    """One pub/sub subscription; yields decoded JSON payloads."""

    def __init__(self, pubsub: aioredis.client.PubSub, channel: str) -> None:
        self._pubsub = pubsub
        self.channel = channel
        self._closed = False

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                payload = json.loads(raw.get("data") or "{}")
            except (TypeError, ValueError):
                logger.warning("pubsub_payload_invalid", channel=self.channel)
                continue
            if isinstance(payload, dict):
                yield payload

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.aclose()


class RedisCache:
    """Redis-backed budget buckets, cancellation signals and stream logs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    supports_pubsub = True

    # Atomic refill + consume. A cost of 0 refills and reports without spending.
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)
local ttl = math.max(math.ceil(capacity / refill_rate), 1)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
  redis.call('EXPIRE', key, ttl)
  return {0, tostring(tokens), tostring((cost - tokens) / refill_rate), tostring((capacity - tokens) / refill_rate)}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, ttl)
return {1, tostring(tokens), '0', tostring((capacity - tokens) / refill_rate)}
"""

    # Atomic refund, capped at capacity.
    _REFUND_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local amount = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  return tostring(capacity)
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate + amount)
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return tostring(tokens)
"""

    # Sliding window request counter over a sorted set of timestamps.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_after = 0
if oldest[2] ~= nil then
  reset_after = tonumber(oldest[2]) + window - now
end

if count >= limit then
  return {0, 0, tostring(reset_after)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
if count == 0 then
  reset_after = window
end
return {1, limit - count - 1, tostring(reset_after)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._refund = self.client.register_script(self._REFUND_SCRIPT)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # budget buckets
    async def consume_bucket(
        self, prefix: str, subject: str, *, capacity: int, window_seconds: int, cost: int
    ) -> BucketResult:
        refill_rate = float(capacity) / float(window_seconds)
        try:
            allowed, tokens, reset_after, full_after = await self._token_bucket(
                keys=[_bucket_key(prefix, subject)],
                args=[time.time(), refill_rate, capacity, max(0, cost)],
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return BucketResult(
            allowed=bool(int(allowed)),
            remaining=max(0, int(float(tokens))),
            reset_after=float(reset_after),
            full_after=float(full_after),
        )

    async def refund_bucket(
        self, prefix: str, subject: str, *, capacity: int, window_seconds: int, amount: int
    ) -> int:
        refill_rate = float(capacity) / float(window_seconds)
        try:
            tokens = await self._refund(
                keys=[_bucket_key(prefix, subject)],
                args=[time.time(), refill_rate, capacity, max(0, amount)],
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return max(0, int(float(tokens)))

    async def hit_sliding_window(
        self, prefix: str, subject: str, *, limit: int, window_seconds: int
    ) -> WindowResult:
        now = time.time()
        try:
            allowed, remaining, reset_after = await self._sliding_window(
                keys=[_bucket_key(prefix, subject)],
                args=[now, window_seconds, limit, f"{now:.6f}:{id(object())}"],
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return WindowResult(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            reset_after=float(reset_after),
        )

    # cancellation
    async def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        return await self.client.publish(channel, json.dumps(payload))

    async def subscribe(self, channel: str) -> RedisChannelSubscription:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        return RedisChannelSubscription(pubsub, channel)

    async def set_cancel_flag(self, conversation_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"cancel:flag:{conversation_id}", "1", ex=ttl_seconds)

    async def get_cancel_flag(self, conversation_id: str) -> bool:
        return bool(await self.client.exists(f"cancel:flag:{conversation_id}"))

    async def clear_cancel_flag(self, conversation_id: str) -> None:
        await self.client.delete(f"cancel:flag:{conversation_id}")

    # resumable streams
    async def append_stream_frame(self, stream_id: str, frame: str, ttl_seconds: int) -> None:
        key = f"stream:{stream_id}:frames"
        pipe = self.client.pipeline()
        pipe.rpush(key, frame)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    async def read_stream_frames(self, stream_id: str, start: int = 0) -> List[str]:
        return await self.client.lrange(f"stream:{stream_id}:frames", start, -1)

    async def mark_stream_done(self, stream_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"stream:{stream_id}:done", "1", ex=ttl_seconds)

    async def is_stream_done(self, stream_id: str) -> bool:
        return bool(await self.client.exists(f"stream:{stream_id}:done"))

    async def stream_exists(self, stream_id: str) -> bool:
        return bool(await self.client.exists(f"stream:{stream_id}:frames"))


class LocalChannelSubscription:
    def __init__(self, owner: "LocalCache", channel: str) -> None:
        self._owner = owner
        self.channel = channel
        self.queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while not self._closed:
            payload = await self.queue.get()
            if payload is None:
                return
            yield payload

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._owner._subscribers.get(self.channel, set()).discard(self)
        self.queue.put_nowait(None)


class LocalCache:
    """Single-process stand-in for :class:`RedisCache`.

    Used in development and tests when Redis is unreachable and
    ``ALLOW_REDIS_FALLBACK_DEV`` is set. State lives in this process only.
    Keys expire on the same TTLs the Redis implementation sets; expired keys
    are swept at most once per ``sweep_interval`` seconds.
    """

    supports_pubsub = True

    def __init__(self, sweep_interval: float = 60.0) -> None:
        self._buckets: Dict[str, tuple[float, float]] = {}
        self._windows: Dict[str, List[float]] = {}
        self._flags: Dict[str, float] = {}
        self._frames: Dict[str, List[str]] = {}
        self._done: Dict[str, bool] = {}
        self._expiry: Dict[tuple[str, str], float] = {}
        self._subscribers: Dict[str, set[LocalChannelSubscription]] = {}
        self._lock = asyncio.Lock()
        self.sweep_interval = sweep_interval
        self._last_sweep = time.time()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.close()

    def _expire(self, table: str, key: str, ttl_seconds: float) -> None:
        self._expiry[(table, key)] = time.time() + ttl_seconds

    def _alive(self, table: str, key: str) -> bool:
        deadline = self._expiry.get((table, key))
        if deadline is not None and deadline <= time.time():
            del self._expiry[(table, key)]
            getattr(self, table).pop(key, None)
        return key in getattr(self, table)

    def _sweep(self) -> None:
        now = time.time()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        for (table, key), deadline in list(self._expiry.items()):
            if deadline <= now:
                del self._expiry[(table, key)]
                getattr(self, table).pop(key, None)

    def _refill(self, key: str, capacity: int, refill_rate: float, now: float) -> float:
        tokens, last = self._buckets.get(key, (float(capacity), now))
        return min(float(capacity), tokens + max(0.0, now - last) * refill_rate)

    async def consume_bucket(
        self, prefix: str, subject: str, *, capacity: int, window_seconds: int, cost: int
    ) -> BucketResult:
        key = _bucket_key(prefix, subject)
        refill_rate = float(capacity) / float(window_seconds)
        cost = max(0, cost)
        async with self._lock:
            self._sweep()
            now = time.time()
            tokens = self._refill(key, capacity, refill_rate, now)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            self._expire("_buckets", key, max(window_seconds, 1))
        return BucketResult(
            allowed=allowed,
            remaining=max(0, int(tokens)),
            reset_after=0.0 if allowed else (cost - tokens) / refill_rate,
            full_after=(capacity - tokens) / refill_rate,
        )

    async def refund_bucket(
        self, prefix: str, subject: str, *, capacity: int, window_seconds: int, amount: int
    ) -> int:
        key = _bucket_key(prefix, subject)
        refill_rate = float(capacity) / float(window_seconds)
        async with self._lock:
            if not self._alive("_buckets", key):
                return capacity
            now = time.time()
            tokens = min(float(capacity), self._refill(key, capacity, refill_rate, now) + max(0, amount))
            self._buckets[key] = (tokens, now)
            self._expire("_buckets", key, max(window_seconds, 1))
        return max(0, int(tokens))

    async def hit_sliding_window(
        self, prefix: str, subject: str, *, limit: int, window_seconds: int
    ) -> WindowResult:
        key = _bucket_key(prefix, subject)
        async with self._lock:
            self._sweep()
            now = time.time()
            hits = [ts for ts in self._windows.get(key, []) if ts > now - window_seconds]
            if len(hits) >= limit:
                self._windows[key] = hits
                return WindowResult(False, 0, hits[0] + window_seconds - now)
            hits.append(now)
            self._windows[key] = hits
            self._expire("_windows", key, window_seconds)
            return WindowResult(True, limit - len(hits), hits[0] + window_seconds - now)

    async def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        subs = list(self._subscribers.get(channel, set()))
        for sub in subs:
            sub.queue.put_nowait(dict(payload))
        return len(subs)

    async def subscribe(self, channel: str) -> LocalChannelSubscription:
        sub = LocalChannelSubscription(self, channel)
        self._subscribers.setdefault(channel, set()).add(sub)
        return sub

    async def set_cancel_flag(self, conversation_id: str, ttl_seconds: int) -> None:
        self._sweep()
        self._flags[conversation_id] = time.time() + ttl_seconds
        self._expire("_flags", conversation_id, ttl_seconds)

    async def get_cancel_flag(self, conversation_id: str) -> bool:
        return self._alive("_flags", conversation_id)

    async def clear_cancel_flag(self, conversation_id: str) -> None:
        self._flags.pop(conversation_id, None)
        self._expiry.pop(("_flags", conversation_id), None)

    async def append_stream_frame(self, stream_id: str, frame: str, ttl_seconds: int) -> None:
        self._sweep()
        if not self._alive("_frames", stream_id):
            self._frames[stream_id] = []
        self._frames[stream_id].append(frame)
        self._expire("_frames", stream_id, ttl_seconds)

    async def read_stream_frames(self, stream_id: str, start: int = 0) -> List[str]:
        if not self._alive("_frames", stream_id):
            return []
        return list(self._frames[stream_id][start:])

    async def mark_stream_done(self, stream_id: str, ttl_seconds: int) -> None:
        self._done[stream_id] = True
        self._expire("_done", stream_id, ttl_seconds)

    async def is_stream_done(self, stream_id: str) -> bool:
        return self._alive("_done", stream_id)

    async def stream_exists(self, stream_id: str) -> bool:
        return self._alive("_frames", stream_id)
