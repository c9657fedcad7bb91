"""
Token bucket evaluators for the Gateway rate limiter.

The Redis evaluator runs the whole refill/deduct step inside one Lua script
so that concurrent gateways sharing a Redis never observe intermediate
bucket state. The local evaluator runs the same arithmetic in process for
single instance deployments and tests.
"""

import asyncio
import heapq
import math
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import MalformedResultError, StoreUnavailableError
from shared.logging import get_logger
from .models import BucketOutcome

KEY_PREFIX = "request_rate_limiter"
SCRIPT_PATH = Path(__file__).with_name("request_rate_limiter.lua")


def get_keys(key: str) -> List[str]:
    """Return the tokens and timestamp keys for a limiting key.

    Both keys share the ``{key}`` hash tag so a Redis cluster places them
    in the same slot.
    """
    prefix = f"{KEY_PREFIX}.{{{key}"
    return [f"{prefix}}}.tokens", f"{prefix}}}.timestamp"]


def bucket_ttl(rate: int, capacity: int) -> int:
    """Idle bucket expiry: twice the time needed to fill an empty bucket."""
    fill_time = capacity / rate
    return math.floor(fill_time * 2)


def take_tokens(tokens: float, last_refreshed: int, now: int,
                rate: int, capacity: int, requested: int) -> Tuple[bool, float]:
    """Refill a bucket up to ``now`` and try to take ``requested`` tokens."""
    delta = max(0, now - last_refreshed)
    filled = min(capacity, tokens + delta * rate)
    if filled >= requested:
        return True, filled - requested
    return False, filled


def load_script() -> str:
    """Read the bundled Lua source."""
    return SCRIPT_PATH.read_text(encoding="utf-8")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a valid integer reply")
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return int(value)


def parse_result(result: Any) -> BucketOutcome:
    """Validate a ``[allowed_flag, tokens_remaining]`` reply."""
    if not isinstance(result, (list, tuple)) or len(result) != 2:
        raise MalformedResultError(details={"result": repr(result)})

    try:
        allowed_flag = _as_int(result[0])
        tokens_remaining = _as_int(result[1])
    except (TypeError, ValueError) as e:
        raise MalformedResultError(details={"result": repr(result)}) from e

    if allowed_flag not in (0, 1) or tokens_remaining < 0:
        raise MalformedResultError(details={"result": repr(result)})

    return BucketOutcome(allowed=allowed_flag == 1, tokens_remaining=tokens_remaining)


class BucketEvaluator(ABC):
    """Atomically refills a bucket and takes tokens from it."""

    @abstractmethod
    async def evaluate(self, key: str, rate: int, capacity: int, requested: int) -> BucketOutcome:
        """Evaluate one request against the bucket for ``key``."""

    async def ping(self) -> bool:
        """Check that the backing store is reachable."""
        return True

    async def close(self) -> None:
        """Release store resources."""


class RedisBucketEvaluator(BucketEvaluator):
    """Distributed token bucket evaluated by a Redis Lua script."""

    def __init__(self, redis_client: redis.Redis, script_source: Optional[str] = None):
        self.logger = get_logger("gateway.rate_limiter.redis")
        self._redis = redis_client
        self._script = redis_client.register_script(script_source or load_script())

    async def evaluate(self, key: str, rate: int, capacity: int, requested: int) -> BucketOutcome:
        keys = get_keys(key)
        # ARGV[3] is reserved and left empty.
        args = [str(rate), str(capacity), "", str(requested)]

        try:
            result = await self._script(keys=keys, args=args)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(
                "Error calling rate limiter script",
                details={"error": str(e)}
            ) from e

        return parse_result(result)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            self.logger.warning("Quota store ping failed", error=str(e))
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class LocalBucketEvaluator(BucketEvaluator):
    """In-process token bucket for a single gateway instance.

    Buckets are serialised per key through a fixed set of sharded locks.
    Idle buckets expire after the same TTL the Redis script applies; each
    write also evicts up to ``sweep_batch`` expired entries, oldest first.
    """

    def __init__(self, clock: Callable[[], float] = time.time, shards: int = 64,
                 sweep_batch: int = 1024):
        self.logger = get_logger("gateway.rate_limiter.local")
        self._clock = clock
        self._locks = [asyncio.Lock() for _ in range(shards)]
        self._sweep_batch = sweep_batch
        # store key -> (value, expires_at)
        self._entries: Dict[str, Tuple[float, int]] = {}
        # (expires_at, store key); stale items are skipped when popped
        self._expiry: List[Tuple[int, str]] = []

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _get(self, store_key: str, now: int) -> Optional[float]:
        entry = self._entries.get(store_key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[store_key]
            return None
        return value

    def _set(self, store_key: str, value: float, expires_at: int):
        self._entries[store_key] = (value, expires_at)
        heapq.heappush(self._expiry, (expires_at, store_key))

    def _sweep(self, now: int):
        for _ in range(self._sweep_batch):
            if not self._expiry or self._expiry[0][0] > now:
                return
            _, store_key = heapq.heappop(self._expiry)
            entry = self._entries.get(store_key)
            if entry is not None and entry[1] <= now:
                del self._entries[store_key]

    async def evaluate(self, key: str, rate: int, capacity: int, requested: int) -> BucketOutcome:
        tokens_key, timestamp_key = get_keys(key)

        async with self._lock_for(key):
            now = int(self._clock())
            last_tokens = self._get(tokens_key, now)
            if last_tokens is None:
                last_tokens = capacity
            last_refreshed = self._get(timestamp_key, now)
            if last_refreshed is None:
                last_refreshed = 0

            allowed, new_tokens = take_tokens(
                last_tokens, int(last_refreshed), now, rate, capacity, requested
            )

            ttl = bucket_ttl(rate, capacity)
            if ttl > 0:
                self._set(tokens_key, new_tokens, now + ttl)
                self._set(timestamp_key, now, now + ttl)
            self._sweep(now)

        return BucketOutcome(allowed=allowed, tokens_remaining=int(new_tokens))

    def bucket_count(self) -> int:
        """Number of live buckets, counting each key once."""
        now = int(self._clock())
        return sum(
            1 for store_key, (_, expires_at) in self._entries.items()
            if store_key.endswith(".tokens") and expires_at > now
        )

    def entry_count(self) -> int:
        """Number of stored entries, expired or not, two per bucket."""
        return len(self._entries)
