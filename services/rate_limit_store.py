"""
Storage for login rate limiting state.

The rate limiting middleware keeps one `RateLimitInfo` per `ip:endpoint` key and
updates it through `RateLimitStore.update`, which applies a transition function
atomically for that key. `InMemoryRateLimitStore` is process local and only
correct for single instance deployments; `RedisRateLimitStore` shares state
between instances.
"""

import math
import logging
import threading

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Annotated, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio
from redis.exceptions import WatchError

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimitInfo(BaseModel):
    """Rate limit state of a single client key."""

    first_attempt: datetime
    attempts: Annotated[int, Field(default=0, ge=0)]
    is_locked_out: Annotated[bool, Field(default=False)]
    lockout_until: Optional[datetime] = None


class RateLimitPolicy(BaseModel):
    """Thresholds of the sliding window and lockout state machine."""

    max_attempts: Annotated[int, Field(default=5, gt=0)]
    window: Annotated[timedelta, Field(default=timedelta(minutes=15))]
    lockout: Annotated[timedelta, Field(default=timedelta(minutes=30))]

    @property
    def state_ttl(self) -> timedelta:
        return self.window + self.lockout


class RateLimitDecision(BaseModel):
    """Whether a request was allowed and, if not, when to retry."""

    is_limited: bool
    attempts: int
    retry_after: Annotated[int, Field(default=0)]  # Seconds until the lockout ends


def register_attempt(
    info: Optional[RateLimitInfo], now: datetime, policy: RateLimitPolicy
) -> Tuple[RateLimitInfo, RateLimitDecision]:
    """Apply one request to the rate limit state of a key.

    Args:
        info (Optional[RateLimitInfo]): Current state, `None` for an unseen key.
        now (datetime): Time of the request.
        policy (RateLimitPolicy): Thresholds to enforce.

    Returns:
        Tuple[RateLimitInfo, RateLimitDecision]: The new state and the decision for this request.
    """
    if info is None:
        info = RateLimitInfo(first_attempt=now)
    else:
        info = info.model_copy()

        if info.is_locked_out and info.lockout_until and now < info.lockout_until:
            return info, RateLimitDecision(
                is_limited=True,
                attempts=info.attempts,
                retry_after=_seconds_until(info.lockout_until, now),
            )

        if info.is_locked_out:
            # Lockout elapsed, start a fresh window
            info.is_locked_out = False
            info.lockout_until = None
            info.attempts = 0
            info.first_attempt = now

        if now < info.first_attempt + policy.window:
            if info.attempts >= policy.max_attempts:
                info.is_locked_out = True
                info.lockout_until = now + policy.lockout
                return info, RateLimitDecision(
                    is_limited=True,
                    attempts=info.attempts,
                    retry_after=_seconds_until(info.lockout_until, now),
                )
        else:
            info.attempts = 0
            info.first_attempt = now

    info.attempts += 1
    return info, RateLimitDecision(is_limited=False, attempts=info.attempts)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))


class RateLimitStore(ABC):
    """Concurrent key/value store for rate limit state."""

    @abstractmethod
    async def update(
        self,
        key: str,
        transition: Callable[[Optional[RateLimitInfo]], Tuple[RateLimitInfo, T]],
        ttl: timedelta,
    ) -> T:
        """Atomically replace the state of `key` with the result of `transition`."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitInfo]:
        ...

    async def purge(self, older_than: datetime) -> int:
        """Drop state that has not been touched since `older_than`."""
        return 0


class InMemoryRateLimitStore(RateLimitStore):
    """Thread safe in process store. State is lost on restart."""

    def __init__(self):
        self._entries: Dict[str, RateLimitInfo] = {}
        self._lock = threading.Lock()

    async def update(self, key, transition, ttl):
        with self._lock:
            info, result = transition(self._entries.get(key))
            self._entries[key] = info
        return result

    async def get(self, key: str) -> Optional[RateLimitInfo]:
        with self._lock:
            info = self._entries.get(key)
            return info.model_copy() if info else None

    async def purge(self, older_than: datetime) -> int:
        with self._lock:
            stale = [
                key for key, info in self._entries.items()
                if info.first_attempt < older_than
                and (info.lockout_until is None or info.lockout_until < older_than)
            ]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info(f"Cleaned up {len(stale)} inactive rate limit entries")
        return len(stale)


class RedisRateLimitStore(RateLimitStore):
    """Redis backed store using optimistic WATCH/MULTI transactions."""

    def __init__(
        self,
        redis_client: redis.asyncio.Redis,
        key_prefix: str = "rate_limit:",
        max_retries: int = 10,
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.max_retries = max_retries

    async def update(self, key, transition, ttl):
        redis_key = f"{self.key_prefix}{key}"
        expire_seconds = max(1, int(ttl.total_seconds()))

        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(self.max_retries):
                try:
                    await pipe.watch(redis_key)
                    raw = await pipe.get(redis_key)
                    current = RateLimitInfo.model_validate_json(raw) if raw else None

                    info, result = transition(current)

                    pipe.multi()
                    pipe.set(redis_key, info.model_dump_json(), ex=expire_seconds)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug(f"Concurrent update of {redis_key}, retrying")
                    continue

        raise RuntimeError(f"Could not update rate limit state for {key} after {self.max_retries} attempts")

    async def get(self, key: str) -> Optional[RateLimitInfo]:
        raw = await self.redis.get(f"{self.key_prefix}{key}")
        return RateLimitInfo.model_validate_json(raw) if raw else None
