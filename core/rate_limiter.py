# core/rate_limiter.py
"""
Fixed-window rate counters keyed by (purpose, identity) scope keys.

A window counts events on [window_start, window_start + duration). A check
made after that interval starts a fresh window at "now". This admits up to
twice the limit across a window boundary in exchange for O(1) memory and
O(1) checks; callers size their limits with that in mind.

Guards reserve quota with hit(): compare against the limit and increment in
one atomic step, so parallel requests on one scope can never all pass the
check before any of them is counted. A reservation that turns out not to be
needed (a later scope of the same request was exhausted) is handed back with
release().

Two backings share the CounterStore interface:
- MemoryCounterStore: per-process dict, striped locks
- RedisCounterStore: shared across instances, window = key TTL, hit/release
  run as server-side scripts
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis

from core.errors import DependencyUnavailable

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Counter state for one scope key"""
    scope_key: str
    window_start: float
    count: int
    duration: float
    limit: Optional[int] = None

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.duration


@dataclass(frozen=True)
class WindowStatus:
    """Result of a counter check or reservation"""
    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class CounterStore(ABC):
    """Backing store for window counters"""

    @abstractmethod
    def current(self, scope_key: str, duration: float, now: float) -> Tuple[int, float]:
        """Return (count, window_start) for the live window; (0, now) when there is none"""

    @abstractmethod
    def incr(self, scope_key: str, duration: float, now: float) -> int:
        """Atomically add one to the live window and return the new count"""

    @abstractmethod
    def hit(self, scope_key: str, limit: int, duration: float,
            now: float) -> Tuple[bool, int, float]:
        """
        Atomically count one event if the window is below limit

        Returns:
            (allowed, count, window_start); count includes this event when
            allowed and is left untouched when not
        """

    @abstractmethod
    def release(self, scope_key: str, duration: float, now: float) -> None:
        """Hand back one event counted by hit() in the live window"""

    @abstractmethod
    def delete(self, scope_key: str) -> None:
        pass

    def sweep(self, now: float) -> int:
        return 0


class MemoryCounterStore(CounterStore):
    """
    In-process counters for single-instance deployments.

    Scope keys are striped over a fixed set of locks: every key always maps
    to the same lock, so concurrent increments for one key are serialised
    while most unrelated keys proceed in parallel.
    """

    def __init__(self, stripes: int = 64):
        self._windows: Dict[str, RateWindow] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, scope_key: str) -> threading.Lock:
        return self._locks[hash(scope_key) % len(self._locks)]

    def _existing(self, scope_key: str, now: float) -> Optional[RateWindow]:
        # caller holds the scope lock
        window = self._windows.get(scope_key)
        if window is not None and window.expired(now):
            del self._windows[scope_key]
            return None
        return window

    def _live(self, scope_key: str, duration: float, now: float) -> RateWindow:
        # caller holds the scope lock
        window = self._existing(scope_key, now)
        if window is None:
            window = RateWindow(scope_key=scope_key, window_start=now, count=0, duration=duration)
            self._windows[scope_key] = window
        return window

    def current(self, scope_key: str, duration: float, now: float) -> Tuple[int, float]:
        with self._lock_for(scope_key):
            window = self._existing(scope_key, now)
            if window is None:
                return 0, now
            return window.count, window.window_start

    def incr(self, scope_key: str, duration: float, now: float) -> int:
        with self._lock_for(scope_key):
            window = self._live(scope_key, duration, now)
            window.count += 1
            return window.count

    def hit(self, scope_key: str, limit: int, duration: float,
            now: float) -> Tuple[bool, int, float]:
        with self._lock_for(scope_key):
            window = self._existing(scope_key, now)
            if window is not None and window.count >= limit:
                return False, window.count, window.window_start
            if window is None:
                window = RateWindow(scope_key=scope_key, window_start=now, count=0,
                                    duration=duration, limit=limit)
                self._windows[scope_key] = window
            window.count += 1
            return True, window.count, window.window_start

    def release(self, scope_key: str, duration: float, now: float) -> None:
        with self._lock_for(scope_key):
            window = self._existing(scope_key, now)
            if window is not None and window.count > 0:
                window.count -= 1

    def delete(self, scope_key: str) -> None:
        with self._lock_for(scope_key):
            self._windows.pop(scope_key, None)

    def sweep(self, now: float) -> int:
        """Drop windows that have run out"""
        removed = 0
        for key in list(self._windows):
            with self._lock_for(key):
                window = self._windows.get(key)
                if window is not None and window.expired(now):
                    del self._windows[key]
                    removed += 1
        if removed:
            logger.debug(f"Swept {removed} expired rate windows")
        return removed


# KEYS[1] counter key; ARGV[1] limit, ARGV[2] window in ms
HIT_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
    return {0, count, redis.call('PTTL', KEYS[1])}
end
count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, count, redis.call('PTTL', KEYS[1])}
"""

RELEASE_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


class RedisCounterStore(CounterStore):
    """
    Redis counters for multi-instance deployments.

    The window is the key's TTL: the first increment creates the key with a
    PX expiry and INCR keeps it. incr() runs both in one MULTI/EXEC; hit()
    and release() are Lua scripts, so the compare and the increment happen
    in one server-side step and two instances can never both take the last
    slot of a window.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = 'rate_limit'):
        self.redis_client = redis_client
        self.prefix = prefix
        self._hit = redis_client.register_script(HIT_SCRIPT)
        self._release = redis_client.register_script(RELEASE_SCRIPT)

    def _key(self, scope_key: str) -> str:
        return f"{self.prefix}:{scope_key}"

    @staticmethod
    def _window_start(pttl: Optional[int], duration: float, now: float) -> float:
        if pttl is None or pttl < 0:
            return now
        return now - (duration - pttl / 1000.0)

    def current(self, scope_key: str, duration: float, now: float) -> Tuple[int, float]:
        key = self._key(scope_key)
        try:
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.get(key)
            pipe.pttl(key)
            value, pttl = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Rate limit read failed for {scope_key}: {str(e)}")
            raise DependencyUnavailable("rate_limit_store") from e

        if value is None or pttl is None or pttl < 0:
            return 0, now
        return int(value), self._window_start(pttl, duration, now)

    def incr(self, scope_key: str, duration: float, now: float) -> int:
        key = self._key(scope_key)
        try:
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.set(key, 0, px=int(duration * 1000), nx=True)
            pipe.incr(key)
            _, count = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Rate limit increment failed for {scope_key}: {str(e)}")
            raise DependencyUnavailable("rate_limit_store") from e
        return int(count)

    def hit(self, scope_key: str, limit: int, duration: float,
            now: float) -> Tuple[bool, int, float]:
        try:
            allowed, count, pttl = self._hit(keys=[self._key(scope_key)],
                                             args=[limit, int(duration * 1000)])
        except redis.RedisError as e:
            logger.error(f"Rate limit hit failed for {scope_key}: {str(e)}")
            raise DependencyUnavailable("rate_limit_store") from e
        return bool(int(allowed)), int(count), self._window_start(int(pttl), duration, now)

    def release(self, scope_key: str, duration: float, now: float) -> None:
        try:
            self._release(keys=[self._key(scope_key)])
        except redis.RedisError as e:
            logger.error(f"Rate limit release failed for {scope_key}: {str(e)}")
            raise DependencyUnavailable("rate_limit_store") from e

    def delete(self, scope_key: str) -> None:
        try:
            self.redis_client.delete(self._key(scope_key))
        except redis.RedisError as e:
            raise DependencyUnavailable("rate_limit_store") from e


class SlidingWindowCounter:
    """
    Window counter front-end used by the login and message guards
    """

    def __init__(self, store: Optional[CounterStore] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store or MemoryCounterStore()
        self.clock = clock

    @staticmethod
    def _retry_after(window_start: float, duration: float, now: float) -> int:
        return max(1, int(round(window_start + duration - now)))

    def check(self, scope_key: str, limit: int, duration: float) -> WindowStatus:
        """
        Check a scope against its limit without consuming quota

        Args:
            scope_key: Counter key (purpose + identity)
            limit: Maximum events per window
            duration: Window length in seconds

        Returns:
            WindowStatus with allowed, current count and retry hint
        """
        now = self.clock()
        count, window_start = self.store.current(scope_key, duration, now)
        allowed = count < limit
        retry_after = 0 if allowed else self._retry_after(window_start, duration, now)
        return WindowStatus(allowed=allowed, count=count, limit=limit, retry_after=retry_after)

    def hit(self, scope_key: str, limit: int, duration: float) -> WindowStatus:
        """
        Reserve one event in the scope if it is below limit

        The compare and the increment are one atomic step in the store.
        When allowed, count includes the reserved event.
        """
        now = self.clock()
        allowed, count, window_start = self.store.hit(scope_key, limit, duration, now)
        retry_after = 0 if allowed else self._retry_after(window_start, duration, now)
        return WindowStatus(allowed=allowed, count=count, limit=limit, retry_after=retry_after)

    def release(self, scope_key: str, duration: float) -> None:
        self.store.release(scope_key, duration, self.clock())

    def increment(self, scope_key: str, duration: float) -> int:
        return self.store.incr(scope_key, duration, self.clock())

    def reset(self, scope_key: str) -> None:
        self.store.delete(scope_key)

    def sweep(self) -> int:
        return self.store.sweep(self.clock())
