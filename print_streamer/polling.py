"""Quota-aware access to platform state.

Every read of broadcast or stream state goes through :class:`PollingManager`,
which layers a response cache, per-key single flight, a token bucket and
exponential backoff with jitter over the raw reader. The platform charges each
call against a daily quota, so callers should never talk to the client
directly when a cached answer would do.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from .cache import MISS, ResponseCache
from .cancellation import CancellationToken
from .config import PollingConfig
from .errors import Cancelled, TransientPlatformError
from .models import PollingStats, PollResult
from .rate_limit import TokenBucket

logger = logging.getLogger(__name__)

Reader = Callable[[], Awaitable[Any]]
CacheKey = Tuple[str, Hashable]

# handed to followers when the leading read was cancelled
_ABANDONED = object()


class PollingManager:
    """Coordinates rate limiting, caching, backoff and idle scaling."""

    def __init__(
        self,
        config: PollingConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[CancellationToken] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self._clock = clock
        self._cancel = cancel or CancellationToken()
        self._rng = rng or random.Random()
        self.bucket = TokenBucket(config.requests_per_minute, 60.0)
        self.cache = ResponseCache(config.cache_duration_seconds, clock=clock)
        self._in_flight: Dict[CacheKey, asyncio.Future] = {}
        self._stats = PollingStats()
        self._last_activity = clock()
        self._current_base = config.base_interval_seconds

    # -- statistics -------------------------------------------------------

    @property
    def idle(self) -> bool:
        threshold = self.config.idle_threshold_minutes * 60.0
        return self._clock() - self._last_activity >= threshold

    @property
    def current_base_interval(self) -> float:
        return self._current_base

    def snapshot(self) -> PollingStats:
        return PollingStats(
            requests=self._stats.requests,
            cache_hits=self._stats.cache_hits,
            rate_limit_waits=self._stats.rate_limit_waits,
            idle=self.idle,
        )

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Polling cache cleared")

    def invalidate(self, kind: str, target_id: Hashable) -> None:
        self.cache.invalidate((kind, target_id))

    # -- intervals --------------------------------------------------------

    def next_interval(self, attempt: int) -> float:
        """Wait before poll or retry number ``attempt`` (1-based).

        The geometric term is clamped to ``[min, max]`` first and jitter is
        added on top, so the spread stays visible at the ceiling.
        """
        exponent = max(attempt - 1, 0)
        raw = self._current_base * self.config.backoff_multiplier ** exponent
        clamped = min(max(raw, self.config.min_interval_seconds), self.config.max_interval_seconds)
        return clamped + self._rng.uniform(0.0, self.config.max_jitter_seconds)

    def idle_interval(self) -> float:
        return self.config.max_interval_seconds

    def _mark_activity(self) -> None:
        if self.idle:
            self._current_base = self.config.max_interval_seconds
            logger.debug("Polling idle; base interval raised to %.1fs", self._current_base)
        else:
            self._current_base = self.config.base_interval_seconds
        self._last_activity = self._clock()

    # -- waiting ----------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    async def sleep(self, delay: float, cancel: Optional[CancellationToken] = None) -> None:
        """Interruptible wait used by callers pacing their own loops."""
        await self._pause(delay, cancel or self._cancel)

    async def _pause(self, delay: float, cancel: CancellationToken) -> None:
        await cancel.sleep(delay)

    async def _throttle(self, cancel: CancellationToken) -> None:
        wait = self.bucket.acquire(self._clock())
        if wait > 0:
            self._stats.rate_limit_waits += 1
            logger.debug("Rate limit reached; waiting %.2fs", wait)
            await self._pause(wait, cancel)

    async def _call(self, kind: str, reader: Reader, cancel: CancellationToken) -> Any:
        """Run one upstream call, bounded by ``max_interval_seconds`` and the cancel token."""
        read = asyncio.ensure_future(reader())
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {read, stop}, timeout=self.config.max_interval_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (read, stop):
                if not task.done():
                    task.cancel()
        if read in done:
            return read.result()
        if stop in done:
            raise Cancelled(f"{kind} read cancelled")
        raise TransientPlatformError(f"{kind} read timed out", reason="timeout")

    async def _request(self, kind: str, reader: Reader, cancel: CancellationToken, retry: bool = True) -> Any:
        attempt = 0
        while True:
            cancel.raise_if_cancelled()
            await self._throttle(cancel)
            cancel.raise_if_cancelled()
            self._stats.requests += 1
            try:
                return await self._call(kind, reader, cancel)
            except TransientPlatformError as exc:
                attempt += 1
                if not retry or attempt > self.config.max_retries:
                    logger.warning("%s failed after %d attempt(s): %s", kind, attempt, exc)
                    raise
                delay = self.next_interval(attempt)
                logger.warning("%s transient failure (%s); retry %d in %.1fs", kind, exc, attempt, delay)
            await self._pause(delay, cancel)

    # -- public primitives ------------------------------------------------

    async def observe(
        self, kind: str, target_id: Hashable, reader: Reader, cancel: Optional[CancellationToken] = None
    ) -> Any:
        """Read ``(kind, target_id)`` through the cache, single flight, rate limit and backoff.

        Followers of an in-flight read wait under their own cancel token. If the
        leader is cancelled first they are released and one of them retries.
        """
        cancel = cancel or self._cancel
        if not self.config.enabled:
            self._stats.requests += 1
            return await reader()

        key: CacheKey = (kind, target_id)
        while True:
            cached = self.cache.get(key)
            if cached is not MISS:
                self._stats.cache_hits += 1
                return cached
            pending = self._in_flight.get(key)
            if pending is None:
                break
            value = await cancel.race(asyncio.shield(pending))
            if value is not _ABANDONED:
                self._stats.cache_hits += 1
                return value

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        self._mark_activity()
        try:
            value = await self._request(kind, reader, cancel)
        except (Cancelled, asyncio.CancelledError):
            future.set_result(_ABANDONED)
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        else:
            self.cache.put(key, value)
            future.set_result(value)
            return value
        finally:
            self._in_flight.pop(key, None)

    async def execute(
        self, kind: str, action: Reader, retry: bool = True, cancel: Optional[CancellationToken] = None
    ) -> Any:
        """Run a platform write under the rate limit, with backoff on transient errors."""
        cancel = cancel or self._cancel
        if not self.config.enabled:
            self._stats.requests += 1
            return await action()
        self._mark_activity()
        return await self._request(kind, action, cancel, retry=retry)

    async def wait_until_rising_edge(
        self,
        kind: str,
        target_id: Hashable,
        reader: Reader,
        predicate: Callable[[Any], bool],
        timeout: float,
        abort: Optional[Callable[[Any], bool]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PollResult:
        """Observe until ``predicate`` holds, ``abort`` holds, or ``timeout`` elapses.

        Raises :class:`Cancelled` when the cancel token fires mid-wait. Transient
        errors that exhaust the retries are treated as a non-matching sample
        while time remains.
        """
        cancel = cancel or self._cancel
        deadline = self._clock() + timeout
        result = PollResult(matched=False)
        while True:
            cancel.raise_if_cancelled()
            try:
                value = await self.observe(kind, target_id, reader, cancel=cancel)
            except TransientPlatformError:
                value = result.last_value
            else:
                result.last_value = value
            result.attempts += 1
            if value is not None and predicate(value):
                result.matched = True
                return result
            if value is not None and abort is not None and abort(value):
                logger.info("%s %s reached an abort state", kind, target_id)
                return result
            remaining = deadline - self._clock()
            if remaining <= 0:
                return result
            await self._pause(min(self.next_interval(result.attempts), remaining), cancel)
