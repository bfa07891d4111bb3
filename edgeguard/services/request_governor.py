#  EdgeGuard - Request Governor
#
#  Client-side governor for outbound calls: deduplicates identical in-flight
#  calls, spaces calls per endpoint (minimum interval + sliding window), and
#  widens an endpoint's interval when the remote signals throttling.
#  A background sweep evicts leaked entries; it is started and stopped with
#  the owning component's lifecycle.
#
#  Depends on: config.py, exceptions.py
#  Used by:    container.py, services/governed_client.py

import asyncio
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from edgeguard.config import (
    GOVERNOR_DEFAULT_POLICY,
    GOVERNOR_ENDPOINT_POLICIES,
    GOVERNOR_MAX_BACKOFF_INTERVAL,
    GOVERNOR_STALE_AFTER,
    GOVERNOR_SWEEP_INTERVAL,
)
from edgeguard.exceptions import ThrottledError

logger = logging.getLogger("edgeguard.governor")

T = TypeVar("T")

# Headers that change the response and therefore the dedup signature
SIGNATURE_HEADERS = ("authorization", "content-type")

_BACKOFF_FLOOR = 0.1


@dataclass(frozen=True)
class RateLimitPolicy:
    min_interval: float = 0.1  # Seconds between calls to the same endpoint
    max_requests: int = 10     # Calls allowed per window
    window: float = 60.0       # Seconds


@dataclass
class PendingCall:
    task: asyncio.Task
    enqueued_at: float
    consumer_count: int = 1  # Informational only


@dataclass
class EndpointTiming:
    last_request_at: float
    recent: deque = field(default_factory=deque)


def make_signature(
    method: str,
    url: str,
    body: Any = None,
    headers: dict[str, str] | None = None,
) -> str:
    """Deterministic dedup key from method, URL, body and selected headers."""
    parts = [method.upper(), url]
    if body is not None:
        if isinstance(body, (bytes, bytearray)):
            parts.append(body.decode("utf-8", errors="replace"))
        elif isinstance(body, str):
            parts.append(body)
        else:
            parts.append(json.dumps(body, sort_keys=True, separators=(",", ":"), default=str))
    if headers:
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in SIGNATURE_HEADERS:
            value = lowered.get(name)
            if value:
                parts.append(f"{name}:{value}")
    return "|".join(parts)


def throttle_signal(exc: BaseException) -> tuple[bool, float | None]:
    """Return (is_throttled, retry_after) for an executor failure."""
    if isinstance(exc, ThrottledError):
        return True, exc.retry_after
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429, None
    for attr in ("status_code", "status"):
        if getattr(exc, attr, None) == 429:
            return True, None
    return False, None


def _compile_pattern(pattern: str) -> str | re.Pattern:
    """Config patterns wrapped in slashes are regular expressions."""
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.compile(pattern[1:-1])
    return pattern


class RequestGovernor:
    """Deduplicating, rate-shaping gate for outbound calls.

    All state lives on the event loop. The get-or-create of a pending call
    has no suspension point between lookup and insert, and admission for an
    endpoint (check, wait, record) is serialized by a per-endpoint lock.
    """

    def __init__(
        self,
        default_policy: RateLimitPolicy | None = None,
        *,
        sweep_interval: float = GOVERNOR_SWEEP_INTERVAL,
        stale_after: float = GOVERNOR_STALE_AFTER,
        max_backoff_interval: float = GOVERNOR_MAX_BACKOFF_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_policy = default_policy or RateLimitPolicy()
        self._policies: list[tuple[str | re.Pattern, RateLimitPolicy]] = []
        self._backoff: dict[str, RateLimitPolicy] = {}
        self._pending: dict[str, PendingCall] = {}
        self._timings: dict[str, EndpointTiming] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sweep_interval = sweep_interval
        self._stale_after = stale_after
        self._max_backoff = max_backoff_interval
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls) -> "RequestGovernor":
        governor = cls(RateLimitPolicy(
            min_interval=GOVERNOR_DEFAULT_POLICY["min_interval"],
            max_requests=GOVERNOR_DEFAULT_POLICY["max_requests"],
            window=GOVERNOR_DEFAULT_POLICY["window"],
        ))
        for pattern, settings in GOVERNOR_ENDPOINT_POLICIES.items():
            governor.set_policy(
                _compile_pattern(pattern),
                min_interval=settings.get("min_interval_sec", governor._default_policy.min_interval),
                max_requests=settings.get("max_requests", governor._default_policy.max_requests),
                window=settings.get("window_sec", governor._default_policy.window),
            )
        return governor

    # --- Policies ---

    def set_policy(self, pattern: str | re.Pattern, **overrides):
        """Policy for URLs containing `pattern` (str) or matching it (regex).

        Replaces an existing policy for the same pattern; otherwise the first
        registered match wins.
        """
        policy = replace(RateLimitPolicy(), **overrides)
        for i, (existing, _) in enumerate(self._policies):
            if existing == pattern:
                self._policies[i] = (pattern, policy)
                return
        self._policies.append((pattern, policy))

    def set_default_policy(self, **overrides):
        self._default_policy = replace(self._default_policy, **overrides)

    def policy_for(self, url: str) -> RateLimitPolicy:
        backoff = self._backoff.get(url)
        if backoff is not None:
            return backoff
        for pattern, policy in self._policies:
            if isinstance(pattern, re.Pattern):
                if pattern.search(url):
                    return policy
            elif pattern in url:
                return policy
        return self._default_policy

    # --- Admission ---

    def _wait_time(self, url: str, now: float) -> float:
        timing = self._timings.get(url)
        if timing is None:
            return 0.0
        policy = self.policy_for(url)

        since_last = now - timing.last_request_at
        if since_last < policy.min_interval:
            return policy.min_interval - since_last

        recent = [ts for ts in timing.recent if now - ts < policy.window]
        if len(recent) >= policy.max_requests:
            return max(policy.window - (now - recent[0]), 0.0)
        return 0.0

    def _record(self, url: str, now: float):
        policy = self.policy_for(url)
        timing = self._timings.get(url)
        if timing is None:
            timing = EndpointTiming(last_request_at=now)
            self._timings[url] = timing
        timing.last_request_at = now
        timing.recent.append(now)
        while timing.recent and now - timing.recent[0] >= policy.window:
            timing.recent.popleft()

    async def _admit(self, url: str):
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            while True:
                wait = self._wait_time(url, self._clock())
                if wait <= 0:
                    break
                logger.info("Rate limit reached for %s, waiting %.3fs", url, wait)
                await asyncio.sleep(wait)
            self._record(url, self._clock())

    def _back_off(self, url: str, retry_after: float | None):
        current = self.policy_for(url)
        widened = max(current.min_interval * 2, retry_after or 0.0, _BACKOFF_FLOOR)
        new_interval = min(widened, self._max_backoff)
        if new_interval <= current.min_interval:
            return
        self._backoff[url] = replace(current, min_interval=new_interval)
        logger.warning("429 rate limit hit for %s, min interval now %.2fs", url, new_interval)

    async def _execute(self, url: str, executor: Callable[[], Awaitable[T]]) -> T:
        await self._admit(url)
        logger.info("Executing request to %s", url)
        try:
            return await executor()
        except Exception as e:
            throttled, retry_after = throttle_signal(e)
            if throttled:
                self._back_off(url, retry_after)
            raise

    def _settle(self, signature: str, entry: PendingCall):
        if self._pending.get(signature) is entry:
            del self._pending[signature]
        if not entry.task.cancelled():
            entry.task.exception()  # Mark retrieved; waiters re-raise it themselves

    async def enqueue(
        self,
        url: str,
        executor: Callable[[], Awaitable[T]],
        *,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
        bypass_deduplication: bool = False,
        timeout: float | None = None,
    ) -> T:
        """Run executor under the endpoint's policy, sharing identical in-flight calls.

        Every caller of a shared call sees the same result or the same
        exception. A caller that is cancelled or hits its own `timeout`
        leaves the shared call running for the others.
        """
        signature = make_signature(method, url, body, headers)

        entry = None if bypass_deduplication else self._pending.get(signature)
        if entry is not None:
            entry.consumer_count += 1
            logger.info("Deduplicating request to %s (%d consumers)", url, entry.consumer_count)
        else:
            task = asyncio.ensure_future(self._execute(url, executor))
            entry = PendingCall(task=task, enqueued_at=self._clock())
            self._pending[signature] = entry
            task.add_done_callback(lambda _t, s=signature, e=entry: self._settle(s, e))

        waiter = asyncio.shield(entry.task)
        if timeout is not None:
            return await asyncio.wait_for(waiter, timeout)
        return await waiter

    # --- Housekeeping ---

    def sweep(self) -> tuple[int, int]:
        """Evict stale pending calls and idle endpoint timings.

        An idle endpoint also drops its backoff override, so URLs that
        throttled once do not accumulate forever.

        Returns (pending evicted, timings evicted).
        """
        now = self._clock()
        stale_calls = 0
        for signature, entry in list(self._pending.items()):
            if now - entry.enqueued_at > self._stale_after:
                del self._pending[signature]
                stale_calls += 1
                logger.warning("Cleaned up stale request: %s", signature)

        stale_timings = 0
        for url, timing in list(self._timings.items()):
            if now - timing.last_request_at > self._stale_after:
                del self._timings[url]
                if self._backoff.pop(url, None) is not None:
                    logger.info("Dropped backoff override for idle endpoint %s", url)
                lock = self._locks.get(url)
                if lock is not None and not lock.locked():
                    del self._locks[url]
                stale_timings += 1
        return stale_calls, stale_timings

    async def start(self):
        """Start the periodic sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Request governor sweep started (every %ss)", self._sweep_interval)

    async def stop(self):
        """Stop the periodic sweep. Safe to call more than once."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Request governor sweep error: %s", e)

    def clear(self):
        self._pending.clear()
        self._timings.clear()
        self._backoff.clear()

    def stats(self) -> dict:
        return {
            "pending_requests": len(self._pending),
            "tracked_endpoints": len(self._timings),
            "rate_limit_configs": len(self._policies),
            "backoff_overrides": len(self._backoff),
        }
