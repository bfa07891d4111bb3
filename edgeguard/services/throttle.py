#  EdgeGuard - Throttle, Debounce and Token Bucket
#
#  Call-shaping primitives for outbound traffic. Timers run on the asyncio
#  event loop (loop.call_later), so throttled/debounced callables must be
#  invoked from within a running loop. Coroutine functions are scheduled as
#  tasks when their call comes from a timer.
#
#  Depends on: (none)
#  Used by:    application code shaping outbound or UI-driven call rates

import asyncio
import inspect
import logging
import math
import time
from collections import deque
from typing import Any, Callable

logger = logging.getLogger("edgeguard.throttle")


def _invoke(func: Callable, args: tuple, kwargs: dict) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        return asyncio.ensure_future(result)
    return result


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------

class Throttle:
    """Run func at most once per `wait` seconds.

    Leading edge: a call after a quiet period runs immediately.
    Trailing edge: calls inside the window collapse into one run at the end
    of the window, using the most recent arguments. Returns the result of
    the latest run.
    """

    def __init__(
        self,
        func: Callable,
        wait: float,
        *,
        leading: bool = True,
        trailing: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.func = func
        self.wait = wait
        self.leading = leading
        self.trailing = trailing
        self._clock = clock
        self._previous: float | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._pending: tuple[tuple, dict] | None = None
        self._result: Any = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, *args, **kwargs):
        now = self._clock()
        if self._previous is None and not self.leading:
            self._previous = now

        remaining = 0.0 if self._previous is None else self.wait - (now - self._previous)

        # remaining > wait means the clock moved backwards
        if remaining <= 0 or remaining > self.wait:
            self._cancel_timer()
            self._pending = None
            self._previous = now
            self._result = _invoke(self.func, args, kwargs)
        elif self.trailing:
            self._pending = (args, kwargs)
            if self._handle is None:
                loop = asyncio.get_running_loop()
                self._handle = loop.call_later(remaining, self._trailing_edge)

        return self._result

    def _trailing_edge(self):
        self._handle = None
        if self._pending is None:
            return
        args, kwargs = self._pending
        self._pending = None
        self._previous = self._clock() if self.leading else None
        self._result = _invoke(self.func, args, kwargs)

    def _cancel_timer(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def cancel(self):
        """Drop any pending trailing run and reset timing."""
        self._cancel_timer()
        self._pending = None
        self._previous = None


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------

class Debounce:
    """Run func once calls have stopped for `wait` seconds.

    max_wait bounds how long a continuous stream of calls can postpone a
    run; leading runs the first call of a burst immediately.
    """

    def __init__(
        self,
        func: Callable,
        wait: float,
        *,
        leading: bool = False,
        max_wait: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.func = func
        self.wait = wait
        self.leading = leading
        self.max_wait = max_wait
        self._clock = clock
        self._handle: asyncio.TimerHandle | None = None
        self._pending: tuple[tuple, dict] | None = None
        self._burst_start: float | None = None
        self._last_call: float | None = None
        self._result: Any = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def __call__(self, *args, **kwargs):
        now = self._clock()
        quiet = self._last_call is None or now - self._last_call >= self.wait
        self._last_call = now

        # Leading edge only after a full quiet period with nothing queued
        if self.leading and quiet and self._pending is None:
            self._burst_start = now
            self._result = _invoke(self.func, args, kwargs)
            self._arm(self.wait)
            return self._result

        self._pending = (args, kwargs)
        if self._burst_start is None:
            self._burst_start = now

        delay = self.wait
        if self.max_wait is not None:
            waited = now - self._burst_start
            if waited >= self.max_wait:
                self._cancel_timer()
                self._run_pending()
                return self._result
            delay = min(delay, self.max_wait - waited)

        self._arm(delay)
        return self._result

    def _arm(self, delay: float):
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._timer_expired)

    def _timer_expired(self):
        self._handle = None
        self._run_pending()

    def _run_pending(self):
        self._burst_start = None
        if self._pending is None:
            return
        args, kwargs = self._pending
        self._pending = None
        self._result = _invoke(self.func, args, kwargs)

    def _cancel_timer(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def cancel(self):
        self._cancel_timer()
        self._pending = None
        self._burst_start = None
        self._last_call = None

    def flush(self):
        """Run the pending call now, if any, and return the latest result."""
        self._cancel_timer()
        self._run_pending()
        return self._result


def throttle(wait: float, *, leading: bool = True, trailing: bool = True):
    """Decorator form of Throttle."""
    def decorator(func: Callable) -> Throttle:
        return Throttle(func, wait, leading=leading, trailing=trailing)
    return decorator


def debounce(wait: float, *, leading: bool = False, max_wait: float | None = None):
    """Decorator form of Debounce."""
    def decorator(func: Callable) -> Debounce:
        return Debounce(func, wait, leading=leading, max_wait=max_wait)
    return decorator


# ---------------------------------------------------------------------------
# Keyed variants
# ---------------------------------------------------------------------------

class KeyedThrottle:
    """One Throttle per key (endpoint, user, ...), created on first use."""

    def __init__(self, func: Callable, wait: float, *, leading: bool = True, trailing: bool = True):
        self._func = func
        self._wait = wait
        self._options = {"leading": leading, "trailing": trailing}
        self._throttles: dict[str, Throttle] = {}

    def execute(self, key: str, *args, **kwargs):
        throttled = self._throttles.get(key)
        if throttled is None:
            throttled = Throttle(self._func, self._wait, **self._options)
            self._throttles[key] = throttled
        return throttled(*args, **kwargs)

    def cancel(self, key: str):
        throttled = self._throttles.pop(key, None)
        if throttled is not None:
            throttled.cancel()

    def cancel_all(self):
        for throttled in self._throttles.values():
            throttled.cancel()
        self._throttles.clear()

    def __len__(self) -> int:
        return len(self._throttles)


class KeyedDebounce:
    """One Debounce per key, created on first use."""

    def __init__(self, func: Callable, wait: float, *, leading: bool = False,
                 max_wait: float | None = None):
        self._func = func
        self._wait = wait
        self._options = {"leading": leading, "max_wait": max_wait}
        self._debounces: dict[str, Debounce] = {}

    def execute(self, key: str, *args, **kwargs):
        debounced = self._debounces.get(key)
        if debounced is None:
            debounced = Debounce(self._func, self._wait, **self._options)
            self._debounces[key] = debounced
        return debounced(*args, **kwargs)

    def cancel(self, key: str):
        debounced = self._debounces.pop(key, None)
        if debounced is not None:
            debounced.cancel()

    def flush(self, key: str):
        debounced = self._debounces.get(key)
        if debounced is not None:
            return debounced.flush()
        return None

    def cancel_all(self):
        for debounced in self._debounces.values():
            debounced.cancel()
        self._debounces.clear()

    def __len__(self) -> int:
        return len(self._debounces)


# ---------------------------------------------------------------------------
# Token bucket
# ---------------------------------------------------------------------------

class TokenBucket:
    """Token bucket holding up to `capacity` tokens, refilled continuously
    at capacity/window tokens per second.

    acquire() waits in FIFO order; waiters are released by a timer that
    reschedules itself while the queue is non-empty.
    """

    def __init__(self, capacity: int, window: float, *, clock: Callable[[], float] = time.monotonic):
        if capacity <= 0 or window <= 0:
            raise ValueError("capacity and window must be positive")
        self.capacity = capacity
        self.window = window
        self._rate = capacity / window
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._waiters: deque[asyncio.Future] = deque()
        self._handle: asyncio.TimerHandle | None = None

    def _refill(self):
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self._rate)
            self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token without waiting. Never jumps ahead of queued waiters."""
        self._refill()
        if self.queue_size or self._tokens < 1:
            return False
        self._tokens -= 1
        return True

    async def acquire(self):
        if self.try_acquire():
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        self._schedule_release()
        try:
            await fut
        except asyncio.CancelledError:
            # Token was granted but the waiter went away: give it back
            if fut.done() and not fut.cancelled():
                self._tokens = min(self.capacity, self._tokens + 1)
            fut.cancel()
            raise

    def _schedule_release(self):
        if self._handle is not None or not self._waiters:
            return
        self._refill()
        delay = max(0.0, (1 - self._tokens) / self._rate)
        self._handle = asyncio.get_running_loop().call_later(delay, self._release)

    def _release(self):
        self._handle = None
        self._refill()
        while self._waiters and self._tokens >= 1:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._tokens -= 1
            fut.set_result(None)
        while self._waiters and self._waiters[0].done():
            self._waiters.popleft()
        self._schedule_release()

    @property
    def available_tokens(self) -> int:
        self._refill()
        return math.floor(self._tokens)

    @property
    def queue_size(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def reset(self):
        """Refill the bucket and cancel every waiter."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        while self._waiters:
            self._waiters.popleft().cancel()
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()
