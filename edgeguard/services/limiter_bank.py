#  EdgeGuard - Rate Limiter Bank
#
#  Named sliding-window limiters backed by the key-value store, so every
#  instance behind the edge shares the same counts. Each limiter kind owns
#  its own key namespace (ratelimit:<kind>:<identifier>).
#
#  Depends on: store/connection.py, services/ban_registry.py, models/enums.py,
#              config.py
#  Used by:    container.py, middleware/security.py, middleware/admin.py

import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from edgeguard.config import RATE_LIMITS
from edgeguard.exceptions import StoreUnavailableError
from edgeguard.models.enums import LimiterKind
from edgeguard.services.ban_registry import BanRegistry
from edgeguard.store.connection import KeyValueStore

logger = logging.getLogger("edgeguard.ratelimit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset: int              # Epoch seconds when a slot frees up
    degraded: bool = False  # Store was unavailable; admitted without counting
    retry_after: int = 0    # Seconds until reset, measured on the limiter clock


class SlidingWindowLimiter:
    """Sliding-window log: at most `limit` admitted hits in any trailing `window`.

    A hit that would exceed the limit is removed again, so denied requests
    never consume quota.
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        limit: int,
        window: float,
        *,
        prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.limit = limit
        self.window = window
        self.prefix = prefix or f"ratelimit:{name}"
        self._store = store
        self._clock = clock

    def key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    async def hit(self, identifier: str) -> RateLimitResult:
        """Count one request for identifier. Raises StoreUnavailableError."""
        now = self._clock()
        key = self.key(identifier)
        member = f"{now:.6f}:{secrets.token_hex(4)}"

        count, oldest = await self._store.window_add(key, member, now, self.window)
        allowed = count <= self.limit
        if not allowed:
            await self._store.window_discard(key, member)
            count -= 1

        reset = math.ceil(oldest + self.window)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.limit - count),
            limit=self.limit,
            reset=reset,
            retry_after=max(0, math.ceil(reset - now)),
        )


class RateLimiterBank:
    """One limiter per LimiterKind, with ban/slow routing in front."""

    def __init__(
        self,
        store: KeyValueStore,
        ban_registry: BanRegistry,
        limits: dict[str, dict] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._bans = ban_registry
        self._clock = clock
        limits = limits or RATE_LIMITS
        self._limiters: dict[LimiterKind, SlidingWindowLimiter] = {
            kind: SlidingWindowLimiter(
                store,
                kind.value,
                int(limits[kind.value]["limit"]),
                float(limits[kind.value]["window_sec"]),
                clock=clock,
            )
            for kind in LimiterKind
        }

    def limiter_for(self, kind: LimiterKind | str) -> SlidingWindowLimiter:
        return self._limiters[LimiterKind(kind)]

    async def check_and_consume(
        self, kind: LimiterKind | str, identifier: str
    ) -> RateLimitResult:
        """Admission decision for identifier.

        Banned identifiers get a synthetic denial without touching any
        limiter; slowed identifiers always go to the forced-slow-mode limiter.
        """
        kind = LimiterKind(kind)

        if await self._bans.is_banned(identifier):
            logger.info("Hard-banned identifier %s blocked", identifier)
            return RateLimitResult(
                allowed=False, remaining=0, limit=0, reset=int(self._clock()),
            )

        if await self._bans.is_slowed(identifier):
            logger.info("Slow-mode identifier %s routed to forced slow mode", identifier)
            kind = LimiterKind.FORCED_SLOW_MODE

        limiter = self._limiters[kind]
        try:
            result = await limiter.hit(identifier)
        except StoreUnavailableError as e:
            logger.warning("Rate limit store unavailable for %s (%s), allowing request: %s",
                           identifier, kind.value, e, extra={"limiter": kind.value, "degraded": True})
            return RateLimitResult(
                allowed=True,
                remaining=limiter.limit,
                limit=limiter.limit,
                reset=math.ceil(self._clock() + limiter.window),
                degraded=True,
            )

        if not result.allowed:
            logger.info("Rate limit exceeded for %s (%s)", identifier, kind.value)
        else:
            logger.debug("Rate limiting %s (%s): %d remaining", identifier, kind.value, result.remaining)
        return result
