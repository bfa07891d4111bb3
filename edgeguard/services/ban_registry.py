#  EdgeGuard - Ban Registry
#
#  Banned and slow-mode identifiers (IPs or opaque ids) and banned CIDR
#  ranges, stored in the key-value store with optional metadata.
#  Read checks fail open: a degraded store must never deny legitimate traffic.
#
#  Depends on: store/connection.py, services/cidr_matcher.py, exceptions.py
#  Used by:    container.py, services/limiter_bank.py, middleware/security.py,
#              routes/admin_ban.py

import asyncio
import logging
import time

from edgeguard.exceptions import StoreUnavailableError
from edgeguard.services.cidr_matcher import CidrMatcher, is_loopback, parse_cidr
from edgeguard.store.connection import (
    BAN_CIDRS,
    BAN_IPS,
    SLOW_IPS,
    TEMP_BANS,
    KeyValueStore,
    ban_meta_key,
    cidr_meta_key,
    slow_meta_key,
)

logger = logging.getLogger("edgeguard.banlist")


def _exempt(identifier: str | None) -> bool:
    return not identifier or is_loopback(identifier)


def _metadata(reason: str | None, banned_by: str | None) -> dict:
    return {"reason": reason, "banned_at": time.time(), "banned_by": banned_by}


class BanRegistry:
    """Ban/slow state owned by the store; nothing is cached locally.

    A ban issued with a TTL only expires its metadata. Set membership stays
    until unban() or sweep_expired_bans() removes it.
    """

    def __init__(self, store: KeyValueStore, cidr_matcher: CidrMatcher | None = None):
        self._store = store
        self._cidrs = cidr_matcher or CidrMatcher(store)
        self._sweep_task: asyncio.Task | None = None

    # --- Checks (fail open) ---

    async def is_banned(self, identifier: str) -> bool:
        if _exempt(identifier):
            return False
        try:
            banned = await self._store.sismember(BAN_IPS, identifier)
        except StoreUnavailableError as e:
            logger.error("Error checking ban status for %s: %s", identifier, e)
            return False
        if banned:
            logger.warning("Blocked banned identifier %s", identifier)
        return banned

    async def is_slowed(self, identifier: str) -> bool:
        if _exempt(identifier):
            return False
        try:
            slowed = await self._store.sismember(SLOW_IPS, identifier)
        except StoreUnavailableError as e:
            logger.error("Error checking slow mode status for %s: %s", identifier, e)
            return False
        if slowed:
            logger.info("Identifier %s is in slow mode", identifier)
        return slowed

    async def is_address_banned(self, ip: str) -> bool:
        """Banned directly or by a CIDR range containing the address."""
        if await self.is_banned(ip):
            return True
        return await self._cidrs.is_in_any_banned_cidr(ip)

    # --- Mutations (errors propagate) ---

    async def ban(
        self,
        identifier: str,
        reason: str | None = None,
        ttl: float | None = None,
        banned_by: str | None = None,
    ):
        if _exempt(identifier):
            logger.warning("Attempted to ban localhost or empty identifier: %r", identifier)
            return

        await self._store.sadd(BAN_IPS, identifier)
        if reason or banned_by or ttl:
            await self._store.set_json(ban_meta_key(identifier), _metadata(reason, banned_by), ttl=ttl)
        if ttl:
            await self._store.sadd(TEMP_BANS, identifier)
            logger.info("Temporarily banned %s for %ss (reason=%s, by=%s)",
                        identifier, ttl, reason, banned_by)
        else:
            logger.info("Permanently banned %s (reason=%s, by=%s)", identifier, reason, banned_by)

    async def unban(self, identifier: str):
        if not identifier:
            return
        await asyncio.gather(
            self._store.srem(BAN_IPS, identifier),
            self._store.srem(TEMP_BANS, identifier),
            self._store.delete(ban_meta_key(identifier)),
        )
        logger.info("Unbanned %s", identifier)

    async def slow(self, identifier: str, reason: str | None = None):
        if _exempt(identifier):
            logger.warning("Attempted to slow localhost or empty identifier: %r", identifier)
            return
        await self._store.sadd(SLOW_IPS, identifier)
        if reason:
            await self._store.set_json(slow_meta_key(identifier), _metadata(reason, None))
        logger.info("Added %s to slow mode (reason=%s)", identifier, reason)

    async def unslow(self, identifier: str):
        if not identifier:
            return
        await asyncio.gather(
            self._store.srem(SLOW_IPS, identifier),
            self._store.delete(slow_meta_key(identifier)),
        )
        logger.info("Removed %s from slow mode", identifier)

    async def ban_cidr(
        self,
        cidr: str,
        reason: str | None = None,
        ttl: float | None = None,
        banned_by: str | None = None,
    ):
        """Raises InvalidCidrError before touching the store."""
        cidr = parse_cidr(cidr)
        await self._store.sadd(BAN_CIDRS, cidr)
        if reason or banned_by or ttl:
            await self._store.set_json(cidr_meta_key(cidr), _metadata(reason, banned_by), ttl=ttl)
        logger.info("CIDR range %s banned (reason=%s)", cidr, reason)

    async def unban_cidr(self, cidr: str):
        cidr = cidr.strip()
        await asyncio.gather(
            self._store.srem(BAN_CIDRS, cidr),
            self._store.delete(cidr_meta_key(cidr)),
        )
        logger.info("CIDR range %s unbanned", cidr)

    # --- Read accessors (empty on error) ---

    async def _list(self, key: str, label: str) -> list[str]:
        try:
            return sorted(await self._store.smembers(key))
        except StoreUnavailableError as e:
            logger.error("Error fetching %s: %s", label, e)
            return []

    async def list_banned(self) -> list[str]:
        return await self._list(BAN_IPS, "banned identifiers")

    async def list_slowed(self) -> list[str]:
        return await self._list(SLOW_IPS, "slowed identifiers")

    async def list_banned_cidrs(self) -> list[str]:
        return await self._list(BAN_CIDRS, "banned CIDR ranges")

    async def _metadata(self, key: str) -> dict | None:
        try:
            return await self._store.get_json(key)
        except (StoreUnavailableError, ValueError) as e:
            logger.error("Error fetching metadata %s: %s", key, e)
            return None

    async def get_ban_metadata(self, identifier: str) -> dict | None:
        return await self._metadata(ban_meta_key(identifier))

    async def get_slow_metadata(self, identifier: str) -> dict | None:
        return await self._metadata(slow_meta_key(identifier))

    # --- Temporary ban sweep ---

    async def sweep_expired_bans(self) -> list[str]:
        """Drop set membership for TTL bans whose metadata has expired."""
        removed = []
        for identifier in await self._store.smembers(TEMP_BANS):
            if await self._store.exists(ban_meta_key(identifier)):
                continue
            await self._store.srem(BAN_IPS, identifier)
            await self._store.srem(TEMP_BANS, identifier)
            removed.append(identifier)
        if removed:
            logger.info("Lifted %d expired temporary ban(s): %s", len(removed), ", ".join(sorted(removed)))
        return sorted(removed)

    async def start_background(self, interval: float):
        """Start the periodic temporary-ban sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_background(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired_bans()
            except StoreUnavailableError as e:
                logger.error("Temporary ban sweep failed: %s", e)
