#  EdgeGuard - Ban Registry Tests
#
#  Tests for ban/slow/CIDR state, metadata, fail-open checks and the
#  temporary ban sweep.
#
#  Depends on: edgeguard/services/ban_registry.py
#  Used by:    pytest

import asyncio

import pytest

from edgeguard.exceptions import InvalidCidrError, StoreUnavailableError
from edgeguard.services.ban_registry import BanRegistry
from edgeguard.store.connection import BAN_IPS, TEMP_BANS, ban_meta_key


class TestBanUnban:
    async def test_ban_then_unban(self, ban_registry):
        await ban_registry.ban("203.0.113.7", reason="scraping")
        assert await ban_registry.is_banned("203.0.113.7") is True

        await ban_registry.unban("203.0.113.7")
        assert await ban_registry.is_banned("203.0.113.7") is False
        assert await ban_registry.get_ban_metadata("203.0.113.7") is None

    async def test_metadata_recorded(self, ban_registry):
        await ban_registry.ban("203.0.113.7", reason="abuse", banned_by="ops")
        meta = await ban_registry.get_ban_metadata("203.0.113.7")
        assert meta["reason"] == "abuse"
        assert meta["banned_by"] == "ops"
        assert meta["banned_at"] > 0

    async def test_ban_without_metadata(self, ban_registry, store):
        await ban_registry.ban("203.0.113.7")
        assert await ban_registry.is_banned("203.0.113.7") is True
        assert await store.exists(ban_meta_key("203.0.113.7")) is False

    async def test_opaque_identifier(self, ban_registry):
        """Identifiers need not be IP addresses."""
        await ban_registry.ban("user:42", reason="spam")
        assert await ban_registry.is_banned("user:42") is True

    async def test_loopback_is_never_banned(self, ban_registry):
        for ip in ("127.0.0.1", "::1", "localhost"):
            await ban_registry.ban(ip, reason="test")
            assert await ban_registry.is_banned(ip) is False
        assert await ban_registry.list_banned() == []

    async def test_empty_identifier_ignored(self, ban_registry):
        await ban_registry.ban("")
        assert await ban_registry.list_banned() == []

    async def test_list_banned_sorted(self, ban_registry):
        await ban_registry.ban("10.0.0.2")
        await ban_registry.ban("10.0.0.1")
        assert await ban_registry.list_banned() == ["10.0.0.1", "10.0.0.2"]


class TestSlowMode:
    async def test_slow_then_unslow(self, ban_registry):
        await ban_registry.slow("198.51.100.5", reason="bursty")
        assert await ban_registry.is_slowed("198.51.100.5") is True
        assert (await ban_registry.get_slow_metadata("198.51.100.5"))["reason"] == "bursty"

        await ban_registry.unslow("198.51.100.5")
        assert await ban_registry.is_slowed("198.51.100.5") is False
        assert await ban_registry.get_slow_metadata("198.51.100.5") is None

    async def test_loopback_never_slowed(self, ban_registry):
        await ban_registry.slow("127.0.0.1")
        assert await ban_registry.is_slowed("127.0.0.1") is False

    async def test_slow_and_ban_are_independent(self, ban_registry):
        await ban_registry.slow("198.51.100.5")
        assert await ban_registry.is_banned("198.51.100.5") is False
        assert await ban_registry.list_slowed() == ["198.51.100.5"]


class TestCidrBans:
    async def test_ban_cidr_applies_to_addresses(self, ban_registry):
        await ban_registry.ban_cidr("192.168.1.0/24", reason="botnet")
        assert await ban_registry.is_address_banned("192.168.1.100") is True
        assert await ban_registry.is_address_banned("192.168.2.1") is False
        # Range bans do not put the address itself in the ban set
        assert await ban_registry.is_banned("192.168.1.100") is False

    async def test_invalid_cidr_rejected_before_store(self, ban_registry):
        with pytest.raises(InvalidCidrError):
            await ban_registry.ban_cidr("not-a-cidr")
        assert await ban_registry.list_banned_cidrs() == []

    async def test_unban_cidr(self, ban_registry):
        await ban_registry.ban_cidr("10.0.0.0/8")
        await ban_registry.unban_cidr("10.0.0.0/8")
        assert await ban_registry.list_banned_cidrs() == []
        assert await ban_registry.is_address_banned("10.1.1.1") is False


class TestFailOpen:
    async def test_checks_fail_open(self, ban_registry, fake_server):
        await ban_registry.ban("203.0.113.7")
        await ban_registry.slow("203.0.113.8")
        fake_server.connected = False

        assert await ban_registry.is_banned("203.0.113.7") is False
        assert await ban_registry.is_slowed("203.0.113.8") is False
        assert await ban_registry.is_address_banned("203.0.113.7") is False

    async def test_accessors_empty_on_error(self, ban_registry, fake_server):
        fake_server.connected = False
        assert await ban_registry.list_banned() == []
        assert await ban_registry.list_slowed() == []
        assert await ban_registry.list_banned_cidrs() == []
        assert await ban_registry.get_ban_metadata("203.0.113.7") is None

    async def test_mutations_propagate(self, ban_registry, fake_server):
        fake_server.connected = False
        with pytest.raises(StoreUnavailableError):
            await ban_registry.ban("203.0.113.7", reason="x")


class TestTemporaryBans:
    async def test_metadata_expires_but_membership_persists(self, ban_registry):
        """TTL applies to metadata only; membership stays without the sweep."""
        await ban_registry.ban("203.0.113.9", reason="cooldown", ttl=1)
        assert await ban_registry.is_banned("203.0.113.9") is True

        await asyncio.sleep(1.2)

        assert await ban_registry.get_ban_metadata("203.0.113.9") is None
        assert await ban_registry.is_banned("203.0.113.9") is True

    async def test_sweep_lifts_expired_bans(self, ban_registry, store):
        await ban_registry.ban("203.0.113.9", ttl=60)
        await ban_registry.ban("203.0.113.10")
        # Simulate metadata expiry
        await store.delete(ban_meta_key("203.0.113.9"))

        removed = await ban_registry.sweep_expired_bans()

        assert removed == ["203.0.113.9"]
        assert await ban_registry.is_banned("203.0.113.9") is False
        assert await ban_registry.is_banned("203.0.113.10") is True
        assert await store.smembers(TEMP_BANS) == set()

    async def test_sweep_keeps_live_temporary_bans(self, ban_registry, store):
        await ban_registry.ban("203.0.113.9", ttl=60)
        assert await ban_registry.sweep_expired_bans() == []
        assert await store.sismember(BAN_IPS, "203.0.113.9") is True

    async def test_background_sweep_lifecycle(self, store):
        registry = BanRegistry(store)
        await registry.ban("203.0.113.9", ttl=60)
        await store.delete(ban_meta_key("203.0.113.9"))

        await registry.start_background(0.05)
        await asyncio.sleep(0.2)
        await registry.stop_background()

        assert await registry.is_banned("203.0.113.9") is False
        # Second stop is a no-op
        await registry.stop_background()
