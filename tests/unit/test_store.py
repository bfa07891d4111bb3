#  EdgeGuard - Key-Value Store Tests
#
#  Depends on: edgeguard/store/connection.py
#  Used by:    pytest

import pytest

from edgeguard.exceptions import StoreUnavailableError


class TestSets:
    async def test_membership(self, store):
        assert await store.sadd("s", "a", "b") == 2
        assert await store.sismember("s", "a") is True
        assert await store.smembers("s") == {"a", "b"}
        await store.srem("s", "a")
        assert await store.sismember("s", "a") is False


class TestJsonValues:
    async def test_roundtrip_and_delete(self, store):
        await store.set_json("k", {"reason": "x"})
        assert await store.get_json("k") == {"reason": "x"}
        assert await store.ttl("k") == -1

        await store.delete("k")
        assert await store.get_json("k") is None

    async def test_ttl_applied(self, store):
        await store.set_json("k", {"a": 1}, ttl=30)
        assert 0 < await store.ttl("k") <= 30

    async def test_fractional_ttl_kept(self, store):
        """Sub-second TTLs are stored in milliseconds, not truncated to 0."""
        await store.set_json("k", {"a": 1}, ttl=0.5)
        assert await store.exists("k") is True

    async def test_sub_millisecond_ttl_accepted(self, store):
        await store.set_json("k", {"a": 1}, ttl=0.0001)
        assert await store.get_json("k") in ({"a": 1}, None)


class TestSlidingWindowLog:
    async def test_prunes_old_entries(self, store):
        await store.window_add("w", "m1", 100.0, 10)
        count, oldest = await store.window_add("w", "m2", 105.0, 10)
        assert (count, oldest) == (2, 100.0)

        count, oldest = await store.window_add("w", "m3", 111.0, 10)
        assert (count, oldest) == (2, 105.0)

    async def test_discard(self, store):
        await store.window_add("w", "m1", 100.0, 10)
        await store.window_discard("w", "m1")
        count, _ = await store.window_add("w", "m2", 101.0, 10)
        assert count == 1

    async def test_key_expires_after_window(self, store):
        await store.window_add("w", "m1", 100.0, 10)
        assert 0 < await store.ttl("w") <= 11


class TestOutage:
    async def test_errors_are_translated(self, store, fake_server):
        fake_server.connected = False
        with pytest.raises(StoreUnavailableError):
            await store.sismember("s", "a")
        with pytest.raises(StoreUnavailableError):
            await store.window_add("w", "m", 1.0, 10)
        with pytest.raises(StoreUnavailableError):
            await store.ping()
