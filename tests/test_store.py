"""
Test suite for the ledger store

Covers:
  - Tree reads and writes (memory and SQLite backends)
  - Single-key transactions, ABORT, increment floors and clamping
  - Compare-and-set helpers
  - Per-key pub/sub: prefix matching, FIFO order, cancellation
"""

import asyncio

import pytest

from reward.exceptions import StoreUnavailable
from reward.store import ABORT, MemoryStore, SQLiteStore, open_store
from reward.store.pubsub import paths_overlap
from reward.store.sqlite import flatten, inflate


async def _sqlite(tmp_path):
    return await SQLiteStore.create(str(tmp_path / "ledger" / "reward.db"))


# ---------------------------------------------------------------------------
# Shared behaviour, run against both backends
# ---------------------------------------------------------------------------

class _StoreContract:
    """Mixin: subclasses provide ``make(tmp_path)``."""

    async def make(self, tmp_path):
        raise NotImplementedError

    @pytest.mark.asyncio
    async def test_get_missing_is_none(self, tmp_path):
        store = await self.make(tmp_path)
        assert await store.get("accounts/1") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_set_and_get_subtree(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("accounts/1", {"displayName": "ann", "balance": 10})
        assert await store.get("accounts/1/balance") == 10
        assert await store.get("accounts/1") == {"displayName": "ann", "balance": 10}
        assert await store.get("accounts") == {"1": {"displayName": "ann", "balance": 10}}
        await store.close()

    @pytest.mark.asyncio
    async def test_set_leaf_under_existing_subtree(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("accounts/1", {"displayName": "ann", "balance": 10})
        await store.set("accounts/1/balance", 25)
        assert await store.get("accounts/1") == {"displayName": "ann", "balance": 25}
        await store.close()

    @pytest.mark.asyncio
    async def test_overwrite_replaces_subtree(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("orders/a", {"x": 1, "y": 2})
        await store.set("orders/a", {"z": 3})
        assert await store.get("orders/a") == {"z": 3}
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_removes_and_prunes(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("ordersByUser/1/o1", 1.0)
        await store.delete("ordersByUser/1/o1")
        assert await store.get("ordersByUser/1/o1") is None
        assert await store.children("ordersByUser") == {}
        await store.close()

    @pytest.mark.asyncio
    async def test_children(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("accounts/1/balance", 5)
        await store.set("accounts/2/balance", 7)
        children = await store.children("accounts")
        assert set(children) == {"1", "2"}
        assert await store.children("accounts/1/balance") == {}
        await store.close()

    @pytest.mark.asyncio
    async def test_transaction_commits(self, tmp_path):
        store = await self.make(tmp_path)
        result = await store.transaction("vault/fees", lambda cur: (cur or 0) + 5)
        assert result.committed
        assert result.value == 5
        assert await store.get("vault/fees") == 5
        await store.close()

    @pytest.mark.asyncio
    async def test_transaction_abort_leaves_value(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("vault/fees", 3)
        result = await store.transaction("vault/fees", lambda cur: ABORT)
        assert not result.committed
        assert result.value == 3
        assert await store.get("vault/fees") == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_increment_with_floor_refuses(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("accounts/1/balance", 100)
        result = await store.increment("accounts/1/balance", -150, floor=0)
        assert not result.committed
        assert result.value == 100
        assert await store.get("accounts/1/balance") == 100
        await store.close()

    @pytest.mark.asyncio
    async def test_increment_with_clamp(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("vault/deposits", 40)
        result = await store.increment("vault/deposits", -100, floor=0, clamp=True)
        assert result.committed
        assert result.value == 0
        assert result.applied == -40
        await store.close()

    @pytest.mark.asyncio
    async def test_set_if_absent(self, tmp_path):
        store = await self.make(tmp_path)
        assert await store.set_if_absent("openSlots/1", "o1") is True
        assert await store.set_if_absent("openSlots/1", "o2") is False
        assert await store.get("openSlots/1") == "o1"
        await store.close()

    @pytest.mark.asyncio
    async def test_compare_and_delete(self, tmp_path):
        store = await self.make(tmp_path)
        await store.set("openSlots/1", "o1")
        assert await store.compare_and_delete("openSlots/1", "other") is False
        assert await store.get("openSlots/1") == "o1"
        assert await store.compare_and_delete("openSlots/1", "o1") is True
        assert await store.get("openSlots/1") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, tmp_path):
        store = await self.make(tmp_path)
        await asyncio.gather(*[store.increment("stats/totalTransactions", 1) for _ in range(50)])
        assert await store.get("stats/totalTransactions") == 50
        await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_set_if_absent_single_winner(self, tmp_path):
        store = await self.make(tmp_path)
        results = await asyncio.gather(*[
            store.set_if_absent("openSlots/9", f"o{i}") for i in range(10)
        ])
        assert results.count(True) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_subscription_receives_descendant_writes_in_order(self, tmp_path):
        store = await self.make(tmp_path)
        sub = store.subscribe("accounts/1")
        await store.set("accounts/1/balance", 1)
        await store.increment("accounts/1/balance", 1)
        await store.set("accounts/2/balance", 99)  # unrelated key
        await store.increment("accounts/1/balance", 1)

        events = [await sub.get(timeout=1) for _ in range(3)]
        assert [e.value for e in events] == [1, 2, 3]
        assert all(e.path == "accounts/1/balance" for e in events)
        assert events[0].sequence < events[1].sequence < events[2].sequence
        assert sub.pending() == 0
        sub.cancel()
        await store.close()

    @pytest.mark.asyncio
    async def test_subscription_receives_ancestor_writes(self, tmp_path):
        store = await self.make(tmp_path)
        sub = store.subscribe("accounts/1/balance")
        await store.set("accounts/1", {"balance": 5})
        event = await sub.get(timeout=1)
        assert event.path == "accounts/1"
        assert event.value == {"balance": 5}
        sub.cancel()
        await store.close()

    @pytest.mark.asyncio
    async def test_aborted_transaction_publishes_nothing(self, tmp_path):
        store = await self.make(tmp_path)
        sub = store.subscribe("openSlots")
        await store.set("openSlots/1", "o1")
        await store.set_if_absent("openSlots/1", "o2")
        await sub.get(timeout=1)
        assert sub.pending() == 0
        sub.cancel()
        await store.close()

    @pytest.mark.asyncio
    async def test_cancel_ends_iteration(self, tmp_path):
        store = await self.make(tmp_path)
        sub = store.subscribe("vault")
        await store.increment("vault/fees", 1)
        sub.cancel()
        received = [event async for event in sub]
        assert len(received) == 1
        await store.increment("vault/fees", 1)
        assert sub.pending() == 0
        assert store.hub.active_subscriptions == 0
        await store.close()


class TestMemoryStore(_StoreContract):

    async def make(self, tmp_path):
        return MemoryStore()

    @pytest.mark.asyncio
    async def test_get_returns_private_copy(self):
        store = MemoryStore()
        await store.set("accounts/1", {"balance": 1})
        data = await store.get("accounts/1")
        data["balance"] = 999
        assert await store.get("accounts/1/balance") == 1

    @pytest.mark.asyncio
    async def test_key_locks_released_when_idle(self):
        store = MemoryStore()
        await asyncio.gather(*[store.increment("stats/totalTransactions", 1) for _ in range(20)])
        for i in range(5):
            await store.set(f"orders/o{i}", {"status": "open"})
        assert await store.get("stats/totalTransactions") == 20
        assert store.lock_count == 0

    @pytest.mark.asyncio
    async def test_failed_update_releases_key_lock(self):
        store = MemoryStore()

        def boom(current):
            raise RuntimeError("bad update")

        with pytest.raises(RuntimeError):
            await store.transaction("orders/o1", boom)
        assert store.lock_count == 0
        assert await store.set_if_absent("orders/o1", 1) is True

    @pytest.mark.asyncio
    async def test_empty_path_rejected(self):
        store = MemoryStore()
        with pytest.raises(ValueError):
            await store.get("/")

    @pytest.mark.asyncio
    async def test_open_store_memory(self):
        store = await open_store("memory")
        assert isinstance(store, MemoryStore)


class TestSQLiteStore(_StoreContract):

    async def make(self, tmp_path):
        return await _sqlite(tmp_path)

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, tmp_path):
        store = await _sqlite(tmp_path)
        await store.set("accounts/1", {"displayName": "ann", "balance": 10})
        await store.increment("vault/fees", 4)
        await store.close()

        reopened = await _sqlite(tmp_path)
        assert await reopened.get("accounts/1") == {"displayName": "ann", "balance": 10}
        assert await reopened.get("vault/fees") == 4
        await reopened.close()

    @pytest.mark.asyncio
    async def test_update_error_rolls_back(self, tmp_path):
        store = await _sqlite(tmp_path)
        await store.set("vault/fees", 1)

        def boom(current):
            raise RuntimeError("update failed")

        with pytest.raises(RuntimeError):
            await store.transaction("vault/fees", boom)
        assert await store.get("vault/fees") == 1
        # Connection still usable after rollback
        await store.increment("vault/fees", 1)
        assert await store.get("vault/fees") == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_closed_store_is_unavailable(self, tmp_path):
        store = await _sqlite(tmp_path)
        await store.close()
        with pytest.raises(StoreUnavailable):
            await store.get("vault/fees")

    @pytest.mark.asyncio
    async def test_open_store_sqlite(self, tmp_path):
        store = await open_store("sqlite", str(tmp_path / "x.db"))
        assert isinstance(store, SQLiteStore)
        await store.close()


class TestTreeEncoding:

    def test_flatten_nested(self):
        rows = flatten("accounts/1", {"balance": 5, "profile": {"name": "ann"}})
        assert sorted(rows) == [
            ("accounts/1/balance", "5"),
            ("accounts/1/profile/name", '"ann"'),
        ]

    def test_flatten_empty_dict_is_nothing(self):
        assert flatten("a", {}) == []
        assert flatten("a", None) == []

    def test_inflate_leaf_and_subtree(self):
        assert inflate("a/b", [("a/b", "3")]) == 3
        assert inflate("a", [("a/b", "3"), ("a/c/d", "true")]) == {"b": 3, "c": {"d": True}}
        assert inflate("a", []) is None

    def test_paths_overlap(self):
        assert paths_overlap("accounts/1", "accounts/1/balance")
        assert paths_overlap("accounts/1/balance", "accounts/1")
        assert not paths_overlap("accounts/1", "accounts/12")
        assert not paths_overlap("accounts/1", "orders/1")
