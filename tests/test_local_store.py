"""Tests for LocalReplicaStore and the key-value adapters."""

from __future__ import annotations

import json

import pytest
from conftest import make_order

from order_sync.errors import NotFoundError, ValidationError
from order_sync.models import ANONYMOUS_USER_ID, OrderStatus
from order_sync.storage.kv import JsonFileStore, MemoryStore
from order_sync.storage.local import (
    ORDERS_KEY,
    TOMBSTONES_KEY,
    LocalReplicaStore,
)

# ---------------------------------------------------------------------------
# Key-value adapters
# ---------------------------------------------------------------------------


class TestMemoryStore:
    async def test_get_missing_returns_none(self):
        assert await MemoryStore().get("nothing") is None

    async def test_values_are_copied(self):
        store = MemoryStore()
        value = {"a": [1]}
        await store.set("k", value)
        value["a"].append(2)
        loaded = await store.get("k")
        loaded["a"].append(3)
        assert await store.get("k") == {"a": [1]}

    async def test_remove(self):
        store = MemoryStore({"k": 1})
        await store.remove("k")
        await store.remove("k")
        assert await store.get("k") is None


class TestJsonFileStore:
    async def test_round_trip(self, tmp_path):
        store = JsonFileStore(tmp_path / "data")
        await store.set("orders", [{"orderNumber": "1"}])
        assert await store.get("orders") == [{"orderNumber": "1"}]
        on_disk = json.loads((tmp_path / "data" / "orders.json").read_text())
        assert on_disk == [{"orderNumber": "1"}]

    async def test_missing_key(self, tmp_path):
        assert await JsonFileStore(tmp_path).get("orders") is None

    async def test_remove(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.set("orders", [])
        await store.remove("orders")
        await store.remove("orders")
        assert not (tmp_path / "orders.json").exists()

    async def test_no_temp_files_left(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.set("orders", [1, 2, 3])
        assert [p.name for p in tmp_path.iterdir()] == ["orders.json"]

    async def test_rejects_path_like_keys(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid storage key"):
            await JsonFileStore(tmp_path).set("../escape", 1)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class TestOrders:
    async def test_get_all_scopes_to_user_and_anonymous(self, local):
        mine = make_order("a", user_id="user-1")
        anon = make_order("b", user_id=ANONYMOUS_USER_ID)
        other = make_order("c", user_id="user-2")
        for order in (mine, anon, other):
            await local.upsert(order)

        keys = {o.business_key for o in await local.get_all("user-1")}
        assert keys == {"a", "b"}
        assert len(await local.get_all()) == 3

    async def test_get_all_includes_tombstones(self, local):
        await local.upsert(make_order(deleted_at="2024-01-02T00:00:00Z"))
        assert len(await local.get_all("user-1")) == 1

    async def test_upsert_replaces_by_id(self, local):
        order = make_order()
        await local.upsert(order)
        await local.upsert(order.model_copy(update={"note": "hi"}))
        stored = await local.get_all()
        assert len(stored) == 1
        assert stored[0].note == "hi"

    async def test_upsert_by_id_keeps_other_ids_with_same_key(self, local):
        await local.upsert(make_order("k", id="one"))
        await local.upsert(make_order("k", id="two"))
        assert len(await local.get_all()) == 2

    async def test_merge_by_business_key_replaces_other_id(self, local):
        await local.upsert(make_order("k", id="local-id"))
        await local.upsert(
            make_order("k", id="remote-id", note="from remote"),
            merge_by_business_key=True,
        )
        stored = await local.get_all()
        assert [o.id for o in stored] == ["remote-id"]
        assert stored[0].note == "from remote"

    async def test_merge_absorbs_anonymous_copy(self, local):
        await local.upsert(make_order("k", id="anon", user_id="local"))
        await local.upsert(
            make_order("k", id="remote-id"), merge_by_business_key=True
        )
        assert [o.id for o in await local.get_all()] == ["remote-id"]

    async def test_merge_leaves_other_users_alone(self, local):
        await local.upsert(make_order("k", id="theirs", user_id="user-2"))
        await local.upsert(
            make_order("k", id="mine"), merge_by_business_key=True
        )
        assert {o.id for o in await local.get_all()} == {"theirs", "mine"}

    async def test_get_by_id(self, local):
        order = make_order()
        await local.upsert(order)
        assert await local.get_by_id(order.id) == order
        assert await local.get_by_id("missing") is None

    async def test_update_fields_accepts_camel_case(self, local):
        order = make_order()
        await local.upsert(order)
        updated = await local.update_fields(
            order.id, {"status": "reimbursed", "updatedAt": "2024-02-01"}
        )
        assert updated.status == OrderStatus.REIMBURSED
        assert updated.updated_at == "2024-02-01"
        assert (await local.get_by_id(order.id)).status == OrderStatus.REIMBURSED

    async def test_update_fields_missing_id(self, local):
        with pytest.raises(NotFoundError):
            await local.update_fields("missing", {"note": "x"})

    async def test_update_fields_invalid_value(self, local):
        order = make_order()
        await local.upsert(order)
        with pytest.raises(ValidationError):
            await local.update_fields(order.id, {"status": "lost"})

    async def test_delete_is_idempotent(self, local):
        order = make_order()
        await local.upsert(order)
        await local.delete(order.id)
        await local.delete(order.id)
        assert await local.get_all() == []

    async def test_unreadable_entries_are_dropped(self, kv):
        await kv.set(ORDERS_KEY, [{"productName": "no key"}, {"orderNumber": "k"}])
        orders = await LocalReplicaStore(kv).get_all()
        assert [o.business_key for o in orders] == ["k"]


# ---------------------------------------------------------------------------
# Tombstone keys
# ---------------------------------------------------------------------------


class TestTombstoneKeys:
    async def test_add_is_deduplicated(self, local, kv):
        await local.add_tombstone_business_key("a")
        await local.add_tombstone_business_key("a")
        await local.add_tombstone_business_key("b")
        assert await local.list_tombstone_business_keys() == ["a", "b"]
        assert await kv.get(TOMBSTONES_KEY) == ["a", "b"]

    async def test_discard(self, local):
        for key in ("a", "b", "c"):
            await local.add_tombstone_business_key(key)
        await local.discard_tombstone_business_keys(["a", "c", "zzz"])
        assert await local.list_tombstone_business_keys() == ["b"]

    async def test_clear(self, local):
        await local.add_tombstone_business_key("a")
        await local.clear_tombstone_business_keys()
        assert await local.list_tombstone_business_keys() == []
