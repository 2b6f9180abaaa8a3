"""Tests for PendingOperationQueue: dedup, retry, backoff and exhaustion."""

from __future__ import annotations

import pytest
from conftest import FakeRemote, FakeScheduler, make_order

from order_sync.errors import AuthError, NetworkError, QueueExhausted
from order_sync.models import OperationKind, PendingOperation
from order_sync.storage.kv import MemoryStore
from order_sync.sync.queue import (
    FAILED_KEY,
    QUEUE_KEY,
    PendingOperationQueue,
    patch_body,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _upsert(key: str = "111-1", remote_id: str | None = None, **fields):
    return PendingOperation(
        target_id=key,
        kind=OperationKind.UPSERT,
        payload=make_order(key, **fields),
        remote_id=remote_id,
    )


def _delete(key: str = "111-1", remote_id: str | None = "r1"):
    return PendingOperation(
        target_id=key, kind=OperationKind.DELETE, remote_id=remote_id
    )


# ---------------------------------------------------------------------------
# add()
# ---------------------------------------------------------------------------


class TestAdd:
    async def test_persists_operation(self, queue, kv):
        assert await queue.add(_upsert(), process=False)
        stored = await kv.get(QUEUE_KEY)
        assert len(stored) == 1
        assert stored[0]["target_id"] == "111-1"
        assert stored[0]["enqueued_at"]

    async def test_same_target_supersedes(self, queue):
        await queue.add(_upsert(note="first"), process=False)
        await queue.add(_upsert(note="second"), process=False)
        pending = await queue.get_pending()
        assert len(pending) == 1
        assert pending[0].payload.note == "second"

    async def test_delete_supersedes_upsert(self, queue):
        await queue.add(_upsert(), process=False)
        await queue.add(_delete(), process=False)
        pending = await queue.get_pending()
        assert [p.kind for p in pending] == [OperationKind.DELETE]

    async def test_distinct_targets_kept(self, queue):
        await queue.add(_upsert("a"), process=False)
        await queue.add(_upsert("b"), process=False)
        assert await queue.get_pending_count() == 2

    async def test_invalid_upsert_rejected(self, queue):
        op = PendingOperation(target_id="k", kind=OperationKind.UPSERT)
        assert not await queue.add(op, process=False)
        assert await queue.get_pending_count() == 0

    async def test_upsert_with_bad_record_rejected(self, queue):
        op = _upsert(updated_at="not a timestamp")
        assert not await queue.add(op, process=False)

    async def test_delete_without_remote_id_rejected(self, queue):
        assert not await queue.add(_delete(remote_id=None), process=False)

    async def test_notifies_listeners(self, queue):
        calls = []
        unsubscribe = queue.subscribe(lambda: calls.append(1))
        await queue.add(_upsert(), process=False)
        unsubscribe()
        await queue.add(_upsert("b"), process=False)
        assert calls == [1]

    async def test_schedules_processing(self, queue, scheduler, remote):
        await queue.add(_upsert())
        assert len(scheduler.scheduled) == 1
        await scheduler.advance(0)
        assert await queue.get_pending_count() == 0
        assert remote.by_business_key("111-1")

    async def test_clears_failed_entry_for_target(self, queue, remote):
        queue.max_retries = 1
        remote.offline = True
        await queue.add(_upsert(), process=False)
        with pytest.raises(QueueExhausted):
            await queue.process()
        assert len(await queue.get_failed()) == 1

        await queue.add(_upsert(), process=False)
        assert await queue.get_failed() == []


# ---------------------------------------------------------------------------
# process()
# ---------------------------------------------------------------------------


class TestProcess:
    async def test_upsert_without_remote_id_creates(self, queue, remote):
        await queue.add(_upsert(), process=False)
        result = await queue.process()
        assert result.succeeded == ["111-1"]
        assert [c[0] for c in remote.calls] == ["create"]
        assert await queue.get_pending_count() == 0

    async def test_upsert_with_remote_id_patches(self, queue, remote):
        existing = make_order("111-1", id="r1", note="old")
        remote.orders["r1"] = existing
        await queue.add(_upsert(remote_id="r1", note="new"), process=False)
        await queue.process()
        assert [c[0] for c in remote.calls] == ["update"]
        assert remote.orders["r1"].note == "new"
        assert remote.orders["r1"].id == "r1"

    async def test_patch_404_falls_back_to_create(self, queue, remote):
        await queue.add(_upsert(remote_id="gone"), process=False)
        result = await queue.process()
        assert result.succeeded == ["111-1"]
        assert [c[0] for c in remote.calls] == ["update", "create"]

    async def test_delete_404_is_success(self, queue, remote):
        await queue.add(_delete(remote_id="gone"), process=False)
        result = await queue.process()
        assert result.succeeded == ["111-1"]
        assert await queue.get_pending_count() == 0

    async def test_delete_removes_remote(self, queue, remote):
        remote.orders["r1"] = make_order("111-1", id="r1")
        await queue.add(_delete(), process=False)
        await queue.process()
        assert remote.orders == {}

    async def test_one_failure_does_not_block_others(self, queue, remote):
        remote.fail("create", NetworkError("boom"))
        await queue.add(_upsert("a"), process=False)
        await queue.add(_upsert("b"), process=False)
        result = await queue.process()
        assert result.retried == ["a"]
        assert result.succeeded == ["b"]
        pending = await queue.get_pending()
        assert [p.target_id for p in pending] == ["a"]
        assert pending[0].retry_count == 1
        assert pending[0].last_error == "boom"

    async def test_reentrant_call_skipped(self, queue):
        queue._processing = True
        result = await queue.process()
        assert result.skipped

    async def test_empty_queue(self, queue, remote):
        result = await queue.process()
        assert result.succeeded == []
        assert remote.calls == []

    async def test_pending_count_reads_storage(self, kv, remote, scheduler):
        first = PendingOperationQueue(kv, remote, scheduler)
        await first.add(_upsert(), process=False)
        second = PendingOperationQueue(kv, remote, scheduler)
        assert await second.get_pending_count() == 1


# ---------------------------------------------------------------------------
# Backoff and exhaustion
# ---------------------------------------------------------------------------


class TestRetry:
    async def test_backoff_schedule(self, queue, remote, scheduler):
        remote.offline = True
        start = scheduler.now()
        await queue.add(_upsert(), process=False)

        await queue.process()
        (item,) = await queue.get_pending()
        assert item.retry_count == 1
        assert item.next_attempt_at == start + 1

        # Not due yet: skipped without a remote call.
        calls = len(remote.calls)
        result = await queue.process()
        assert result.deferred == ["111-1"]
        assert len(remote.calls) == calls

        await scheduler.advance(1)
        (item,) = await queue.get_pending()
        assert item.retry_count == 2
        assert item.next_attempt_at == start + 1 + 5

    async def test_permanently_unreachable_item_is_dropped(
        self, queue, remote, scheduler
    ):
        remote.offline = True
        exhausted = []
        queue.on_exhausted(exhausted.append)
        await queue.add(_upsert(), process=False)

        await queue.process()
        await scheduler.advance(1)
        assert await queue.get_pending_count() == 1

        # Third attempt is due; run it directly rather than through the
        # scheduled wake-up so the error surfaces here.
        scheduler.clock += 5
        with pytest.raises(QueueExhausted) as exc_info:
            await queue.process()

        assert [op.target_id for op in exc_info.value.operations] == [
            "111-1"
        ]
        assert await queue.get_pending_count() == 0
        failed = await queue.get_failed()
        assert [f.target_id for f in failed] == ["111-1"]
        assert failed[0].retry_count == 3
        assert failed[0].last_error == "offline"
        assert exhausted and exhausted[0][0].target_id == "111-1"
        assert len([c for c in remote.calls if c[0] == "create"]) == 3

    async def test_exhaustion_in_background_pass_is_reported(
        self, queue, remote, scheduler
    ):
        queue.max_retries = 1
        remote.offline = True
        exhausted = []
        queue.on_exhausted(exhausted.append)
        await queue.add(_upsert())
        await scheduler.advance(0)
        assert len(exhausted) == 1
        assert await queue.get_pending_count() == 0

    async def test_recovery_before_cap(self, queue, remote, scheduler):
        remote.fail("create", NetworkError("blip"))
        await queue.add(_upsert())
        await scheduler.advance(0)
        assert await queue.get_pending_count() == 1
        await scheduler.advance(1)
        assert await queue.get_pending_count() == 0
        assert await queue.get_failed() == []

    async def test_delays_clamp_to_last_entry(self, kv, scheduler):
        remote = FakeRemote()
        remote.offline = True
        queue = PendingOperationQueue(
            kv, remote, scheduler, max_retries=5, retry_delays=(2,)
        )
        await queue.add(_upsert(), process=False)
        for _ in range(3):
            await queue.process()
            await scheduler.advance(2)
        (item,) = await queue.get_pending()
        assert item.retry_count == 4
        assert item.next_attempt_at == scheduler.now() + 2

    async def test_requeue_failed(self, queue, remote):
        queue.max_retries = 1
        remote.offline = True
        await queue.add(_upsert(), process=False)
        with pytest.raises(QueueExhausted):
            await queue.process()

        remote.offline = False
        assert await queue.requeue_failed() == 1
        (item,) = await queue.get_pending()
        assert item.retry_count == 0
        assert await queue.get_failed() == []
        await queue.process()
        assert remote.by_business_key("111-1")

    async def test_clear_failed(self, queue, remote, kv):
        queue.max_retries = 1
        remote.offline = True
        await queue.add(_upsert(), process=False)
        with pytest.raises(QueueExhausted):
            await queue.process()
        await queue.clear_failed()
        assert await kv.get(FAILED_KEY) is None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuth:
    async def test_auth_error_stops_pass_and_keeps_items(self, queue, remote):
        auth_errors = []
        queue.on_auth_error(auth_errors.append)
        remote.fail("create", AuthError("expired"))
        await queue.add(_upsert("a"), process=False)
        await queue.add(_upsert("b"), process=False)

        result = await queue.process()

        assert result.auth_blocked
        assert len(auth_errors) == 1
        assert [c[1] for c in remote.calls] == ["a"]
        pending = await queue.get_pending()
        assert [p.target_id for p in pending] == ["a", "b"]
        assert all(p.retry_count == 0 for p in pending)

    async def test_no_retry_scheduled_while_unauthenticated(
        self, queue, remote, scheduler
    ):
        remote.token = None
        await queue.add(_upsert(), process=False)
        await queue.process()
        assert scheduler.scheduled == []

    async def test_new_token_drains_queue(self, queue, remote):
        remote.token = None
        await queue.add(_upsert(), process=False)
        await queue.process()
        remote.set_access_token("fresh")
        await queue.process()
        assert await queue.get_pending_count() == 0


# ---------------------------------------------------------------------------
# Payload and persistence
# ---------------------------------------------------------------------------


def test_patch_body_drops_identity_fields():
    body = patch_body(make_order("k", id="x", note="n"))
    assert "id" not in body
    assert "userId" not in body
    assert body["orderNumber"] == "k"
    assert body["note"] == "n"


async def test_queue_survives_restart():
    kv = MemoryStore()
    remote = FakeRemote()
    scheduler = FakeScheduler()
    remote.offline = True
    first = PendingOperationQueue(kv, remote, scheduler)
    await first.add(_upsert(), process=False)
    await first.process()

    remote.offline = False
    second = PendingOperationQueue(kv, remote, scheduler)
    scheduler.clock += 1
    await second.process()
    assert await second.get_pending_count() == 0
    assert remote.by_business_key("111-1")
