"""Durable outbox of remote mutations.

``PendingOperationQueue`` persists every not-yet-confirmed remote
mutation under the ``sync_queue`` key, delivers them through the
``RemoteReplicaClient`` and retries failures with backoff.

Guarantees:

* At most one operation per ``target_id``.  Adding an operation for a
  target that is already queued replaces the old entry.
* One ``process()`` pass at a time.  A call made while a pass is running
  returns immediately; the running pass or its scheduled retry picks up
  whatever was added meanwhile.
* Per-item isolation.  A failing item never stops the others.  After
  ``max_retries`` failures it is moved to the ``sync_failed`` list and
  reported through ``QueueExhausted``.
* ``AuthError`` is not retried.  The pass stops, every item stays queued
  unchanged, and auth listeners are told so a new token can be obtained.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..core.client import RemoteReplicaClient
from ..core.scheduling import Cancellable, Scheduler
from ..errors import (
    AuthError,
    NotFoundError,
    QueueExhausted,
    ValidationError,
)
from ..models import OperationKind, Order, PendingOperation
from ..storage.kv import KeyValueStore
from ..validators import validate_order

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync_queue"
FAILED_KEY = "sync_failed"

MAX_RETRIES = 3
RETRY_DELAYS: tuple[float, ...] = (1.0, 5.0, 15.0)


@dataclass
class ProcessResult:
    """What one ``process()`` pass did.

    Attributes:
        skipped: True when another pass was already running.
        succeeded: Target ids delivered (or already absent remotely).
        retried: Target ids that failed and were scheduled for retry.
        deferred: Target ids still inside their backoff window.
        exhausted: Operations dropped after the final retry.
        auth_blocked: True when the pass stopped on an ``AuthError``.
    """

    skipped: bool = False
    succeeded: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    exhausted: list[PendingOperation] = field(default_factory=list)
    auth_blocked: bool = False


def validate_operation(op: PendingOperation) -> None:
    """Reject operations that can never be delivered.

    Raises:
        ValidationError: If the operation is malformed.
    """
    if not op.target_id or not op.target_id.strip():
        raise ValidationError("Operation target cannot be empty")

    if op.kind == OperationKind.UPSERT:
        if op.payload is None:
            raise ValidationError(
                f"Upsert for '{op.target_id}' has no payload"
            )
        validate_order(op.payload)
    elif not op.remote_id:
        raise ValidationError(
            f"Delete for '{op.target_id}' has no remote id"
        )


def patch_body(order: Order) -> dict:
    """Fields sent when updating an existing remote order."""
    body = order.to_wire()
    body.pop("id", None)
    body.pop("userId", None)
    return body


class PendingOperationQueue:
    """Deduplicating, retrying outbox in front of the remote client.

    Args:
        kv: Persistence for the queue and the failed list.
        client: Remote client used to deliver operations.
        scheduler: Clock and deferred execution for backoff.
        max_retries: Failed attempts before an item is dropped.
        retry_delays: Backoff table in seconds, indexed by retry count.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        client: RemoteReplicaClient,
        scheduler: Scheduler,
        max_retries: int = MAX_RETRIES,
        retry_delays: Iterable[float] = RETRY_DELAYS,
    ) -> None:
        self._kv = kv
        self._client = client
        self._scheduler = scheduler
        self.max_retries = max_retries
        self.retry_delays = tuple(retry_delays)

        self._lock = asyncio.Lock()
        self._processing = False
        self._wakeup: Cancellable | None = None
        self._wakeup_at: float | None = None

        self._listeners: list[Callable[[], None]] = []
        self._exhausted_listeners: list[
            Callable[[list[PendingOperation]], None]
        ] = []
        self._auth_listeners: list[Callable[[AuthError], None]] = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load(self, key: str) -> list[PendingOperation]:
        raw = await self._kv.get(key) or []
        items: list[PendingOperation] = []
        for item in raw:
            try:
                items.append(PendingOperation.model_validate(item))
            except ValueError as exc:
                logger.warning("Dropping unreadable queue entry: %s", exc)
        return items

    async def _store(self, key: str, items: list[PendingOperation]) -> None:
        await self._kv.set(
            key, [i.model_dump(mode="json", by_alias=True) for i in items]
        )

    async def _replace(self, op_id: str, new: PendingOperation | None) -> bool:
        """Swap (or drop, with ``None``) the entry with id *op_id*.

        Returns False if the entry is gone, e.g. superseded mid-delivery.
        """
        async with self._lock:
            queue = await self._load(QUEUE_KEY)
            for index, item in enumerate(queue):
                if item.id == op_id:
                    break
            else:
                return False
            if new is None:
                del queue[index]
            else:
                queue[index] = new
            await self._store(QUEUE_KEY, queue)
            return True

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call *listener* whenever the queue contents change.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_exhausted(
        self, listener: Callable[[list[PendingOperation]], None]
    ) -> None:
        self._exhausted_listeners.append(listener)

    def on_auth_error(self, listener: Callable[[AuthError], None]) -> None:
        self._auth_listeners.append(listener)

    def notify_auth_error(self, exc: AuthError) -> None:
        """Tell auth listeners that the remote rejected the credential."""
        for fn in list(self._auth_listeners):
            fn(exc)

    def _notify(self) -> None:
        for fn in list(self._listeners):
            fn()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def add(self, op: PendingOperation, process: bool = True) -> bool:
        """Queue *op*, superseding any entry with the same target.

        A permanently failed entry for the same target is cleared too.

        Args:
            op: The operation to queue.
            process: Schedule a delivery pass right away.

        Returns:
            True if queued, False if the operation was invalid and dropped.
        """
        try:
            validate_operation(op)
        except ValidationError as exc:
            logger.warning(
                "Rejected %s for '%s': %s", op.kind.value, op.target_id, exc
            )
            return False

        if op.enqueued_at is None:
            op = op.model_copy(update={"enqueued_at": self._now_iso()})

        async with self._lock:
            queue = [
                i
                for i in await self._load(QUEUE_KEY)
                if i.target_id != op.target_id
            ]
            queue.append(op)
            await self._store(QUEUE_KEY, queue)

            failed = await self._load(FAILED_KEY)
            kept = [i for i in failed if i.target_id != op.target_id]
            if len(kept) != len(failed):
                await self._store(FAILED_KEY, kept)

        logger.debug("Queued %s for '%s'", op.kind.value, op.target_id)
        self._notify()

        if process:
            self._schedule(0.0)
        return True

    async def discard(self, target_id: str) -> bool:
        """Drop the queued operation for *target_id*, if any."""
        async with self._lock:
            queue = await self._load(QUEUE_KEY)
            kept = [i for i in queue if i.target_id != target_id]
            if len(kept) == len(queue):
                return False
            await self._store(QUEUE_KEY, kept)
        self._notify()
        return True

    async def process(self) -> ProcessResult:
        """Deliver every due operation once.

        Returns:
            A ``ProcessResult`` describing the pass.

        Raises:
            QueueExhausted: After the pass, if any operation reached the
                retry cap.  The other items were still processed.
        """
        if self._processing:
            logger.debug("Queue already processing, skipping")
            return ProcessResult(skipped=True)

        self._processing = True
        result = ProcessResult()
        try:
            queue = await self._load(QUEUE_KEY)
            if not queue:
                logger.debug("Queue empty")
                return result

            logger.info("Processing %d queued operation(s)", len(queue))
            now = self._scheduler.now()
            for item in queue:
                if item.next_attempt_at > now:
                    result.deferred.append(item.target_id)
                    continue
                try:
                    await self._execute(item)
                except AuthError as exc:
                    logger.warning(
                        "Sync paused, credential rejected: %s", exc
                    )
                    result.auth_blocked = True
                    self.notify_auth_error(exc)
                    break
                except Exception as exc:
                    await self._record_failure(item, exc, result)
                else:
                    await self._replace(item.id, None)
                    result.succeeded.append(item.target_id)
                    logger.info(
                        "Synced %s for '%s'", item.kind.value, item.target_id
                    )
        finally:
            self._processing = False

        self._notify()

        if not result.auth_blocked:
            await self._schedule_next()

        if result.exhausted:
            for fn in list(self._exhausted_listeners):
                fn(result.exhausted)
            raise QueueExhausted(result.exhausted)
        return result

    async def get_pending(self) -> list[PendingOperation]:
        return await self._load(QUEUE_KEY)

    async def get_pending_count(self) -> int:
        """Number of queued operations, read from storage."""
        return len(await self._load(QUEUE_KEY))

    async def pending_target_ids(self) -> set[str]:
        return {i.target_id for i in await self._load(QUEUE_KEY)}

    async def get_failed(self) -> list[PendingOperation]:
        """Operations dropped after exhausting their retries."""
        return await self._load(FAILED_KEY)

    async def failed_target_ids(self) -> set[str]:
        return {i.target_id for i in await self._load(FAILED_KEY)}

    async def clear_failed(self) -> None:
        async with self._lock:
            await self._kv.remove(FAILED_KEY)
        self._notify()

    async def requeue_failed(self) -> int:
        """Move every failed operation back into the queue with a fresh
        retry budget.

        Returns:
            Number of operations requeued.
        """
        failed = await self.get_failed()
        count = 0
        for item in failed:
            fresh = item.model_copy(
                update={
                    "retry_count": 0,
                    "next_attempt_at": 0.0,
                    "last_error": None,
                }
            )
            if await self.add(fresh, process=False):
                count += 1
        if count:
            self._schedule(0.0)
        return count

    async def clear(self) -> None:
        async with self._lock:
            await self._kv.remove(QUEUE_KEY)
        self._cancel_wakeup()
        self._notify()

    def close(self) -> None:
        """Cancel any scheduled retry."""
        self._cancel_wakeup()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _execute(self, item: PendingOperation) -> None:
        if item.kind == OperationKind.DELETE:
            try:
                await self._client.delete(item.remote_id)
            except NotFoundError:
                logger.info(
                    "'%s' already absent remotely, delete complete",
                    item.target_id,
                )
            return

        payload = item.payload
        if item.remote_id:
            try:
                await self._client.update(item.remote_id, patch_body(payload))
                return
            except NotFoundError:
                logger.info(
                    "'%s' vanished remotely, recreating", item.target_id
                )
        await self._client.create(payload)

    async def _record_failure(
        self,
        item: PendingOperation,
        exc: Exception,
        result: ProcessResult,
    ) -> None:
        retry_count = item.retry_count + 1

        if retry_count >= self.max_retries:
            logger.error(
                "Max retries exceeded for %s '%s', dropping: %s",
                item.kind.value,
                item.target_id,
                exc,
            )
            failed_item = item.model_copy(
                update={"retry_count": retry_count, "last_error": str(exc)}
            )
            if await self._replace(item.id, None):
                async with self._lock:
                    failed = await self._load(FAILED_KEY)
                    failed = [
                        i for i in failed if i.target_id != item.target_id
                    ]
                    failed.append(failed_item)
                    await self._store(FAILED_KEY, failed)
                result.exhausted.append(failed_item)
            return

        delay = self.retry_delays[
            min(retry_count - 1, len(self.retry_delays) - 1)
        ]
        logger.warning(
            "Failed %s for '%s' (attempt %d/%d), retrying in %ss: %s",
            item.kind.value,
            item.target_id,
            retry_count,
            self.max_retries,
            delay,
            exc,
        )
        retried = item.model_copy(
            update={
                "retry_count": retry_count,
                "next_attempt_at": self._scheduler.now() + delay,
                "last_error": str(exc),
            }
        )
        if await self._replace(item.id, retried):
            result.retried.append(item.target_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule_next(self) -> None:
        queue = await self._load(QUEUE_KEY)
        if not queue:
            return
        due = min(i.next_attempt_at for i in queue)
        self._schedule(max(due - self._scheduler.now(), 0.0))

    def _schedule(self, delay: float) -> None:
        """Arrange a background pass in *delay* seconds.

        Only the earliest requested wake-up is kept.
        """
        due = self._scheduler.now() + delay
        if self._wakeup is not None and self._wakeup_at is not None:
            if self._wakeup_at <= due:
                return
            self._wakeup.cancel()
        self._wakeup_at = due
        self._wakeup = self._scheduler.call_later(delay, self._background_pass)

    def _cancel_wakeup(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
        self._wakeup = None
        self._wakeup_at = None

    async def _background_pass(self) -> None:
        self._wakeup = None
        self._wakeup_at = None
        try:
            await self.process()
        except QueueExhausted as exc:
            # Already reported to the exhausted listeners.
            logger.debug("Background pass dropped operations: %s", exc)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(
            self._scheduler.now(), tz=timezone.utc
        ).isoformat()
