"""Reconciliation rounds between the local and remote replicas.

A round snapshots both replicas, resolves every business key with
``resolve()``, applies downloads and purges locally, hands uploads and
remote deletes to the ``PendingOperationQueue``, drains the queue once,
then purges local tombstones whose remote deletion is confirmed.

Only one round runs at a time.  Triggers that arrive while a round is in
flight set a rerun flag; the running round starts exactly one more round
when it finishes, or schedules it in the background if it failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from ..core.client import RemoteReplicaClient
from ..core.scheduling import Cancellable, Scheduler
from ..errors import AuthError, OrderSyncError, QueueExhausted
from ..models import (
    Decision,
    OperationKind,
    Order,
    PendingOperation,
    Resolution,
    SyncReport,
    SyncResult,
)
from ..storage.local import LocalReplicaStore
from ..validators import validate_order
from .queue import PendingOperationQueue
from .resolver import parse_timestamp, resolve

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 2.0


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


def _recency(order: Order) -> datetime:
    return max(
        parse_timestamp(order.updated_at), parse_timestamp(order.deleted_at)
    )


def _index_by_business_key(
    orders: list[Order],
) -> tuple[dict[str, Order], list[Order]]:
    """Map business key to the most recent version.

    Returns:
        ``(index, extras)`` where *extras* are the older duplicates.
    """
    index: dict[str, Order] = {}
    extras: list[Order] = []
    for order in orders:
        current = index.get(order.business_key)
        if current is None:
            index[order.business_key] = order
        elif _recency(order) > _recency(current):
            extras.append(current)
            index[order.business_key] = order
        else:
            extras.append(order)
    return index, extras


class SyncEngine:
    """Coordinates sync rounds and reacts to collaborator events.

    Args:
        local: The local replica.
        remote: Client for the remote replica.
        queue: Outbox that delivers remote mutations.
        scheduler: Clock and deferred execution, used for debouncing.
        debounce_seconds: Quiet period after a local mutation before a
            round starts.
    """

    def __init__(
        self,
        local: LocalReplicaStore,
        remote: RemoteReplicaClient,
        queue: PendingOperationQueue,
        scheduler: Scheduler,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ) -> None:
        self.local = local
        self.remote = remote
        self.queue = queue
        self.scheduler = scheduler
        self.debounce_seconds = debounce_seconds

        self._status = SyncStatus.IDLE
        self._rerun_requested = False
        self._rerun_user_id: str | None = None
        self._user_id: str | None = None
        self._last_synced_at: str | None = None
        self._last_error: Exception | None = None
        self._debounce: Cancellable | None = None

        self._records_listeners: list[Callable[[], None]] = []
        self._status_listeners: list[Callable[[SyncStatus], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._status == SyncStatus.SYNCING

    @property
    def user_id(self) -> str | None:
        """The signed-in user, or ``None``."""
        return self._user_id

    @property
    def last_synced_at(self) -> str | None:
        return self._last_synced_at

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    async def get_pending_count(self) -> int:
        return await self.queue.get_pending_count()

    def subscribe_records_changed(
        self, listener: Callable[[], None]
    ) -> Callable[[], None]:
        """Call *listener* once per round after local records changed.

        Returns:
            A function that removes the listener.
        """
        self._records_listeners.append(listener)
        return lambda: self._records_listeners.remove(listener)

    def subscribe_status(
        self, listener: Callable[[SyncStatus], None]
    ) -> Callable[[], None]:
        self._status_listeners.append(listener)
        return lambda: self._status_listeners.remove(listener)

    def on_auth_error(self, listener: Callable[[AuthError], None]) -> None:
        """Call *listener* whenever the remote rejects the credential.

        Covers both outbox deliveries and the snapshot at the start of a
        round.
        """
        self.queue.on_auth_error(listener)

    def _set_status(self, status: SyncStatus) -> None:
        self._status = status
        for fn in list(self._status_listeners):
            fn(status)

    def _notify_records_changed(self) -> None:
        for fn in list(self._records_listeners):
            fn()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def on_user_authenticated(self, user_id: str) -> SyncReport | None:
        """Remember the signed-in user and run a round for them."""
        self._user_id = user_id
        return await self.run_sync(user_id)

    def on_user_signed_out(self) -> None:
        self._user_id = None
        self._cancel_debounce()

    def on_local_mutation(self) -> None:
        """Schedule a round after the debounce period.

        Each call restarts the period, so a burst of edits yields one
        round.  Ignored while nobody is signed in.
        """
        if self._user_id is None:
            logger.debug("Local mutation while signed out, not syncing")
            return
        self._cancel_debounce()
        self._debounce = self.scheduler.call_later(
            self.debounce_seconds, self._debounced_sync
        )

    async def on_record_created(self, order: Order) -> bool:
        """Store a freshly captured order and queue its upload.

        A capture whose order number is already known locally is merged
        into the existing record instead: it keeps its id, owner, creation
        time, status and note (unless the capture carries a note).  The
        upload of a merged record is left to the next round, which knows
        the remote id to patch.

        Raises:
            ValidationError: If *order* is malformed.

        Returns:
            True if an upload was queued; False while signed out or when
            the capture was merged into a known order.
        """
        validate_order(order)
        if self._user_id is not None:
            order = order.model_copy(update={"user_id": self._user_id})

        known = await self._merge_known_capture(order)
        if known is not None:
            await self.local.upsert(known)
            await self.local.discard_tombstone_business_keys(
                [known.business_key]
            )
            logger.info(
                "Captured known order '%s', merged into '%s'",
                known.business_key,
                known.id,
            )
            self.on_local_mutation()
            return False

        await self.local.upsert(order)

        if self._user_id is None:
            logger.info(
                "Captured '%s' while signed out, upload deferred",
                order.business_key,
            )
            return False

        return await self.queue.add(
            PendingOperation(
                target_id=order.business_key,
                kind=OperationKind.UPSERT,
                payload=order,
            )
        )

    async def _merge_known_capture(self, order: Order) -> Order | None:
        """Fold *order* into the stored record with its business key.

        Returns:
            The merged record, or ``None`` if the key is new locally.
        """
        same_key = [
            o
            for o in await self.local.get_all(order.user_id)
            if o.business_key == order.business_key
        ]
        live = [o for o in same_key if not o.is_tombstoned]
        if live:
            existing = max(live, key=_recency)
            return order.model_copy(
                update={
                    "id": existing.id,
                    "user_id": existing.user_id,
                    "status": existing.status,
                    "note": order.note if order.note else existing.note,
                    "created_at": existing.created_at or order.created_at,
                    "updated_at": order.updated_at or self._now_iso(),
                    "deleted_at": None,
                }
            )

        tombstones = await self.local.list_tombstone_business_keys()
        if same_key or order.business_key in tombstones:
            revived = {"deleted_at": None}
            if same_key:
                revived["id"] = max(same_key, key=_recency).id
            return order.model_copy(update=revived)
        return None

    async def set_access_token(self, token: str | None) -> None:
        """Install a new credential and re-drive the queue with it."""
        self.remote.set_access_token(token)
        if not token:
            return
        try:
            await self.queue.process()
        except QueueExhausted as exc:
            logger.warning("%s", exc)

    def close(self) -> None:
        """Cancel scheduled work."""
        self._cancel_debounce()
        self.queue.close()

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    async def _debounced_sync(self) -> None:
        self._debounce = None
        if self._user_id is None:
            return
        await self._background_sync(self._user_id)

    async def _follow_up_sync(self, user_id: str) -> None:
        self._debounce = None
        await self._background_sync(user_id)

    async def _background_sync(self, user_id: str) -> None:
        try:
            await self.run_sync(user_id)
        except OrderSyncError as exc:
            logger.warning("Background sync failed: %s", exc)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def run_sync(self, user_id: str) -> SyncReport | None:
        """Run a reconciliation round for *user_id*.

        Returns:
            The report of the last round run, or ``None`` if a round was
            already in flight (a rerun is then scheduled instead).

        Raises:
            OrderSyncError: If a replica snapshot could not be read.  No
                write has been attempted in that case.  A trigger that
                arrived during the failed round still gets its follow-up
                round, scheduled in the background.
        """
        if self._status == SyncStatus.SYNCING:
            logger.debug("Sync in progress, rerun requested")
            self._rerun_requested = True
            self._rerun_user_id = user_id
            return None

        report: SyncReport | None = None
        while True:
            self._rerun_requested = False
            try:
                report = await self._run_round(user_id)
            except Exception:
                if self._rerun_requested:
                    self._schedule_follow_up(self._rerun_user_id or user_id)
                raise
            if not self._rerun_requested:
                return report
            user_id = self._rerun_user_id or user_id
            logger.info("Running follow-up sync round")

    def _schedule_follow_up(self, user_id: str) -> None:
        self._rerun_requested = False
        logger.info("Sync round failed, follow-up round scheduled")
        self._cancel_debounce()
        self._debounce = self.scheduler.call_later(
            0, lambda: self._follow_up_sync(user_id)
        )

    async def _run_round(self, user_id: str) -> SyncReport:
        started_at = self._now_iso()
        self._set_status(SyncStatus.SYNCING)
        logger.info("Sync started for user '%s'", user_id)

        try:
            local_orders = await self.local.get_all(user_id)
            remote_orders = await self.remote.get_all()
            tombstone_keys = set(
                await self.local.list_tombstone_business_keys()
            )
        except Exception as exc:
            logger.error("Sync aborted, snapshot failed: %s", exc)
            self._fail(exc)
            raise

        try:
            results = await self._reconcile(
                user_id, local_orders, remote_orders, tombstone_keys
            )
            failed_keys = await self._drain_queue()
            results = await self._confirm(results, local_orders)
        except Exception as exc:
            logger.error("Sync round failed: %s", exc)
            self._fail(exc)
            raise

        self._last_synced_at = self._now_iso()
        self._last_error = None
        self._set_status(SyncStatus.IDLE)
        self._notify_records_changed()

        report = SyncReport(
            user_id=user_id,
            results=results,
            failed_operations=failed_keys,
            started_at=started_at,
            completed_at=self._last_synced_at,
        )
        logger.info(
            "Sync finished: %d uploaded, %d downloaded, %d deleted remotely, "
            "%d purged, %d pending",
            len(report.uploaded),
            len(report.downloaded),
            len(report.deleted_remote),
            len(report.purged_local),
            len(report.pending),
        )
        return report

    def _fail(self, exc: Exception) -> None:
        self._last_error = exc
        self._set_status(SyncStatus.FAILED)
        self._set_status(SyncStatus.IDLE)
        if isinstance(exc, AuthError):
            self.queue.notify_auth_error(exc)

    async def _reconcile(
        self,
        user_id: str,
        local_orders: list[Order],
        remote_orders: list[Order],
        tombstone_keys: set[str],
    ) -> list[SyncResult]:
        local_map, local_extras = _index_by_business_key(local_orders)
        remote_map, remote_extras = _index_by_business_key(remote_orders)

        for extra in local_extras:
            logger.info(
                "Dropping duplicate local copy of '%s'", extra.business_key
            )
            await self.local.delete(extra.id)

        results: list[SyncResult] = []
        for extra in remote_extras:
            results.append(await self._delete_remote_duplicate(extra))

        keys = sorted(set(local_map) | set(remote_map) | tombstone_keys)
        for key in keys:
            local = local_map.get(key)
            remote = remote_map.get(key)
            decision = resolve(local, remote, key in tombstone_keys)
            logger.debug(
                "'%s': %s (%s)", key, decision.action.value, decision.reason
            )
            results.append(
                await self._apply(key, decision, local, remote, user_id)
            )
        return results

    async def _apply(
        self,
        key: str,
        decision: Decision,
        local: Order | None,
        remote: Order | None,
        user_id: str,
    ) -> SyncResult:
        action = decision.action

        if action == Resolution.UPLOAD:
            record = local
            if record.user_id != user_id:
                record = record.model_copy(update={"user_id": user_id})
                await self.local.upsert(record)
            queued = await self.queue.add(
                PendingOperation(
                    target_id=key,
                    kind=OperationKind.UPSERT,
                    payload=record,
                    remote_id=remote.id if remote is not None else None,
                ),
                process=False,
            )
            if not queued:
                return SyncResult(
                    business_key=key,
                    action=action,
                    success=False,
                    error="invalid record, not uploaded",
                )
            return SyncResult(business_key=key, action=action, pending=True)

        if action == Resolution.DOWNLOAD:
            record = decision.record
            if record.user_id != user_id:
                record = record.model_copy(update={"user_id": user_id})
            await self.local.upsert(record, merge_by_business_key=True)
            await self.local.discard_tombstone_business_keys([key])
            await self.queue.discard(key)
            return SyncResult(business_key=key, action=action)

        if action == Resolution.DELETE_REMOTE:
            queued = await self.queue.add(
                PendingOperation(
                    target_id=key,
                    kind=OperationKind.DELETE,
                    remote_id=remote.id,
                ),
                process=False,
            )
            if not queued:
                return SyncResult(
                    business_key=key,
                    action=action,
                    success=False,
                    error="remote delete could not be queued",
                )
            return SyncResult(business_key=key, action=action, pending=True)

        if action == Resolution.PURGE_LOCAL:
            if local is not None:
                await self.local.delete(local.id)
            await self.local.discard_tombstone_business_keys([key])
            await self.queue.discard(key)
            return SyncResult(business_key=key, action=action)

        return SyncResult(business_key=key, action=action)

    async def _delete_remote_duplicate(self, extra: Order) -> SyncResult:
        # Targeted by remote id so it cannot supersede the operation for
        # the surviving copy.
        logger.info(
            "Removing duplicate remote copy of '%s' (%s)",
            extra.business_key,
            extra.id,
        )
        queued = await self.queue.add(
            PendingOperation(
                target_id=extra.id,
                kind=OperationKind.DELETE,
                remote_id=extra.id,
            ),
            process=False,
        )
        return SyncResult(
            business_key=extra.business_key,
            action=Resolution.DELETE_REMOTE,
            success=queued,
            error=None if queued else "remote delete could not be queued",
        )

    async def _drain_queue(self) -> list[str]:
        """Process the queue once; return target ids dropped this pass."""
        try:
            await self.queue.process()
        except QueueExhausted as exc:
            logger.warning("%s", exc)
            return [op.target_id for op in exc.operations]
        return []

    async def _confirm(
        self, results: list[SyncResult], local_orders: list[Order]
    ) -> list[SyncResult]:
        """Settle queued actions against what the queue still holds.

        Local tombstones whose remote delete went through are purged.
        """
        pending = await self.queue.pending_target_ids()
        failed = {
            op.target_id: op.last_error for op in await self.queue.get_failed()
        }
        by_key: dict[str, list[Order]] = {}
        for order in local_orders:
            by_key.setdefault(order.business_key, []).append(order)

        settled: list[SyncResult] = []
        for result in results:
            if not result.pending:
                settled.append(result)
                continue

            key = result.business_key
            if key in failed:
                settled.append(
                    result.model_copy(
                        update={
                            "pending": False,
                            "success": False,
                            "error": failed[key] or "delivery failed",
                        }
                    )
                )
                continue
            if key in pending:
                settled.append(result)
                continue

            if result.action == Resolution.DELETE_REMOTE:
                for order in by_key.get(key, []):
                    if order.is_tombstoned:
                        await self.local.delete(order.id)
                await self.local.discard_tombstone_business_keys([key])
            settled.append(result.model_copy(update={"pending": False}))
        return settled

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(
            self.scheduler.now(), tz=timezone.utc
        ).isoformat()
