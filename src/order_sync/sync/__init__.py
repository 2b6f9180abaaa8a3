"""Offline-first order reconciliation.

Modules:

- ``resolver`` -- ``resolve()``: last-write-wins and tombstone rules for
  one business key.
- ``queue``    -- ``PendingOperationQueue``: durable, deduplicating outbox
  with bounded retry.
- ``engine``   -- ``SyncEngine``: runs reconciliation rounds and reacts
  to sign-in, local edits and newly captured orders.
- ``reporter`` -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from order_sync.core import AsyncioScheduler, RemoteReplicaClient
    from order_sync.storage import JsonFileStore, LocalReplicaStore
    from order_sync.sync import (
        PendingOperationQueue,
        SyncEngine,
        format_sync_report,
    )

    kv = JsonFileStore(config.data_dir)
    scheduler = AsyncioScheduler()
    client = RemoteReplicaClient(config)
    queue = PendingOperationQueue(kv, client, scheduler)
    engine = SyncEngine(LocalReplicaStore(kv), client, queue, scheduler)

    report = await engine.on_user_authenticated("user-123")
    print(format_sync_report(report))
"""

from .engine import SyncEngine, SyncStatus
from .queue import PendingOperationQueue, ProcessResult
from .reporter import (
    format_queue_status,
    format_sync_report,
    report_to_json,
)
from .resolver import compare_timestamps, parse_timestamp, resolve

__all__ = [
    "PendingOperationQueue",
    "ProcessResult",
    "SyncEngine",
    "SyncStatus",
    "compare_timestamps",
    "format_queue_status",
    "format_sync_report",
    "parse_timestamp",
    "resolve",
    "report_to_json",
]
