"""Conflict resolution for one business key.

``resolve()`` is a pure function: given the local version, the remote
version and whether the key is tombstoned locally, it returns a
``Decision`` naming the action the engine must take.  Rules, in priority
order:

1. Only one side exists and it is live: propagate it to the other side.
2. Local is tombstoned and the remote is absent: purge the local
   tombstone.
3. Local is tombstoned and the remote exists: if the remote was updated
   strictly after the local deletion, the remote is resurrected locally;
   otherwise the deletion wins and is sent to the remote.
4. Both sides live: the strictly newer ``updatedAt`` wins.  On a tie the
   remote is authoritative.

Missing or unparseable timestamps count as time zero.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ..models import Decision, Order, Resolution

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    ``None``, empty and unparseable values map to the epoch.  Naive values
    are taken as UTC.
    """
    if not value:
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp '%s', using epoch", value)
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compare_timestamps(a: str | None, b: str | None) -> int:
    """Return -1, 0 or 1 as *a* is older than, equal to, or newer than *b*."""
    ta, tb = parse_timestamp(a), parse_timestamp(b)
    if ta < tb:
        return -1
    if ta > tb:
        return 1
    return 0


def resolve(
    local: Order | None,
    remote: Order | None,
    local_tombstoned: bool = False,
) -> Decision:
    """Decide how to reconcile one business key.

    Args:
        local: Local version, tombstoned or not, or ``None``.
        remote: Remote version, or ``None``.
        local_tombstoned: True when the key sits in the local tombstone
            set.  Only consulted when *local* is ``None``; a present local
            version is tombstoned exactly when it carries ``deletedAt``, so
            a record re-created after a hard delete stays live.

    Returns:
        The ``Decision`` for this key.
    """
    if local is not None:
        tombstoned = local.is_tombstoned
    else:
        tombstoned = local_tombstoned

    if tombstoned:
        return _resolve_tombstone(local, remote)

    if local is None and remote is None:
        return Decision(action=Resolution.NOOP, reason="absent on both sides")

    if remote is None:
        return Decision(
            action=Resolution.UPLOAD, record=local, reason="local only"
        )
    if local is None:
        return Decision(
            action=Resolution.DOWNLOAD, record=remote, reason="remote only"
        )

    order = compare_timestamps(local.updated_at, remote.updated_at)
    if order > 0:
        return Decision(
            action=Resolution.UPLOAD, record=local, reason="local newer"
        )
    if order < 0:
        return Decision(
            action=Resolution.DOWNLOAD, record=remote, reason="remote newer"
        )
    if local.same_payload(remote):
        return Decision(action=Resolution.NOOP, reason="in sync")
    return Decision(
        action=Resolution.DOWNLOAD,
        record=remote,
        reason="timestamp tie, remote authoritative",
    )


def _resolve_tombstone(
    local: Order | None, remote: Order | None
) -> Decision:
    if remote is None:
        return Decision(
            action=Resolution.PURGE_LOCAL,
            record=local,
            reason="deleted locally, absent remotely",
        )

    # A key hard-deleted offline has no deletion time left; the
    # deletion wins.
    deleted_at = local.deleted_at if local is not None else None
    if deleted_at and compare_timestamps(remote.updated_at, deleted_at) > 0:
        return Decision(
            action=Resolution.DOWNLOAD,
            record=remote,
            reason="remote edited after local delete",
        )
    return Decision(
        action=Resolution.DELETE_REMOTE,
        record=remote,
        reason="local delete wins",
    )
