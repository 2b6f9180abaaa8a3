"""Error taxonomy shared by the stores, the remote client, and the sync engine.

Each class maps to one recovery policy:

- ``NetworkError`` -- transient; the pending-operation queue retries it.
- ``AuthError`` -- credential missing/expired; never retried by the queue,
  operations wait until a new token is supplied.
- ``NotFoundError`` -- the target does not exist.  For remote deletes this
  is treated as success.
- ``ValidationError`` -- malformed record; rejected before it is queued.
- ``QueueExhausted`` -- one or more operations hit the retry cap and were
  dropped from the queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import PendingOperation


class OrderSyncError(Exception):
    """Base class for all order-sync errors."""


class NetworkError(OrderSyncError):
    """Connectivity failure, timeout, or 5xx response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(OrderSyncError):
    """401/403 response, or no access token configured."""


class NotFoundError(OrderSyncError):
    """The addressed record does not exist."""


class ValidationError(OrderSyncError):
    """A record failed validation.

    Attributes:
        field: Name of the offending field, when known.
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class QueueExhausted(OrderSyncError):
    """Operations were dropped after reaching the retry cap."""

    def __init__(self, operations: list[PendingOperation]):
        keys = ", ".join(op.target_id for op in operations)
        super().__init__(
            f"{len(operations)} operation(s) failed to sync: {keys}"
        )
        self.operations = operations
