"""Pydantic models shared across the order-sync package.

- ``Order``: one record of the replicated collection.
- ``OrderStatus``: workflow state of an order.
- ``OperationKind`` / ``PendingOperation``: outbox entries.
- ``Resolution`` / ``Decision``: conflict resolver output.
- ``SyncResult`` / ``SyncReport``: outcome of a sync round.

Records use camelCase keys on the wire and in local storage; the business
key travels as ``orderNumber``.  All models are frozen; use
``model_copy(update=...)`` to derive a changed record.
"""

from __future__ import annotations

import uuid
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Owner id of records captured before the user signed in.
ANONYMOUS_USER_ID = "local"

# Fields compared when deciding whether two versions carry the same data.
PAYLOAD_FIELDS = (
    "business_key",
    "product_name",
    "order_date",
    "product_image",
    "price",
    "status",
    "note",
)


class OrderStatus(str, Enum):
    """Workflow state of an order."""

    UNCOMMENTED = "uncommented"
    COMMENTED = "commented"
    COMMENT_REVEALED = "comment_revealed"
    REIMBURSED = "reimbursed"


ORDER_STATUS_LABELS: dict[OrderStatus, str] = {
    OrderStatus.UNCOMMENTED: "Uncommented",
    OrderStatus.COMMENTED: "Commented",
    OrderStatus.COMMENT_REVEALED: "Comment Revealed",
    OrderStatus.REIMBURSED: "Reimbursed",
}


class Order(BaseModel):
    """A single order record.

    Attributes:
        id: Surrogate identifier, stable within the replica that made it.
        user_id: Owner; ``"local"`` until adopted by a signed-in user.
        business_key: The order number, the identity used across replicas.
        product_name: Product title as scraped.
        order_date: Order date as displayed by the source page.
        product_image: Product image URL.
        price: Price string as displayed by the source page.
        status: Workflow state.
        note: Free-text user note.
        created_at: ISO 8601 creation timestamp.
        updated_at: ISO 8601 timestamp of the last mutation.
        deleted_at: ISO 8601 soft-delete timestamp (tombstone marker).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ANONYMOUS_USER_ID
    business_key: str = Field(
        validation_alias=AliasChoices(
            "orderNumber", "businessKey", "business_key"
        ),
        serialization_alias="orderNumber",
    )
    product_name: str = ""
    order_date: str = ""
    product_image: str = ""
    price: str = ""
    status: OrderStatus = OrderStatus.UNCOMMENTED
    note: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_tombstoned(self) -> bool:
        """True when the record carries a soft-delete marker."""
        return self.deleted_at is not None

    def to_wire(self) -> dict:
        """Serialise to the camelCase dict used by storage and the API."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def same_payload(self, other: Order) -> bool:
        """Return True if *other* carries the same user-visible data."""
        return all(
            getattr(self, name) == getattr(other, name)
            for name in PAYLOAD_FIELDS
        )


def to_field_names(partial: dict) -> dict:
    """Map camelCase keys of a partial order to model field names.

    Keys that are already field names pass through; unknown keys are kept
    as-is so validation can report them.
    """
    lookup: dict[str, str] = {}
    for name, info in Order.model_fields.items():
        lookup[name] = name
        for alias in (info.alias, info.serialization_alias):
            if alias:
                lookup[alias] = name
    return {lookup.get(key, key): value for key, value in partial.items()}


class OperationKind(str, Enum):
    """Kind of remote mutation held in the outbox."""

    UPSERT = "upsert"
    DELETE = "delete"


class PendingOperation(BaseModel):
    """A remote mutation waiting for delivery.

    ``target_id`` is the business key of the affected order, so at most
    one operation per logical record is ever queued.  ``remote_id`` is the
    remote surrogate id when known; deletes cannot be sent without it.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    target_id: str
    kind: OperationKind
    payload: Order | None = None
    remote_id: str | None = None
    retry_count: int = 0
    enqueued_at: str | None = None
    next_attempt_at: float = 0.0
    last_error: str | None = None


class Resolution(str, Enum):
    """Action chosen by the conflict resolver for one business key."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_REMOTE = "delete_remote"
    PURGE_LOCAL = "purge_local"
    NOOP = "noop"


class Decision(BaseModel):
    """Resolver verdict for one business key.

    Attributes:
        action: What the engine should do.
        record: The winning version to propagate (UPLOAD/DOWNLOAD only).
        reason: Short explanation, used in logs and reports.
    """

    model_config = ConfigDict(frozen=True)

    action: Resolution
    record: Order | None = None
    reason: str = ""


class SyncResult(BaseModel):
    """Outcome for one business key within a sync round.

    ``pending`` is True when the action was handed to the outbox but its
    delivery has not been confirmed yet.
    """

    model_config = ConfigDict(frozen=True)

    business_key: str
    action: Resolution
    success: bool = True
    pending: bool = False
    error: str | None = None


class SyncReport(BaseModel):
    """Aggregate report for one sync round."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    results: list[SyncResult] = []
    failed_operations: list[str] = []
    started_at: str
    completed_at: str | None = None

    def _by_action(self, action: Resolution) -> list[SyncResult]:
        return [r for r in self.results if r.action == action]

    @property
    def uploaded(self) -> list[SyncResult]:
        return self._by_action(Resolution.UPLOAD)

    @property
    def downloaded(self) -> list[SyncResult]:
        return self._by_action(Resolution.DOWNLOAD)

    @property
    def deleted_remote(self) -> list[SyncResult]:
        return self._by_action(Resolution.DELETE_REMOTE)

    @property
    def purged_local(self) -> list[SyncResult]:
        return self._by_action(Resolution.PURGE_LOCAL)

    @property
    def unchanged(self) -> list[SyncResult]:
        return self._by_action(Resolution.NOOP)

    @property
    def pending(self) -> list[SyncResult]:
        return [r for r in self.results if r.pending]

    @property
    def errors(self) -> list[SyncResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """Format a short multi-line count summary of the round."""
        lines = [
            f"Sync report for user '{self.user_id}'",
            f"  Uploaded:       {len(self.uploaded)}",
            f"  Downloaded:     {len(self.downloaded)}",
            f"  Deleted remote: {len(self.deleted_remote)}",
            f"  Purged local:   {len(self.purged_local)}",
            f"  Unchanged:      {len(self.unchanged)}",
            f"  Pending:        {len(self.pending)}",
            f"  Errors:         {len(self.errors)}",
            f"  Total:          {len(self.results)}",
        ]
        return "\n".join(lines)
