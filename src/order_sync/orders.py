"""Local order mutations and queries used by the UI layer.

``OrderService`` is the only writer besides the sync engine.  Every
mutation stamps ``updatedAt`` and then signals the engine, which runs a
debounced sync round.  Deletions are soft (``deletedAt``) so they can
propagate; ``hard_delete`` removes the record at once and remembers its
order number in the tombstone set instead.
"""

from __future__ import annotations

import csv
import difflib
import io
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Literal

from .errors import NotFoundError
from .models import ORDER_STATUS_LABELS, Order, OrderStatus
from .storage.local import LocalReplicaStore
from .sync.resolver import EPOCH
from .validators import validate_order

if TYPE_CHECKING:
    from .sync.engine import SyncEngine

logger = logging.getLogger(__name__)

SortOption = Literal["date-desc", "date-asc"]

CSV_COLUMNS = [
    "Order Number",
    "Product Name",
    "Order Date",
    "Price",
    "Status",
    "Note",
]

# Field weights for search ranking, and the similarity a word must reach
# to count as a fuzzy hit.
SEARCH_FIELDS = (
    ("business_key", 2.0),
    ("product_name", 1.5),
    ("price", 1.0),
    ("note", 1.0),
)
FUZZY_CUTOFF = 0.6

ORDER_DATE_FORMATS = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%m/%d/%Y",
    "%Y-%m-%d",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def parse_order_date(value: str) -> datetime:
    """Parse the displayed order date; unknown formats sort as the epoch."""
    if not value:
        return EPOCH
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in ORDER_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        else:
            return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _field_score(query: str, value: str) -> float:
    text = value.lower()
    if query in text:
        return 1.0
    words = text.split()
    if not words:
        return 0.0
    best = max(
        difflib.SequenceMatcher(None, query, word).ratio() for word in words
    )
    return best if best >= FUZZY_CUTOFF else 0.0


def search_orders(orders: Iterable[Order], query: str) -> list[Order]:
    """Return orders matching *query*, best matches first.

    Order number, product name, price and note are searched.  A field
    matches on a case-insensitive substring hit, or when one of its words
    is close to the query.
    """
    query = query.strip().lower()
    orders = list(orders)
    if not query:
        return orders

    scored: list[tuple[float, int, Order]] = []
    for position, order in enumerate(orders):
        score = 0.0
        for field, weight in SEARCH_FIELDS:
            score += weight * _field_score(query, getattr(order, field) or "")
        if score > 0:
            scored.append((score, position, order))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [order for _, _, order in scored]


def filter_orders_by_status(
    orders: Iterable[Order], status: OrderStatus | str | None
) -> list[Order]:
    if status is None or status == "all":
        return list(orders)
    wanted = OrderStatus(status)
    return [o for o in orders if o.status == wanted]


def sort_orders(orders: Iterable[Order], option: SortOption) -> list[Order]:
    """Sort by order date; ``sorted`` is stable, so ties keep their order."""
    return sorted(
        orders,
        key=lambda o: parse_order_date(o.order_date),
        reverse=option == "date-desc",
    )


def export_csv(orders: Iterable[Order]) -> str:
    """Render orders as CSV text with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for order in orders:
        writer.writerow(
            [
                order.business_key,
                order.product_name,
                order.order_date,
                order.price,
                order.status.value,
                order.note or "",
            ]
        )
    return buffer.getvalue()


def export_filename(today: datetime | None = None) -> str:
    day = (today or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"orders-{day}.csv"


def status_label(status: OrderStatus) -> str:
    return ORDER_STATUS_LABELS[status]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OrderService:
    """Mutation handlers over the local replica.

    Args:
        local: The local replica store.
        engine: Engine signalled after each mutation, if any.
    """

    def __init__(
        self,
        local: LocalReplicaStore,
        engine: SyncEngine | None = None,
    ) -> None:
        self.local = local
        self.engine = engine

    def _changed(self) -> None:
        if self.engine is not None:
            self.engine.on_local_mutation()

    async def list_orders(
        self,
        user_id: str | None = None,
        search: str = "",
        status: OrderStatus | str | None = "all",
        sort: SortOption = "date-desc",
        include_deleted: bool = False,
    ) -> list[Order]:
        """List orders with search, status filter and date sort applied.

        Soft-deleted orders are hidden unless *include_deleted* is set.
        """
        orders = await self.local.get_all(user_id)
        if not include_deleted:
            orders = [o for o in orders if not o.is_tombstoned]
        orders = search_orders(orders, search)
        orders = filter_orders_by_status(orders, status)
        return sort_orders(orders, sort)

    async def save_order(self, order: Order) -> Order:
        """Store a captured order, merging with a live one of the same
        order number.

        The existing record keeps its id and creation time; user-owned
        fields (status, note) are kept unless the incoming order sets a
        note.

        Raises:
            ValidationError: If the order is malformed.
        """
        validate_order(order)
        now = utc_now_iso()

        existing = None
        for candidate in await self.local.get_all(order.user_id):
            if (
                candidate.business_key == order.business_key
                and not candidate.is_tombstoned
            ):
                existing = candidate
                break

        if existing is not None:
            saved = order.model_copy(
                update={
                    "id": existing.id,
                    "user_id": existing.user_id,
                    "status": existing.status,
                    "note": order.note if order.note else existing.note,
                    "created_at": existing.created_at or now,
                    "updated_at": now,
                    "deleted_at": None,
                }
            )
        else:
            saved = order.model_copy(
                update={
                    "created_at": order.created_at or now,
                    "updated_at": now,
                    "deleted_at": None,
                }
            )

        await self.local.upsert(saved)
        await self.local.discard_tombstone_business_keys([saved.business_key])
        logger.debug("Saved order '%s'", saved.business_key)
        self._changed()
        return saved

    async def update_status(
        self, order_id: str, status: OrderStatus | str
    ) -> Order:
        """Raises ``NotFoundError`` if *order_id* is unknown."""
        order = await self.local.update_fields(
            order_id,
            {"status": OrderStatus(status), "updated_at": utc_now_iso()},
        )
        self._changed()
        return order

    async def update_note(self, order_id: str, note: str | None) -> Order:
        order = await self.local.update_fields(
            order_id, {"note": note or None, "updated_at": utc_now_iso()}
        )
        self._changed()
        return order

    async def delete_orders(self, order_ids: Iterable[str]) -> int:
        """Soft-delete orders so the deletion reaches the remote replica.

        Unknown ids are skipped.

        Returns:
            Number of orders tombstoned.
        """
        now = utc_now_iso()
        count = 0
        for order_id in order_ids:
            try:
                await self.local.update_fields(
                    order_id, {"deleted_at": now, "updated_at": now}
                )
            except NotFoundError:
                logger.debug("Order %s already gone", order_id)
                continue
            count += 1
        if count:
            self._changed()
        return count

    async def hard_delete(self, order_id: str) -> None:
        """Remove an order now and track its order number for remote
        deletion.

        Raises:
            NotFoundError: If *order_id* is unknown.
        """
        order = await self.local.get_by_id(order_id)
        if order is None:
            raise NotFoundError(f"Order with id {order_id} not found")
        await self.local.delete(order_id)
        await self.local.add_tombstone_business_key(order.business_key)
        self._changed()

    async def export(
        self,
        user_id: str | None = None,
        search: str = "",
        status: OrderStatus | str | None = "all",
        sort: SortOption = "date-desc",
    ) -> str:
        """CSV of the orders ``list_orders`` would show."""
        orders = await self.list_orders(user_id, search, status, sort)
        return export_csv(orders)
