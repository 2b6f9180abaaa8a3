"""Local replica of the order collection.

The local replica is the single source of truth read by the UI layer.
Every writer (the sync engine, user mutation handlers) goes through
``LocalReplicaStore``; nothing else touches the underlying keys.

Two logical keys are used in the key-value store:

* ``orders`` -- list of camelCase order dicts, tombstoned ones included.
* ``deleted_order_numbers`` -- business keys of orders that were
  physically removed before their remote deletion could be confirmed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..models import ANONYMOUS_USER_ID, Order, to_field_names
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

ORDERS_KEY = "orders"
TOMBSTONES_KEY = "deleted_order_numbers"


class LocalReplicaStore:
    """Durable order collection plus the tombstone business-key set.

    Read-modify-write cycles are serialised with an ``asyncio.Lock`` so
    interleaved writers cannot lose each other's updates.

    Args:
        kv: Key-value persistence backend.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    async def _load(self) -> list[Order]:
        raw = await self._kv.get(ORDERS_KEY) or []
        orders: list[Order] = []
        for item in raw:
            try:
                orders.append(Order.model_validate(item))
            except ValueError as exc:
                logger.warning("Dropping unreadable local order: %s", exc)
        return orders

    async def _save(self, orders: list[Order]) -> None:
        await self._kv.set(ORDERS_KEY, [o.to_wire() for o in orders])

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_all(self, user_id: str | None = None) -> list[Order]:
        """Return the user's orders, tombstones included.

        Orders still owned by the anonymous placeholder are included for
        every user, since the first signed-in user adopts them.  With
        ``user_id=None`` every stored order is returned.
        """
        orders = await self._load()
        if user_id is None:
            return orders
        return [
            o for o in orders if o.user_id in (user_id, ANONYMOUS_USER_ID)
        ]

    async def get_by_id(self, order_id: str) -> Order | None:
        for order in await self._load():
            if order.id == order_id:
                return order
        return None

    async def upsert(
        self, order: Order, merge_by_business_key: bool = False
    ) -> None:
        """Insert *order* or replace the stored order with the same id.

        With ``merge_by_business_key=True`` any order of the same owner (or
        the anonymous placeholder) sharing the business key is replaced
        regardless of its id.  This is how downloaded remote versions,
        whose surrogate ids may differ, are absorbed.
        """
        async with self._lock:
            orders = await self._load()
            if merge_by_business_key:
                owners = (order.user_id, ANONYMOUS_USER_ID)
                orders = [
                    o
                    for o in orders
                    if o.id != order.id
                    and not (
                        o.business_key == order.business_key
                        and o.user_id in owners
                    )
                ]
                orders.append(order)
            else:
                for index, existing in enumerate(orders):
                    if existing.id == order.id:
                        orders[index] = order
                        break
                else:
                    orders.append(order)
            await self._save(orders)

    async def update_fields(
        self, order_id: str, partial: dict[str, Any]
    ) -> Order:
        """Apply *partial* (snake_case or camelCase keys) to one order.

        Returns:
            The updated order.

        Raises:
            NotFoundError: If no order has *order_id*.
            ValidationError: If the result is not a valid order.
        """
        async with self._lock:
            orders = await self._load()
            for index, existing in enumerate(orders):
                if existing.id == order_id:
                    break
            else:
                raise NotFoundError(f"Order with id {order_id} not found")

            data = existing.model_dump()
            data.update(to_field_names(partial))
            try:
                updated = Order.model_validate(data)
            except ValueError as exc:
                raise ValidationError(
                    f"Invalid update for order {order_id}: {exc}"
                ) from exc
            orders[index] = updated
            await self._save(orders)
            return updated

    async def delete(self, order_id: str) -> None:
        """Physically remove one order.  No-op if absent."""
        async with self._lock:
            orders = await self._load()
            remaining = [o for o in orders if o.id != order_id]
            if len(remaining) != len(orders):
                await self._save(remaining)

    # ------------------------------------------------------------------
    # Tombstone business keys
    # ------------------------------------------------------------------

    async def list_tombstone_business_keys(self) -> list[str]:
        return list(await self._kv.get(TOMBSTONES_KEY) or [])

    async def add_tombstone_business_key(self, business_key: str) -> None:
        async with self._lock:
            keys = await self.list_tombstone_business_keys()
            if business_key not in keys:
                keys.append(business_key)
                await self._kv.set(TOMBSTONES_KEY, keys)

    async def discard_tombstone_business_keys(
        self, business_keys: Iterable[str]
    ) -> None:
        """Remove the given keys from the tombstone set."""
        drop = set(business_keys)
        if not drop:
            return
        async with self._lock:
            keys = await self.list_tombstone_business_keys()
            remaining = [k for k in keys if k not in drop]
            if len(remaining) != len(keys):
                await self._kv.set(TOMBSTONES_KEY, remaining)

    async def clear_tombstone_business_keys(self) -> None:
        async with self._lock:
            await self._kv.remove(TOMBSTONES_KEY)
