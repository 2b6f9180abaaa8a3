"""Shared pytest fixtures for order-sync tests."""

from __future__ import annotations

import pytest
from dotenv import load_dotenv

from order_sync.config import Config
from order_sync.errors import AuthError, NetworkError, NotFoundError
from order_sync.models import Order
from order_sync.storage.kv import MemoryStore
from order_sync.storage.local import LocalReplicaStore
from order_sync.sync.engine import SyncEngine
from order_sync.sync.queue import PendingOperationQueue

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live orders API",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeHandle:
    def __init__(self, due: float, seq: int, callback):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler with a manual clock.

    Callbacks only run from ``advance()``, in due-time order.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self.clock = start
        self._handles: list[FakeHandle] = []
        self._seq = 0

    def now(self) -> float:
        return self.clock

    def call_later(self, delay, callback) -> FakeHandle:
        self._seq += 1
        handle = FakeHandle(self.clock + max(delay, 0.0), self._seq, callback)
        self._handles.append(handle)
        return handle

    @property
    def scheduled(self) -> list[FakeHandle]:
        return [h for h in self._handles if not h.cancelled]

    async def advance(self, seconds: float = 0.0) -> None:
        """Move the clock forward, running every callback that comes due."""
        target = self.clock + seconds
        while True:
            due = [
                h for h in self._handles if not h.cancelled and h.due <= target
            ]
            if not due:
                break
            handle = min(due, key=lambda h: (h.due, h.seq))
            self._handles.remove(handle)
            self.clock = max(self.clock, handle.due)
            await handle.callback()
        self.clock = target


class FakeRemote:
    """In-memory stand-in for ``RemoteReplicaClient``.

    ``failures`` maps a method name (``get_all``, ``create``, ``update``,
    ``delete``) to a list of exceptions raised by the next calls.
    ``offline`` makes every call raise ``NetworkError``.
    """

    def __init__(self, orders: list[Order] | None = None):
        self.orders: dict[str, Order] = {o.id: o for o in orders or []}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str]] = []
        self.offline = False
        self.token: str | None = "token"

    @property
    def has_token(self) -> bool:
        return bool(self.token)

    def set_access_token(self, token, token_type=None) -> None:
        self.token = token

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _check(self, method: str, target: str = "") -> None:
        self.calls.append((method, target))
        if not self.token:
            raise AuthError("No access token set; sign in to sync")
        if self.offline:
            raise NetworkError("offline")
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def by_business_key(self, key: str) -> list[Order]:
        return [o for o in self.orders.values() if o.business_key == key]

    async def get_all(self) -> list[Order]:
        self._check("get_all")
        return list(self.orders.values())

    async def create(self, order: Order) -> Order:
        self._check("create", order.business_key)
        self.orders[order.id] = order
        return order

    async def update(self, order_id: str, partial: dict) -> None:
        self._check("update", order_id)
        if order_id not in self.orders:
            raise NotFoundError(f"PATCH /orders/{order_id} returned 404")
        data = self.orders[order_id].to_wire()
        data.update(partial)
        self.orders[order_id] = Order.model_validate(data)

    async def delete(self, order_id: str) -> None:
        self._check("delete", order_id)
        if self.orders.pop(order_id, None) is None:
            raise NotFoundError(f"DELETE /orders/{order_id} returned 404")


def make_order(business_key: str = "111-2222222-3333333", **fields) -> Order:
    """Build an order with sensible defaults."""
    data = {
        "business_key": business_key,
        "user_id": "user-1",
        "product_name": "USB-C Cable",
        "order_date": "January 5, 2024",
        "price": "$9.99",
        "created_at": "2024-01-05T10:00:00+00:00",
        "updated_at": "2024-01-05T10:00:00+00:00",
    }
    data.update(fields)
    return Order(**data)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        api_base_url="https://api.example.com",
        access_token="secret-token",
        insecure=False,
    )


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def local(kv):
    return LocalReplicaStore(kv)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def queue(kv, remote, scheduler):
    return PendingOperationQueue(kv, remote, scheduler)


@pytest.fixture
def engine(local, remote, queue, scheduler):
    return SyncEngine(local, remote, queue, scheduler, debounce_seconds=2.0)
