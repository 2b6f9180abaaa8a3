import asyncio
import logging
import threading
from typing import Any

import requests

from ..config import Config
from ..errors import AuthError, NetworkError, NotFoundError
from ..models import Order
from .async_utils import gather_limited, run_sync, run_sync_limited

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


class RemoteReplicaClient:
    """HTTP client for the cloud ``/orders`` collection.

    Calls are blocking ``requests`` calls executed in worker threads, one
    ``requests.Session`` per thread.  Every request carries the bearer
    token set through ``set_access_token()``; without a token the client
    raises ``AuthError`` before touching the network.
    """

    def __init__(self, config: Config):
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self._thread_local = threading.local()
        self._access_token: str | None = config.access_token
        self._token_type = "Bearer"
        self._semaphore = asyncio.Semaphore(config.max_parallel_requests)

    @property
    def session(self) -> requests.Session:
        """Session bound to the calling thread."""
        return self._get_session()

    @property
    def has_token(self) -> bool:
        return bool(self._access_token)

    def set_access_token(
        self, token: str | None, token_type: str | None = None
    ) -> None:
        """Install (or clear, with ``None``) the bearer credential."""
        self._access_token = token
        self._token_type = token_type or "Bearer"

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = not self.config.insecure
        return session

    def _headers(self) -> dict[str, str]:
        if not self._access_token:
            raise AuthError("No access token set; sign in to sync")
        return {
            "Authorization": f"{self._token_type} {self._access_token}",
            "Accept": "application/json",
        }

    def _request(
        self, method: str, path: str, json: Any = None
    ) -> requests.Response:
        """
        Send one request and translate failures into order-sync errors.
        """
        url = f"{self.base_url}{path}"
        headers = self._headers()
        try:
            response = self._get_session().request(
                method,
                url,
                json=json,
                headers=headers,
                timeout=(CONNECT_TIMEOUT, self.config.timeout_seconds),
            )
        except requests.Timeout as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except requests.ConnectionError as exc:
            raise NetworkError(
                f"{method} {path} failed: cannot reach {self.base_url}"
            ) from exc
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        self._raise_for_status(response, method, path)
        return response

    @staticmethod
    def _raise_for_status(
        response: requests.Response, method: str, path: str
    ) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        reason = response.reason or ""
        message = f"{method} {path} returned {status} {reason}".rstrip()
        match status:
            case 401 | 403:
                raise AuthError(message)
            case 404:
                raise NotFoundError(message)
            case _:
                raise NetworkError(message, status_code=status)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get_all(self) -> list[Order]:
        response = self._request("GET", "/orders")
        try:
            items = response.json()
        except ValueError as exc:
            raise NetworkError("GET /orders returned invalid JSON") from exc
        if not isinstance(items, list):
            raise NetworkError("GET /orders did not return a list")

        orders: list[Order] = []
        for item in items:
            try:
                orders.append(Order.model_validate(item))
            except ValueError as exc:
                logger.warning("Skipping malformed remote order: %s", exc)
        return orders

    def _create(self, order: Order) -> Order | None:
        response = self._request("POST", "/orders", json=order.to_wire())
        if not response.content:
            return None
        try:
            return Order.model_validate(response.json())
        except ValueError:
            return None

    def _update(self, order_id: str, partial: dict[str, Any]) -> None:
        self._request("PATCH", f"/orders/{order_id}", json=partial)

    def _delete(self, order_id: str) -> None:
        self._request("DELETE", f"/orders/{order_id}")

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def get_all(self) -> list[Order]:
        """Fetch every order of the authenticated user."""
        return await run_sync(self._get_all)

    async def create(self, order: Order) -> Order | None:
        """Create an order; returns the stored record when the API echoes it."""
        return await run_sync_limited(self._semaphore, self._create, order)

    async def update(self, order_id: str, partial: dict[str, Any]) -> None:
        """Patch fields (camelCase keys) of the remote order *order_id*."""
        await run_sync_limited(
            self._semaphore, self._update, order_id, partial
        )

    async def delete(self, order_id: str) -> None:
        """Delete the remote order *order_id*."""
        await run_sync_limited(self._semaphore, self._delete, order_id)

    async def save_all(self, orders: list[Order]) -> None:
        """Create several orders concurrently (bounded).

        Bulk entry point for callers that push a whole set at once.  The
        outbox does not use it; it sends one request per item and retries
        items individually.  The first error propagates.
        """
        await gather_limited(
            self._semaphore,
            [lambda o=o: run_sync(self._create, o) for o in orders],
        )

    async def delete_all(self, order_ids: list[str]) -> None:
        """Delete several orders concurrently (bounded).

        Bulk counterpart of ``delete()``; see ``save_all()``.
        """
        await gather_limited(
            self._semaphore,
            [lambda i=i: run_sync(self._delete, i) for i in order_ids],
        )
