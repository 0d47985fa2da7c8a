"""
Client-side order synchronization.

`OrderSynchronizer` keeps a local projection of orders for one observer:
- table: the ordering page of a single table
- kitchen: the kitchen display (first come, first served)
- admin: the admin dashboard (every order, newest first)

The projection is seeded by a full fetch and then kept current by push
events. Events may arrive twice or race with the fetch, so every merge is
idempotent and keyed by order id.
`warung.push_client.PushConnection` feeds it from the bridge WebSocket.
"""

import json
import logging
import uuid
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from .broadcaster import EVENT_NEW_ORDER, EVENT_ORDER_UPDATED

logger = logging.getLogger(__name__)

PAID = "paid"
STATUS_FIELDS = ("status", "paid_at", "version")


class ObserverRole(str, Enum):
    table = "table"
    kitchen = "kitchen"
    admin = "admin"


class OrderSynchronizer:
    def __init__(
        self,
        role: ObserverRole,
        fetch: Callable[[], list[dict]],
        table_number: str | None = None,
    ):
        if role == ObserverRole.table and not table_number:
            raise ValueError("A table observer needs a table number")
        self.role = role
        self.fetch = fetch
        self.table_number = table_number
        self.cache: dict[int, dict] = {}

    @property
    def hides_closed(self) -> bool:
        # Kitchen and diners do not need closed orders
        return self.role in (ObserverRole.table, ObserverRole.kitchen)

    def connect(self) -> None:
        """Seed the projection. Call again on every reconnect."""
        self.resync()

    def resync(self) -> None:
        """Replace the projection with authoritative server state."""
        fresh = {}
        for order in self.fetch():
            if not self._in_scope(order):
                continue
            if self.hides_closed and order.get("status") == PAID:
                continue
            fresh[order["id"]] = order
        self.cache = fresh
        logger.debug(f"{self.role.value} view resynced: {len(fresh)} order(s)")

    def handle_event(self, event: dict) -> None:
        kind = event.get("event")
        snapshot = event.get("data")
        if not isinstance(snapshot, dict) or "id" not in snapshot:
            logger.warning(f"Ignoring malformed {kind} event")
            return
        if kind == EVENT_NEW_ORDER:
            self.apply_new_order(snapshot)
        elif kind == EVENT_ORDER_UPDATED:
            self.apply_order_update(snapshot)
        else:
            logger.debug(f"Ignoring event {kind}")

    def handle_message(self, raw: str) -> None:
        self.handle_event(json.loads(raw))

    def apply_new_order(self, snapshot: dict) -> None:
        if not self._in_scope(snapshot):
            return
        # Duplicate delivery, or already seen through the initial fetch
        if snapshot["id"] in self.cache:
            return
        if self.hides_closed and snapshot.get("status") == PAID:
            return
        self.cache[snapshot["id"]] = snapshot

    def apply_order_update(self, snapshot: dict) -> None:
        if not self._in_scope(snapshot):
            return
        order_id = snapshot["id"]
        cached = self.cache.get(order_id)
        if cached and _version(snapshot) < _version(cached):
            logger.debug(f"Ignoring stale snapshot of order {order_id}")
            return

        if snapshot.get("status") == PAID and self.hides_closed:
            self.cache.pop(order_id, None)
            return

        if cached is None:
            # Missed the new-order event; the snapshot is complete, keep it
            self.cache[order_id] = snapshot
            return

        for field in STATUS_FIELDS:
            if field in snapshot:
                cached[field] = snapshot[field]
        snapshot_items = {item["id"]: item for item in snapshot.get("items", [])}
        for item in cached.get("items", []):
            if item["id"] in snapshot_items:
                item["status"] = snapshot_items[item["id"]]["status"]

    def optimistic_update(
        self,
        order_id: int,
        changes: dict,
        request: Callable[[], Any],
    ) -> Any:
        """Show `changes` right away, then send `request`.

        The next event or fetch overrides the tentative state. If the request
        fails the projection is refetched, never patched back by hand.
        """
        cached = self.cache.get(order_id)
        if cached is not None:
            cached.update(changes)
        try:
            return request()
        except Exception:
            logger.warning(f"Update of order {order_id} failed, refetching")
            self.resync()
            raise

    def orders(self) -> list[dict]:
        orders = list(self.cache.values())
        if self.role == ObserverRole.admin:
            return sorted(orders, key=lambda o: (o.get("created_at") or "", o["id"]), reverse=True)
        return sorted(orders, key=lambda o: (o.get("created_at") or "", o["id"]))

    def get(self, order_id: int) -> dict | None:
        return self.cache.get(order_id)

    def _in_scope(self, snapshot: dict) -> bool:
        if self.role != ObserverRole.table:
            return True
        return str(snapshot.get("table_number")) == str(self.table_number)


def _version(snapshot: dict) -> int:
    return snapshot.get("version") or 0


class ClientIdentity:
    """Access token and per-device client id, kept across restarts in a JSON file."""

    def __init__(self, path: Path):
        self.path = path
        data = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read {path}: {e}; starting a new identity")
        self.client_id: str = data.get("client_id") or str(uuid.uuid4())
        self.token: str | None = data.get("token")
        if not data.get("client_id"):
            self.save()

    def remember_token(self, token: str) -> None:
        self.token = token
        self.save()

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({"client_id": self.client_id, "token": self.token}),
            encoding="utf-8",
        )


class OrderApiClient:
    """Request/response calls against the order API."""

    def __init__(
        self,
        base_url: str,
        identity: ClientIdentity | None = None,
        client: httpx.Client | None = None,
    ):
        self.identity = identity
        self.client = client or httpx.Client(base_url=base_url, timeout=10.0)

    def _headers(self) -> dict:
        headers = {}
        if self.identity:
            headers["X-Client-Id"] = self.identity.client_id
            if self.identity.token:
                headers["Authorization"] = f"Bearer {self.identity.token}"
        return headers

    def _send(self, method: str, url: str, **kwargs) -> Any:
        response = self.client.request(method, url, headers=self._headers(), **kwargs)
        response.raise_for_status()
        return response.json()

    def list_orders(self, table_number: str | None = None, include_paid: bool = True) -> list[dict]:
        params = {"include_paid": include_paid}
        if table_number is not None:
            params["table"] = table_number
        return self._send("GET", "/orders", params=params)

    def get_order(self, order_id: int) -> dict:
        return self._send("GET", f"/orders/{order_id}")

    def create_order(self, table_number: str, items: list[dict], total_price: int) -> dict:
        return self._send("POST", "/orders", json={
            "table_number": table_number,
            "items": items,
            "total_price": total_price,
        })

    def update_item_status(self, order_id: int, item_id: int, status: str, actor: str | None = None) -> dict:
        return self._send("PUT", f"/orders/{order_id}/items/{item_id}/status", json={"status": status, "actor": actor})

    def update_status(self, order_id: int, status: str, actor: str | None = None) -> dict:
        return self._send("PUT", f"/orders/{order_id}/status", json={"status": status, "actor": actor})

    def mark_paid(self, order_id: int, actor: str | None = None) -> dict:
        return self._send("PUT", f"/orders/{order_id}/mark-paid", json={"actor": actor})

    def get_menu(self) -> list[dict]:
        return self._send("GET", "/menu")

    def close(self) -> None:
        self.client.close()


def synchronizer_for(
    api: OrderApiClient,
    role: ObserverRole,
    table_number: str | None = None,
) -> OrderSynchronizer:
    """Build a synchronizer whose fetch goes through the API client."""
    if role == ObserverRole.admin:
        return OrderSynchronizer(role, lambda: api.list_orders())
    return OrderSynchronizer(
        role,
        lambda: api.list_orders(table_number=table_number, include_paid=False),
        table_number=table_number,
    )
