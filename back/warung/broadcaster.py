"""
Event Broadcaster

Publishes order snapshots for real-time observers.
- Table channel: orders:table:{table_number} (diners at that table)
- Kitchen channel: orders:kitchen (every order)
- Admin channel: orders:admin (every order)

Every event is a full order snapshot, never a diff, so observers merge by
overwriting. Snapshots carry the order `version`; fan-out points drop a
snapshot older than one they already delivered for the same order, so one
order's stream is never seen out of commit order.
"""

import json
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

EVENT_NEW_ORDER = "order:new"
EVENT_ORDER_UPDATED = "order:update"

CHANNEL_PREFIX = "orders"
KITCHEN_CHANNEL = f"{CHANNEL_PREFIX}:kitchen"
ADMIN_CHANNEL = f"{CHANNEL_PREFIX}:admin"
CHANNEL_PATTERNS = (f"{CHANNEL_PREFIX}:table:*", KITCHEN_CHANNEL, ADMIN_CHANNEL)


def table_channel(table_number: str) -> str:
    return f"{CHANNEL_PREFIX}:table:{table_number}"


def channels_for(table_number: str) -> tuple[str, ...]:
    return (table_channel(table_number), KITCHEN_CHANNEL, ADMIN_CHANNEL)


def encode_event(kind: str, snapshot: dict) -> str:
    return json.dumps({"event": kind, "data": snapshot})


class VersionGate:
    """Remembers the newest version delivered per key and rejects older ones.

    Equal versions pass: redelivery is allowed, merges are idempotent.
    """

    def __init__(self, max_entries: int = 10_000):
        self.max_entries = max_entries
        self._versions: OrderedDict[Hashable, int] = OrderedDict()

    def admit(self, key: Hashable, version: int | None) -> bool:
        if version is None:
            return True
        last = self._versions.get(key)
        if last is not None and version < last:
            return False
        self._versions[key] = version
        self._versions.move_to_end(key)
        while len(self._versions) > self.max_entries:
            self._versions.popitem(last=False)
        return True


class Publisher(Protocol):
    def publish(self, channel: str, message: str) -> None: ...

    def close(self) -> None: ...


class RedisPublisher:
    """Publishes to Redis; the WebSocket bridge subscribes and relays to sockets."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis | None:
        if self._client is None:
            try:
                client = redis.from_url(self.redis_url)
                client.ping()
                self._client = client
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
                return None
        return self._client

    def publish(self, channel: str, message: str) -> None:
        client = self._get_client()
        if client is None:
            return
        try:
            client.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Failed to publish to {channel}: {e}")
            # Reconnect on next publish
            self._client = None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class LocalPublisher:
    """In-process fan-out for single-process deployments and tests."""

    def __init__(self):
        self._subscribers: list[Callable[[str, str], None]] = []
        self._gate = VersionGate()
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[str, str], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, channel: str, message: str) -> None:
        data = json.loads(message).get("data") or {}
        # Callbacks are in-memory only, so delivering under the lock keeps
        # each order's stream in commit order across request threads
        with self._lock:
            if not self._gate.admit((channel, data.get("id")), data.get("version")):
                logger.debug(f"Dropped stale snapshot of order {data.get('id')} on {channel}")
                return
            for callback in list(self._subscribers):
                try:
                    callback(channel, message)
                except Exception as e:
                    logger.error(f"Local subscriber failed on {channel}: {e}", exc_info=True)

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class EventBroadcaster:
    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def order_created(self, snapshot: dict) -> None:
        self._broadcast(EVENT_NEW_ORDER, snapshot)

    def order_updated(self, snapshot: dict) -> None:
        self._broadcast(EVENT_ORDER_UPDATED, snapshot)

    def _broadcast(self, kind: str, snapshot: dict) -> None:
        message = encode_event(kind, snapshot)
        for channel in channels_for(snapshot["table_number"]):
            # Best effort: observers heal missed events by refetching on reconnect
            try:
                self.publisher.publish(channel, message)
            except Exception as e:
                logger.error(f"Failed to broadcast {kind} for order {snapshot.get('id')}: {e}", exc_info=True)

    def close(self) -> None:
        self.publisher.close()


def build_publisher(event_backend: str, redis_url: str) -> Publisher:
    if event_backend == "local":
        return LocalPublisher()
    if event_backend != "redis":
        logger.warning(f"Unknown EVENT_BACKEND {event_backend!r}, using redis")
    return RedisPublisher(redis_url)
