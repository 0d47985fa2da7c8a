"""
Push Client

Owns one observer's WebSocket to the bridge and keeps its synchronizer live:
- on every (re)connect: claim the table and join its channel (table role),
  then refetch so events missed while offline are healed
- frames are dispatched to the synchronizer; session replies update
  `access_granted` / `denial`
- table role: a heartbeat every `heartbeat_interval` seconds; a heartbeat
  reported dead triggers a new `tryAccessTable`
- a dropped socket is reopened with exponential backoff until `stop()`

Run `start()` for background threads, or drive `open()` / `receive()` yourself.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol

from websockets.sync.client import connect as websocket_connect

from .broadcaster import EVENT_NEW_ORDER, EVENT_ORDER_UPDATED
from .sync import ClientIdentity, ObserverRole, OrderSynchronizer

logger = logging.getLogger(__name__)

ORDER_EVENTS = (EVENT_NEW_ORDER, EVENT_ORDER_UPDATED)


class TextSocket(Protocol):
    def send_text(self, data: str) -> None: ...

    def receive_text(self) -> str: ...

    def close(self) -> None: ...


class _WebSocketsText:
    """`websockets` client connection seen through the TextSocket interface."""

    def __init__(self, connection):
        self.connection = connection

    def send_text(self, data: str) -> None:
        self.connection.send(data)

    def receive_text(self) -> str:
        return self.connection.recv()

    def close(self) -> None:
        self.connection.close()


@contextmanager
def open_websocket(url: str) -> Iterator[TextSocket]:
    with websocket_connect(url, open_timeout=10) as connection:
        yield _WebSocketsText(connection)


class PushConnection:
    def __init__(
        self,
        synchronizer: OrderSynchronizer,
        connect: Callable[[], AbstractContextManager[TextSocket]],
        identity: ClientIdentity | None = None,
        heartbeat_interval: float = 5.0,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        wait: Callable[[float], object] | None = None,
    ):
        if synchronizer.role == ObserverRole.table and identity is None:
            raise ValueError("A table connection needs a client identity")
        self.synchronizer = synchronizer
        self.connect = connect
        self.identity = identity
        self.heartbeat_interval = heartbeat_interval
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._stop = threading.Event()
        self.wait = wait or self._stop.wait
        self._socket: TextSocket | None = None
        self._threads: list[threading.Thread] = []
        self.access_granted: bool | None = None
        self.denial: str | None = None
        self.connections = 0

    @property
    def is_table(self) -> bool:
        return self.synchronizer.role == ObserverRole.table

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ============ ONE CONNECTION ============

    def open(self, ws: TextSocket) -> None:
        """Handshake on a fresh socket, then refetch authoritative state."""
        self._socket = ws
        self.connections += 1
        self.access_granted = None
        if self.is_table:
            self.request_access(ws)
            self._send(ws, "joinTable", {"tableId": self.synchronizer.table_number})
        # Join before fetching: anything committed after the fetch arrives on the socket
        self.synchronizer.resync()

    def receive(self, ws: TextSocket) -> str | None:
        """Read and dispatch one frame. Returns its event name."""
        raw = ws.receive_text()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed frame from the bridge")
            return None
        event = message.get("event")
        data = message.get("data") or {}

        if event in ORDER_EVENTS:
            self.synchronizer.handle_event(message)
        elif event == "accessGranted":
            self.access_granted = True
            self.denial = None
            logger.info(f"Table {self.synchronizer.table_number}: access granted")
        elif event == "accessDenied":
            self.access_granted = False
            self.denial = data.get("message")
            logger.warning(f"Table {self.synchronizer.table_number}: access denied: {self.denial}")
        elif event == "heartbeat":
            if not data.get("alive") and self.access_granted:
                logger.warning(f"Table {self.synchronizer.table_number}: lease lost, asking again")
                self.access_granted = None
                self.request_access(ws)
        elif event == "error":
            logger.warning(f"Bridge error: {data.get('message')}")
        else:
            logger.debug(f"Ignoring event {event}")
        return event

    def request_access(self, ws: TextSocket) -> None:
        self._send(ws, "tryAccessTable", {
            "tableId": self.synchronizer.table_number,
            "clientId": self.identity.client_id,
        })

    def heartbeat(self, ws: TextSocket) -> None:
        self._send(ws, "heartbeat", {
            "tableId": self.synchronizer.table_number,
            "clientId": self.identity.client_id,
        })

    def leave(self, ws: TextSocket) -> None:
        if self.is_table:
            self._send(ws, "leaveTable", {"tableId": self.synchronizer.table_number})

    def _send(self, ws: TextSocket, event: str, data: dict) -> None:
        ws.send_text(json.dumps({"event": event, "data": data}))

    # ============ LIFECYCLE ============

    def run_once(self) -> None:
        """Hold one connection until the socket drops or `stop()` is called."""
        with self.connect() as ws:
            self.open(ws)
            try:
                while not self.stopped:
                    self.receive(ws)
            finally:
                self._socket = None

    def run(self) -> None:
        """Reconnect forever with exponential backoff."""
        delay = self.retry_delay
        while not self.stopped:
            opened = self.connections
            try:
                self.run_once()
            except Exception as e:
                if self.stopped:
                    break
                logger.warning(f"Push connection lost: {e}")
            if self.stopped:
                break
            if self.connections > opened:
                # The last attempt got through the handshake; start over from the shortest delay
                delay = self.retry_delay
            logger.info(f"Reconnecting in {delay:.1f}s")
            self.wait(delay)
            delay = min(delay * 2, self.max_retry_delay)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            ws = self._socket
            if ws is None or not self.access_granted:
                continue
            try:
                self.heartbeat(ws)
            except Exception as e:
                logger.warning(f"Heartbeat not sent: {e}")

    def start(self) -> None:
        self._stop.clear()
        self._threads = [threading.Thread(target=self.run, name="push-connection", daemon=True)]
        if self.is_table:
            self._threads.append(
                threading.Thread(target=self._heartbeat_loop, name="push-heartbeat", daemon=True)
            )
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        ws = self._socket
        if ws is not None:
            try:
                self.leave(ws)
                ws.close()
            except Exception as e:
                logger.debug(f"Closing push socket: {e}")
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


def push_connection_for(
    synchronizer: OrderSynchronizer,
    ws_url: str,
    identity: ClientIdentity | None = None,
    heartbeat_interval: float = 5.0,
) -> PushConnection:
    """Connection to the bridge at `ws_url` (e.g. ws://localhost:8021)."""
    base = ws_url.rstrip("/")
    if synchronizer.role == ObserverRole.table:
        if identity is None or not identity.token:
            raise ValueError("A table connection needs the table's access token")
        url = f"{base}/ws/table/{identity.token}"
    else:
        url = f"{base}/ws/{synchronizer.role.value}"
    return PushConnection(
        synchronizer,
        connect=lambda: open_websocket(url),
        identity=identity,
        heartbeat_interval=heartbeat_interval,
    )
