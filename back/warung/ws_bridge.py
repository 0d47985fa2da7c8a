"""
WebSocket Bridge

Subscribes to Redis pub/sub channels and relays order events to connected
WebSocket clients, and carries the table-session protocol for diners.
- Table channel: orders:table:{table_number} (diners who joined that table)
- Kitchen / admin channels: orders:kitchen, orders:admin (every order)

Diner sockets send JSON messages `{"event": ..., "data": {...}}`:
- tryAccessTable {tableId, clientId} -> accessGranted | accessDenied {message}
- heartbeat {tableId, clientId} -> heartbeat {alive}
- joinTable {tableId} / leaveTable {tableId}

Run with: uvicorn warung.ws_bridge:app --port 8021
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .broadcaster import ADMIN_CHANNEL, CHANNEL_PATTERNS, KITCHEN_CHANNEL, CHANNEL_PREFIX, VersionGate
from .security import decode_table_token
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STAFF_ROLES = ("kitchen", "admin")
STAFF_CHANNELS = {KITCHEN_CHANNEL: "kitchen", ADMIN_CHANNEL: "admin"}

# Seconds to wait before reconnecting to Redis
REDIS_RETRY_DELAY = 5


class ConnectionHub:
    """Registry of open sockets and their channel memberships."""

    def __init__(self):
        self.table_connections: dict[str, set[WebSocket]] = {}
        self.staff_connections: dict[str, set[WebSocket]] = {role: set() for role in STAFF_ROLES}
        self._gate = VersionGate()

    def join_table(self, table_number: str, websocket: WebSocket) -> None:
        self.table_connections.setdefault(table_number, set()).add(websocket)

    def leave_table(self, table_number: str, websocket: WebSocket) -> None:
        if table_number in self.table_connections:
            self.table_connections[table_number].discard(websocket)
            if not self.table_connections[table_number]:
                del self.table_connections[table_number]

    def join_staff(self, role: str, websocket: WebSocket) -> None:
        self.staff_connections[role].add(websocket)

    def leave_all(self, websocket: WebSocket) -> None:
        for table_number in list(self.table_connections):
            self.leave_table(table_number, websocket)
        for connections in self.staff_connections.values():
            connections.discard(websocket)

    def counts(self) -> dict:
        table_count = sum(len(c) for c in self.table_connections.values())
        staff_count = {role: len(c) for role, c in self.staff_connections.items()}
        return {
            "table_connections": table_count,
            **{f"{role}_connections": count for role, count in staff_count.items()},
            "total_connections": table_count + sum(staff_count.values()),
        }

    def _targets(self, channel: str) -> set[WebSocket]:
        if channel in STAFF_CHANNELS:
            return self.staff_connections[STAFF_CHANNELS[channel]]
        parts = channel.split(":", 2)
        if len(parts) == 3 and parts[0] == CHANNEL_PREFIX and parts[1] == "table":
            return self.table_connections.get(parts[2], set())
        logger.warning(f"Message on unknown channel {channel}")
        return set()

    async def deliver(self, channel: str, message: str) -> int:
        """Send one event to every socket on a channel. Returns how many got it."""
        try:
            data = json.loads(message).get("data") or {}
        except (json.JSONDecodeError, AttributeError):
            logger.warning(f"Dropping malformed message on {channel}")
            return 0

        if not self._gate.admit((channel, data.get("id")), data.get("version")):
            logger.info(f"Dropping stale snapshot of order {data.get('id')} on {channel}")
            return 0

        delivered = 0
        dead_connections = set()
        for ws in list(self._targets(channel)):
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception:
                dead_connections.add(ws)
        for ws in dead_connections:
            self.leave_all(ws)
        if dead_connections:
            logger.info(f"Pruned {len(dead_connections)} dead connection(s) on {channel}")
        return delivered


class BackendClient:
    """Calls the API's internal table-session endpoints."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=5.0)

    async def try_acquire(self, table_number: str, client_id: str) -> tuple[bool, str | None]:
        try:
            response = await self.client.post(
                f"/internal/table-sessions/{table_number}/acquire",
                json={"client_id": client_id},
            )
        except httpx.HTTPError as e:
            logger.error(f"Error acquiring table {table_number} for {client_id}: {e}", exc_info=True)
            return False, "Server is not reachable, please try again"
        if response.status_code == 200:
            return True, None
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        return False, detail or "Table is not available"

    async def heartbeat(self, table_number: str, client_id: str) -> bool:
        try:
            response = await self.client.post(
                f"/internal/table-sessions/{table_number}/heartbeat",
                json={"client_id": client_id},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Heartbeat for table {table_number} failed: {e}")
            return False
        return response.status_code == 200 and bool(response.json().get("alive"))

    async def aclose(self) -> None:
        await self.client.aclose()


async def redis_listener(hub: ConnectionHub, redis_url: str) -> None:
    """Subscribe to Redis and relay to WebSocket clients, reconnecting forever."""
    while True:
        r = None
        pubsub = None
        try:
            r = redis.from_url(redis_url)
            pubsub = r.pubsub()
            await pubsub.psubscribe(*CHANNEL_PATTERNS)
            logger.info(f"Listening on {', '.join(CHANNEL_PATTERNS)}")

            async for message in pubsub.listen():
                if message["type"] == "pmessage":
                    channel = message["channel"].decode()
                    data = message["data"].decode()
                    await hub.deliver(channel, data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Redis connection error: {e}", exc_info=True)
        finally:
            await close_redis(pubsub, r)
        await asyncio.sleep(REDIS_RETRY_DELAY)


async def close_redis(*resources) -> None:
    for resource in resources:
        if resource is None:
            continue
        try:
            await resource.aclose()
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")


async def send_event(websocket: WebSocket, event: str, data: dict) -> None:
    await websocket.send_text(json.dumps({"event": event, "data": data}))


async def handle_table_message(
    hub: ConnectionHub,
    backend: BackendClient,
    websocket: WebSocket,
    table_number: str,
    raw: str,
) -> None:
    try:
        message = json.loads(raw)
        event = message["event"]
        data = message.get("data") or {}
    except (json.JSONDecodeError, KeyError, TypeError):
        await send_event(websocket, "error", {"message": "Malformed message"})
        return

    requested_table = str(data.get("tableId", table_number))
    if requested_table != table_number:
        await send_event(websocket, "accessDenied", {
            "tableId": requested_table,
            "message": "This QR code is not valid for that table",
        })
        return

    if event == "tryAccessTable":
        client_id = data.get("clientId")
        if not client_id:
            await send_event(websocket, "accessDenied", {"tableId": table_number, "message": "Missing client id"})
            return
        granted, reason = await backend.try_acquire(table_number, client_id)
        if granted:
            await send_event(websocket, "accessGranted", {"tableId": table_number})
        else:
            logger.info(f"Access to table {table_number} denied for {client_id}: {reason}")
            await send_event(websocket, "accessDenied", {"tableId": table_number, "message": reason})

    elif event == "heartbeat":
        alive = await backend.heartbeat(table_number, data.get("clientId", ""))
        await send_event(websocket, "heartbeat", {"tableId": table_number, "alive": alive})

    elif event == "joinTable":
        hub.join_table(table_number, websocket)

    elif event == "leaveTable":
        hub.leave_table(table_number, websocket)

    else:
        await send_event(websocket, "error", {"message": f"Unknown event: {event}"})


def create_bridge_app(backend: BackendClient | None = None, listen: bool = True) -> FastAPI:
    hub = ConnectionHub()
    backend = backend or BackendClient(settings.api_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(redis_listener(hub, settings.redis_url)) if listen else None
        yield
        if task:
            task.cancel()
        await backend.aclose()

    bridge = FastAPI(title="WS Bridge", lifespan=lifespan)
    bridge.state.hub = hub
    bridge.state.backend = backend

    @bridge.get("/health")
    def health():
        return {"status": "ok", **hub.counts()}

    @bridge.websocket("/ws/table/{table_token}")
    async def websocket_table_endpoint(websocket: WebSocket, table_token: str):
        """Diner socket - the table token decides which table it may join."""
        client_host = websocket.client.host if websocket.client else "unknown"
        await websocket.accept()

        table_number = decode_table_token(table_token)
        if table_number is None:
            logger.warning(f"Invalid table token from {client_host}")
            await websocket.close(code=1008, reason="Invalid table token")
            return

        logger.info(f"Diner connected to table {table_number} from {client_host}")
        try:
            while True:
                raw = await websocket.receive_text()
                await handle_table_message(hub, backend, websocket, table_number, raw)
        except WebSocketDisconnect:
            pass
        finally:
            hub.leave_all(websocket)

    @bridge.websocket("/ws/{role}")
    async def websocket_staff_endpoint(websocket: WebSocket, role: str):
        """Kitchen and admin sockets receive every order event."""
        await websocket.accept()
        if role not in STAFF_ROLES:
            await websocket.close(code=1008, reason=f"Unknown role: {role}")
            return

        hub.join_staff(role, websocket)
        logger.info(f"{role} display connected ({len(hub.staff_connections[role])} open)")
        try:
            while True:
                # Keep connection alive; staff screens only listen
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.leave_all(websocket)

    return bridge


app = create_bridge_app()
