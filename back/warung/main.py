import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Annotated
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import models, security, store
from .broadcaster import EventBroadcaster, Publisher, build_publisher
from .db import check_db_connection, create_db_and_tables, get_session
from .errors import OrderError, SessionRequired
from .lifecycle import OrderLifecycle
from .menu_routes import router as menu_router
from .models import utcnow
from .settings import settings
from .table_sessions import TableSessionGuard

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def init_state(
    app: FastAPI,
    publisher: Publisher,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Wire the guard, broadcaster and lifecycle once per process."""
    guard = TableSessionGuard(
        liveness_window=timedelta(seconds=settings.liveness_window_seconds),
        clock=clock,
    )
    broadcaster = EventBroadcaster(publisher)
    app.state.guard = guard
    app.state.broadcaster = broadcaster
    app.state.lifecycle = OrderLifecycle(
        guard=guard,
        broadcaster=broadcaster,
        drink_categories=settings.drink_category_set,
        attempts=settings.transition_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    create_db_and_tables()
    init_state(app, build_publisher(settings.event_backend, settings.redis_url))
    yield
    app.state.broadcaster.close()


app = FastAPI(
    title="Warung Order API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(menu_router, prefix="/menu", tags=["Menu"])


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def get_guard(request: Request) -> TableSessionGuard:
    return request.app.state.guard


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")


# ============ TABLES ============

@app.post("/tables/{table_number}/token", dependencies=[Depends(security.require_staff)])
def issue_table_token(table_number: str) -> dict:
    """Issue the access token printed in a table's QR code. Staff only."""
    token = security.create_table_token(table_number)
    query = urlencode({"table": table_number, "token": token})
    return {
        "table_number": table_number,
        "token": token,
        "order_url": f"{settings.order_url}?{query}",
    }


@app.get("/tables/{table_number}/session")
def get_table_session(
    table_number: str,
    guard: Annotated[TableSessionGuard, Depends(get_guard)],
    session: Session = Depends(get_session),
) -> dict:
    lease = guard.holder(session, table_number)
    if not lease:
        return {"table_number": table_number, "held": False}
    return {
        "table_number": table_number,
        "held": True,
        "client_id": lease.client_id,
        "acquired_at": store.as_utc(lease.acquired_at).isoformat(),
        "last_heartbeat_at": store.as_utc(lease.last_heartbeat_at).isoformat(),
    }


# ============ INTERNAL (for ws-bridge) ============

@app.post("/internal/table-sessions/{table_number}/acquire")
def acquire_table_session(
    table_number: str,
    request_data: models.TableSessionRequest,
    guard: Annotated[TableSessionGuard, Depends(get_guard)],
    session: Session = Depends(get_session),
) -> dict:
    lease = guard.try_acquire(session, table_number, request_data.client_id)
    return {"table_number": lease.table_number, "client_id": lease.client_id, "granted": True}


@app.post("/internal/table-sessions/{table_number}/heartbeat")
def table_session_heartbeat(
    table_number: str,
    request_data: models.TableSessionRequest,
    guard: Annotated[TableSessionGuard, Depends(get_guard)],
    session: Session = Depends(get_session),
) -> dict:
    alive = guard.heartbeat(session, table_number, request_data.client_id)
    return {"table_number": table_number, "alive": alive}


# ============ ORDERS ============

@app.get("/orders")
def list_orders(
    table: str | None = Query(None, description="Only orders of this table"),
    include_paid: bool = Query(True, description="Include closed orders"),
    session: Session = Depends(get_session),
) -> list[dict]:
    return [
        store.serialize_order(order)
        for order in store.list_orders(session, table_number=table, include_paid=include_paid)
    ]


@app.get("/orders/{order_id}")
def get_order(order_id: int, session: Session = Depends(get_session)) -> dict:
    return store.serialize_order(store.get_order(session, order_id))


@app.get("/orders/{order_id}/history")
def get_order_history(order_id: int, session: Session = Depends(get_session)) -> list[dict]:
    return [
        {
            "item_id": entry.item_id,
            "from_status": entry.from_status,
            "to_status": entry.to_status,
            "actor": entry.actor,
            "override": entry.override,
            "reason": entry.reason,
            "created_at": store.as_utc(entry.created_at).isoformat(),
        }
        for entry in store.order_history(session, order_id)
    ]


@app.post("/orders", status_code=201)
def create_order(
    order_data: models.OrderCreate,
    token_table: Annotated[str, Depends(security.get_token_table)],
    client_id: Annotated[str | None, Depends(security.get_client_id)],
    lifecycle: Annotated[OrderLifecycle, Depends(get_lifecycle)],
    session: Session = Depends(get_session),
) -> dict:
    """Diner places an order for the table their QR token belongs to."""
    if token_table != order_data.table_number:
        raise SessionRequired(f"This QR code is not valid for table {order_data.table_number}")

    order = lifecycle.create_order(
        session,
        table_number=order_data.table_number,
        client_id=client_id,
        items=order_data.items,
        total_price=order_data.total_price,
    )
    return store.serialize_order(order)


@app.put("/orders/{order_id}/items/{item_id}/status")
def update_order_item_status(
    order_id: int,
    item_id: int,
    status_update: models.OrderItemStatusUpdate,
    lifecycle: Annotated[OrderLifecycle, Depends(get_lifecycle)],
    session: Session = Depends(get_session),
) -> dict:
    """Kitchen advances a single item."""
    order = lifecycle.advance_item_status(
        session, order_id, item_id, status_update.status, actor=status_update.actor
    )
    return store.serialize_order(order)


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    lifecycle: Annotated[OrderLifecycle, Depends(get_lifecycle)],
    session: Session = Depends(get_session),
) -> dict:
    """Coarse advance of the whole order (pending -> cooking -> served -> paid)."""
    order = lifecycle.advance_order_status(
        session, order_id, status_update.status, actor=status_update.actor
    )
    return store.serialize_order(order)


@app.put("/orders/{order_id}/mark-paid")
def mark_order_paid(
    order_id: int,
    payment_data: models.OrderMarkPaid,
    lifecycle: Annotated[OrderLifecycle, Depends(get_lifecycle)],
    session: Session = Depends(get_session),
) -> dict:
    """Cashier closes a served order."""
    order = lifecycle.close_order(session, order_id, actor=payment_data.actor)
    return store.serialize_order(order)


@app.put("/orders/{order_id}/force-close")
def force_close_order(
    order_id: int,
    close_data: models.OrderForceClose,
    lifecycle: Annotated[OrderLifecycle, Depends(get_lifecycle)],
    session: Session = Depends(get_session),
) -> dict:
    """Admin override: close an order whatever its kitchen progress. Audited."""
    order = lifecycle.force_close_order(
        session, order_id, reason=close_data.reason, actor=close_data.actor
    )
    return store.serialize_order(order)
