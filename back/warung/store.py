"""
Order Store

Reads and writes for orders and their items. The database is the single
source of truth; every mutation claims the order through `claim_order`
before writing, so two requests racing on the same order cannot both commit
against the same version.
"""

from datetime import datetime, timezone

from sqlalchemy import update
from sqlmodel import Session, select

from . import models
from .errors import NotFound


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_order(session: Session, order_id: int) -> models.Order:
    order = session.get(models.Order, order_id)
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return order


def get_item(order: models.Order, item_id: int) -> models.OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFound(f"Item {item_id} not found in order {order.id}")


def list_orders(
    session: Session,
    table_number: str | None = None,
    include_paid: bool = True,
) -> list[models.Order]:
    statement = select(models.Order)
    if table_number is not None:
        statement = statement.where(models.Order.table_number == table_number)
    if not include_paid:
        statement = statement.where(models.Order.status != models.OrderStatus.paid)
    statement = statement.order_by(models.Order.created_at.desc(), models.Order.id.desc())
    return list(session.exec(statement).all())


def active_order_for_table(session: Session, table_number: str) -> models.Order | None:
    return session.exec(
        select(models.Order).where(
            models.Order.table_number == table_number,
            models.Order.status != models.OrderStatus.paid
        ).order_by(models.Order.created_at.desc())
    ).first()


def claim_order(session: Session, order: models.Order) -> bool:
    """Bump the order version if nobody committed since we read it.

    Runs on the session's own connection, so the claim commits or rolls back
    together with the rest of the mutation.
    """
    seen = order.version
    result = session.connection().execute(
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.version == seen)
        .values(version=seen + 1)
    )
    if result.rowcount != 1:
        return False
    order.version = seen + 1
    return True


def log_transition(
    session: Session,
    order: models.Order,
    from_status: str,
    to_status: str,
    item: models.OrderItem | None = None,
    actor: str | None = None,
    override: bool = False,
    reason: str | None = None,
) -> None:
    session.add(models.OrderStatusLog(
        order_id=order.id,
        item_id=item.id if item else None,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        override=override,
        reason=reason,
    ))


def order_history(session: Session, order_id: int) -> list[models.OrderStatusLog]:
    get_order(session, order_id)
    return list(session.exec(
        select(models.OrderStatusLog)
        .where(models.OrderStatusLog.order_id == order_id)
        .order_by(models.OrderStatusLog.id)
    ).all())


def serialize_order(order: models.Order) -> dict:
    """Full, self-contained snapshot used by API responses and events alike."""
    created_at = as_utc(order.created_at)
    paid_at = as_utc(order.paid_at)
    return {
        "id": order.id,
        "table_number": order.table_number,
        "status": order.status.value,
        "total_price": order.total_price,
        "created_at": created_at.isoformat() if created_at else None,
        "paid_at": paid_at.isoformat() if paid_at else None,
        "version": order.version,
        "items": [
            {
                "id": item.id,
                "menu_item_id": item.menu_item_id,
                "name": item.name,
                "quantity": item.quantity,
                "price": item.price,
                "category": item.category,
                "status": item.status.value,
            }
            for item in order.items
        ],
    }
