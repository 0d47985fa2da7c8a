"""
Order Lifecycle

Business rules for placing orders and moving them through the kitchen:
- Item tracks: food pending -> cooking -> served, drinks pending -> served
- Order status derived from the items, except `paid`, which only an explicit
  close (or an audited override) sets
- Forward-only, one stage at a time; repeating an applied transition is a no-op
- Every mutation claims the order version before committing, then the new
  snapshot is broadcast
"""

import logging
from collections.abc import Callable, Iterable

from sqlmodel import Session

from . import models, store
from .broadcaster import EventBroadcaster
from .errors import (
    ActiveOrderExists,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .models import OrderItemStatus, OrderStatus, utcnow
from .table_sessions import TableSessionGuard

logger = logging.getLogger(__name__)

FOOD_TRACK = (OrderItemStatus.pending, OrderItemStatus.cooking, OrderItemStatus.served)
DRINK_TRACK = (OrderItemStatus.pending, OrderItemStatus.served)


def track_for(category: str | None, drink_categories: Iterable[str]) -> tuple[OrderItemStatus, ...]:
    drinks = {c.lower() for c in drink_categories}
    if category and category.strip().lower() in drinks:
        return DRINK_TRACK
    return FOOD_TRACK


def derive_order_status(items: list[models.OrderItem]) -> OrderStatus:
    """Order status from item statuses (single source of truth).

    Any pending item keeps the whole order pending.
    """
    if not items or any(item.status == OrderItemStatus.pending for item in items):
        return OrderStatus.pending
    if all(item.status == OrderItemStatus.served for item in items):
        return OrderStatus.served
    return OrderStatus.cooking


def check_item_transition(
    item: models.OrderItem,
    target: OrderItemStatus,
    drink_categories: Iterable[str],
) -> bool:
    """Validate moving an item to `target`.

    Returns False when the item is already there (duplicate request), True when
    the move is the next stage of its track. Anything else is rejected.
    """
    track = track_for(item.category, drink_categories)
    if target not in track:
        raise InvalidTransition(
            f"'{target.value}' is not a stage for {item.category} items ({' -> '.join(s.value for s in track)})"
        )
    if item.status not in track:
        # Category was reconfigured after the item reached a stage its new track lacks
        raise InvalidTransition(
            f"Item {item.id} is '{item.status.value}', which is not a stage for {item.category} items"
        )
    current = track.index(item.status)
    wanted = track.index(target)
    if wanted == current:
        return False
    if wanted != current + 1:
        raise InvalidTransition(
            f"Item {item.id} cannot go from '{item.status.value}' to '{target.value}'"
        )
    return True


class OrderLifecycle:
    def __init__(
        self,
        guard: TableSessionGuard,
        broadcaster: EventBroadcaster,
        drink_categories: Iterable[str] = ("Minuman",),
        attempts: int = 3,
    ):
        self.guard = guard
        self.broadcaster = broadcaster
        self.drink_categories = frozenset(c.lower() for c in drink_categories)
        self.attempts = max(1, attempts)

    # ============ CREATE ============

    def create_order(
        self,
        session: Session,
        table_number: str,
        client_id: str | None,
        items: list[models.OrderItemCreate],
        total_price: int,
    ) -> models.Order:
        lines = self._snapshot_items(session, items)
        computed = sum(line["price"] * line["quantity"] for line in lines)
        if computed != total_price:
            raise ValidationError(
                f"Total price {total_price} does not match the items (expected {computed})"
            )

        for _ in range(self.attempts):
            # Lease is revalidated here, whatever the push channel said earlier
            self.guard.require_holder(session, table_number, client_id)

            existing = store.active_order_for_table(session, table_number)
            if existing:
                raise ActiveOrderExists(table_number, existing.id)

            # Serializes concurrent submits from the same table
            if not self.guard.claim(session, table_number, client_id):
                session.rollback()
                continue

            order = models.Order(table_number=table_number, total_price=total_price)
            session.add(order)
            session.flush()
            for line in lines:
                session.add(models.OrderItem(order_id=order.id, **line))
            session.commit()
            session.refresh(order)

            logger.info(
                f"Order #{order.id} created for table {table_number}: "
                f"{len(lines)} item(s), total {total_price}"
            )
            self.broadcaster.order_created(store.serialize_order(order))
            return order

        raise ConcurrentModification(f"Table {table_number} changed while placing the order, try again")

    def _snapshot_items(self, session: Session, items: list[models.OrderItemCreate]) -> list[dict]:
        if not items:
            raise ValidationError("Order must have at least one item")

        lines = []
        for item in items:
            if item.quantity <= 0:
                raise ValidationError(f"Quantity must be positive (got {item.quantity})")

            # Name, price and category always come from the catalog
            menu_item = session.get(models.MenuItem, item.menu_item_id)
            if not menu_item:
                raise ValidationError(f"Menu item {item.menu_item_id} not found")
            if not menu_item.is_available:
                raise ValidationError(f"{menu_item.name} is not available")
            if item.price is not None and item.price != menu_item.price:
                raise ValidationError(
                    f"Price of {menu_item.name} changed ({item.price} -> {menu_item.price})"
                )
            lines.append({
                "menu_item_id": menu_item.id,
                "name": menu_item.name,
                "quantity": item.quantity,
                "price": menu_item.price,
                "category": menu_item.category,
            })
        return lines

    # ============ TRANSITIONS ============

    def advance_item_status(
        self,
        session: Session,
        order_id: int,
        item_id: int,
        target: OrderItemStatus,
        actor: str | None = None,
    ) -> models.Order:
        def apply(order: models.Order) -> bool:
            if order.status == OrderStatus.paid:
                raise InvalidTransition(f"Order {order.id} is already paid")
            item = store.get_item(order, item_id)
            if not check_item_transition(item, target, self.drink_categories):
                return False
            self._set_item_status(session, order, item, target, actor)
            self._recompute(session, order, actor)
            return True

        return self._mutate(session, order_id, apply)

    def advance_order_status(
        self,
        session: Session,
        order_id: int,
        target: OrderStatus,
        actor: str | None = None,
    ) -> models.Order:
        """Coarse-grained advance for screens that do not track single items."""
        if target == OrderStatus.paid:
            return self.close_order(session, order_id, actor)

        def apply(order: models.Order) -> bool:
            if order.status == OrderStatus.paid:
                raise InvalidTransition(f"Order {order.id} is already paid")
            sequence = self._order_track(order)
            if target not in sequence or order.status not in sequence:
                raise InvalidTransition(
                    f"Order {order.id} cannot go from '{order.status.value}' to '{target.value}'"
                )
            current = sequence.index(order.status)
            wanted = sequence.index(target)
            if wanted == current:
                return False
            if wanted != current + 1:
                raise InvalidTransition(
                    f"Order {order.id} cannot go from '{order.status.value}' to '{target.value}'"
                )

            for item in order.items:
                if target == OrderStatus.cooking:
                    # Every pending item takes its next stage: food starts cooking, drinks are served
                    if item.status == OrderItemStatus.pending:
                        track = track_for(item.category, self.drink_categories)
                        self._set_item_status(session, order, item, track[1], actor)
                elif item.status != OrderItemStatus.served:
                    self._set_item_status(session, order, item, OrderItemStatus.served, actor)
            self._recompute(session, order, actor)
            return True

        return self._mutate(session, order_id, apply)

    def close_order(self, session: Session, order_id: int, actor: str | None = None) -> models.Order:
        """Cashier closes a fully served order."""
        def apply(order: models.Order) -> bool:
            if order.status == OrderStatus.paid:
                return False
            if order.status != OrderStatus.served:
                raise InvalidTransition(
                    f"Order must be served before marking as paid. Current status: {order.status.value}"
                )
            self._mark_paid(session, order, actor)
            return True

        return self._mutate(session, order_id, apply)

    def force_close_order(
        self,
        session: Session,
        order_id: int,
        reason: str,
        actor: str | None = None,
    ) -> models.Order:
        """Administrative close from any status. Always audited with the reason."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to force-close an order")

        def apply(order: models.Order) -> bool:
            if order.status == OrderStatus.paid:
                return False
            self._mark_paid(session, order, actor, override=True, reason=reason.strip())
            return True

        return self._mutate(session, order_id, apply)

    # ============ INTERNALS ============

    def _order_track(self, order: models.Order) -> tuple[OrderStatus, ...]:
        has_food = any(
            track_for(item.category, self.drink_categories) == FOOD_TRACK for item in order.items
        )
        if has_food:
            return (OrderStatus.pending, OrderStatus.cooking, OrderStatus.served)
        return (OrderStatus.pending, OrderStatus.served)

    def _set_item_status(
        self,
        session: Session,
        order: models.Order,
        item: models.OrderItem,
        target: OrderItemStatus,
        actor: str | None,
    ) -> None:
        store.log_transition(session, order, item.status.value, target.value, item=item, actor=actor)
        item.status = target
        item.status_updated_at = utcnow()
        session.add(item)

    def _recompute(self, session: Session, order: models.Order, actor: str | None) -> None:
        derived = derive_order_status(order.items)
        if derived != order.status:
            store.log_transition(session, order, order.status.value, derived.value, actor=actor)
            order.status = derived
            session.add(order)

    def _mark_paid(
        self,
        session: Session,
        order: models.Order,
        actor: str | None,
        override: bool = False,
        reason: str | None = None,
    ) -> None:
        store.log_transition(
            session, order, order.status.value, OrderStatus.paid.value,
            actor=actor, override=override, reason=reason,
        )
        order.status = OrderStatus.paid
        order.paid_at = utcnow()
        session.add(order)
        if override:
            logger.warning(f"Order #{order.id} force-closed by {actor or 'unknown'}: {reason}")

    def _mutate(
        self,
        session: Session,
        order_id: int,
        apply: Callable[[models.Order], bool],
    ) -> models.Order:
        """Read, validate and apply, then claim the version and commit.

        A lost claim means someone committed in between: start over from the
        fresh state so validation sees it.
        """
        for attempt in range(self.attempts):
            order = store.get_order(session, order_id)
            try:
                changed = apply(order)
            except (InvalidTransition, NotFound, ValidationError):
                session.rollback()
                raise
            if not changed:
                session.rollback()
                return store.get_order(session, order_id)

            if not store.claim_order(session, order):
                logger.info(f"Order #{order_id}: concurrent update, retrying (attempt {attempt + 1})")
                session.rollback()
                continue

            session.commit()
            session.refresh(order)
            logger.info(f"Order #{order.id} now {order.status.value} (version {order.version})")
            self.broadcaster.order_updated(store.serialize_order(order))
            return order

        raise ConcurrentModification(f"Order {order_id} is being updated by someone else, try again")
