from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    pending = "pending"
    cooking = "cooking"
    served = "served"
    paid = "paid"


class OrderItemStatus(str, Enum):
    pending = "pending"
    cooking = "cooking"
    served = "served"


class MenuItem(SQLModel, table=True):
    """Catalog entry. Orders snapshot these values, they never reference them live."""
    id: int | None = Field(default=None, primary_key=True)
    name: str
    price: int  # Smallest currency unit (e.g. Rupiah)
    description: str | None = None
    category: str = Field(default="Makanan", index=True)  # "Paket", "Makanan", "Minuman", "Cemilan"
    is_available: bool = Field(default=True, index=True)


class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(index=True)
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    total_price: int
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: datetime | None = None
    # Bumped by every committed mutation; check-then-set token and event sequence
    version: int = Field(default=1)

    items: list["OrderItem"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"order_by": "OrderItem.id"},
    )


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int | None = Field(default=None, foreign_key="menuitem.id")
    name: str  # Snapshot of menu name at order time
    quantity: int
    price: int  # Snapshot of price at order time
    category: str  # Snapshot of category; picks the preparation track
    status: OrderItemStatus = Field(default=OrderItemStatus.pending, index=True)
    status_updated_at: datetime | None = None

    order: Order = Relationship(back_populates="items")


class OrderStatusLog(SQLModel, table=True):
    """Audit trail of every applied transition, including admin overrides."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    item_id: int | None = Field(default=None, foreign_key="orderitem.id")
    from_status: str
    to_status: str
    actor: str | None = None  # 'kitchen', 'admin', 'cashier', ...
    override: bool = Field(default=False)
    reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TableSession(SQLModel, table=True):
    """Lease giving one browser exclusive ordering rights over a table."""
    table_number: str = Field(primary_key=True)
    client_id: str = Field(index=True)
    acquired_at: datetime = Field(default_factory=utcnow)
    last_heartbeat_at: datetime = Field(default_factory=utcnow)
    # Bumped on every write; compare-and-set token
    generation: int = Field(default=1)


# Request/Response Models
class MenuItemCreate(SQLModel):
    name: str
    price: int
    description: str | None = None
    category: str = "Makanan"
    is_available: bool = True


class OrderItemCreate(SQLModel):
    menu_item_id: int
    quantity: int
    price: int | None = None  # Price the diner saw; must match the catalog


class OrderCreate(SQLModel):
    table_number: str
    items: list[OrderItemCreate]
    total_price: int


class OrderStatusUpdate(SQLModel):
    status: OrderStatus
    actor: str | None = None


class OrderItemStatusUpdate(SQLModel):
    status: OrderItemStatus
    actor: str | None = None


class OrderMarkPaid(SQLModel):
    actor: str | None = None


class OrderForceClose(SQLModel):
    reason: str
    actor: str | None = None


class TableSessionRequest(SQLModel):
    client_id: str
