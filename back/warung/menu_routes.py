"""
Menu API Routes

Catalog boundary used by the ordering page and the admin console. Orders
snapshot name, price and category from here at creation time.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from . import models
from .db import get_session


router = APIRouter()


@router.get("")
def list_menu(
    category: str | None = None,
    available_only: bool = False,
    session: Session = Depends(get_session),
) -> list[models.MenuItem]:
    statement = select(models.MenuItem)
    if category:
        statement = statement.where(models.MenuItem.category == category)
    if available_only:
        statement = statement.where(models.MenuItem.is_available == True)  # noqa: E712
    return list(session.exec(statement.order_by(models.MenuItem.category, models.MenuItem.name)).all())


@router.post("")
def create_menu_item(
    menu_item: models.MenuItemCreate,
    session: Session = Depends(get_session),
) -> models.MenuItem:
    if menu_item.price < 0:
        raise HTTPException(status_code=400, detail="Price cannot be negative")
    item = models.MenuItem.model_validate(menu_item)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@router.delete("/{menu_item_id}")
def delete_menu_item(
    menu_item_id: int,
    session: Session = Depends(get_session),
) -> dict:
    item = session.get(models.MenuItem, menu_item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")

    # Placed orders keep their snapshot; just drop the reference
    for order_item in session.exec(
        select(models.OrderItem).where(models.OrderItem.menu_item_id == menu_item_id)
    ).all():
        order_item.menu_item_id = None
        session.add(order_item)

    session.delete(item)
    session.commit()
    return {"status": "deleted", "id": menu_item_id}
