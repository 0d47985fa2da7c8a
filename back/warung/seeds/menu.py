"""
Seed a demo menu so a fresh install has something to order.

Usage:
    python -m warung.seeds.menu
"""

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from warung.db import create_db_and_tables, engine
from warung.models import MenuItem


# Category -> (name, price in Rupiah)
DEMO_MENU = {
    "Paket": [
        ("Paket Nasi Ayam Goreng", 25000),
        ("Paket Nasi Lele", 22000),
    ],
    "Makanan": [
        ("Nasi Goreng Kampung", 18000),
        ("Mie Goreng Jawa", 17000),
        ("Soto Ayam", 15000),
    ],
    "Minuman": [
        ("Es Teh Manis", 5000),
        ("Es Jeruk", 7000),
        ("Kopi Tubruk", 6000),
    ],
    "Cemilan": [
        ("Tempe Mendoan", 8000),
        ("Pisang Goreng", 10000),
    ],
}


def seed_menu(bind: Engine | None = None) -> int:
    """Insert demo menu items that are not there yet. Returns how many were created."""
    bind = bind or engine
    create_db_and_tables(bind)
    created = 0
    with Session(bind) as session:
        for category, items in DEMO_MENU.items():
            for name, price in items:
                existing = session.exec(
                    select(MenuItem).where(MenuItem.name == name, MenuItem.category == category)
                ).first()
                if existing:
                    continue
                session.add(MenuItem(name=name, price=price, category=category))
                created += 1
                print(f"Created menu item: {category} > {name}")
        session.commit()
    return created


if __name__ == "__main__":
    print("Seeding demo menu...")
    count = seed_menu()
    print(f"\nComplete! Menu items created: {count}")
