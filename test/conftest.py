import os
from datetime import datetime, timedelta, timezone

# Must be set before warung.settings is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENT_BACKEND", "local")
os.environ.setdefault("STAFF_API_KEY", "test-staff-key")

import json

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from warung import main
from warung.broadcaster import EventBroadcaster, LocalPublisher
from warung.db import build_engine, create_db_and_tables, get_session
from warung.lifecycle import OrderLifecycle
from warung.models import MenuItem
from warung.security import create_table_token
from warung.settings import settings
from warung.table_sessions import TableSessionGuard

LIVENESS_WINDOW = timedelta(seconds=15)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class EventLog:
    """Collects everything published through a LocalPublisher."""

    def __init__(self, publisher: LocalPublisher):
        self.messages: list[tuple[str, dict]] = []
        publisher.subscribe(self._record)

    def _record(self, channel: str, message: str) -> None:
        self.messages.append((channel, json.loads(message)))

    def on(self, channel: str) -> list[dict]:
        return [message for c, message in self.messages if c == channel]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return LocalPublisher()


@pytest.fixture
def events(publisher):
    return EventLog(publisher)


@pytest.fixture
def guard(clock):
    return TableSessionGuard(liveness_window=LIVENESS_WINDOW, clock=clock)


@pytest.fixture
def lifecycle(guard, publisher):
    return OrderLifecycle(
        guard=guard,
        broadcaster=EventBroadcaster(publisher),
        drink_categories=["Minuman"],
    )


@pytest.fixture
def client(engine, publisher, clock):
    def override_get_session():
        with Session(engine) as session:
            yield session

    main.init_state(main.app, publisher, clock=clock)
    main.app.dependency_overrides[get_session] = override_get_session
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def table_token():
    return create_table_token("5")


CATALOG = [
    ("Nasi Goreng", 10000, "Makanan"),
    ("Soto Ayam", 15000, "Makanan"),
    ("Es Teh", 5000, "Minuman"),
    ("Es Jeruk", 7000, "Minuman"),
]


@pytest.fixture
def menu(engine):
    """Seeded catalog: name -> menu item id."""
    with Session(engine) as session:
        items = [MenuItem(name=name, price=price, category=category) for name, price, category in CATALOG]
        session.add_all(items)
        session.commit()
        return {item.name: item.id for item in items}


@pytest.fixture
def staff_headers():
    return {"X-Staff-Key": settings.staff_api_key}
