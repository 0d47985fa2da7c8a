import json

import httpx
import pytest

from warung.broadcaster import (
    ADMIN_CHANNEL,
    EVENT_NEW_ORDER,
    EVENT_ORDER_UPDATED,
    KITCHEN_CHANNEL,
    EventBroadcaster,
    encode_event,
    table_channel,
)
from warung.models import OrderItemCreate, OrderItemStatus
from warung.sync import (
    ClientIdentity,
    ObserverRole,
    OrderApiClient,
    OrderSynchronizer,
    synchronizer_for,
)


def order(order_id, table="5", status="pending", version=1, created_at=None, items=None):
    return {
        "id": order_id,
        "table_number": table,
        "status": status,
        "total_price": 10000,
        "created_at": created_at or f"2026-01-01T12:00:0{order_id}+00:00",
        "paid_at": None,
        "version": version,
        "items": items if items is not None else [
            {"id": order_id * 10, "name": "Nasi Goreng", "quantity": 1, "price": 10000,
             "category": "Makanan", "status": "pending", "menu_item_id": None},
        ],
    }


def event(kind, snapshot):
    return {"event": kind, "data": snapshot}


def static_fetch(orders):
    return lambda: [dict(o) for o in orders]


def test_table_role_needs_a_table():
    with pytest.raises(ValueError):
        OrderSynchronizer(ObserverRole.table, static_fetch([]))


def test_duplicate_new_order_is_merged_once():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([]))
    sync.connect()

    sync.handle_event(event(EVENT_NEW_ORDER, order(1)))
    sync.handle_event(event(EVENT_NEW_ORDER, order(1)))

    assert [o["id"] for o in sync.orders()] == [1]


def test_new_order_already_fetched():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(1)]))
    sync.connect()
    sync.handle_event(event(EVENT_NEW_ORDER, order(1)))

    assert len(sync.orders()) == 1


def test_table_view_ignores_other_tables():
    sync = OrderSynchronizer(ObserverRole.table, static_fetch([order(1), order(2, table="6")]), table_number="5")
    sync.connect()
    sync.handle_event(event(EVENT_NEW_ORDER, order(3, table="7")))
    sync.handle_event(event(EVENT_ORDER_UPDATED, order(2, table="6", status="cooking", version=2)))

    assert [o["id"] for o in sync.orders()] == [1]


def test_kitchen_sees_every_table_first_come_first_served():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(2, table="6"), order(1)]))
    sync.connect()
    sync.handle_event(event(EVENT_NEW_ORDER, order(3, table="7")))

    assert [o["id"] for o in sync.orders()] == [1, 2, 3]


def test_admin_sees_newest_first():
    sync = OrderSynchronizer(ObserverRole.admin, static_fetch([order(1), order(2)]))
    sync.connect()

    assert [o["id"] for o in sync.orders()] == [2, 1]


@pytest.mark.parametrize("role,kept", [
    (ObserverRole.table, False),
    (ObserverRole.kitchen, False),
    (ObserverRole.admin, True),
])
def test_paid_orders(role, kept):
    sync = OrderSynchronizer(role, static_fetch([order(1, status="served", version=4)]), table_number="5")
    sync.connect()

    sync.handle_event(event(EVENT_ORDER_UPDATED, order(1, status="paid", version=5)))

    assert (sync.get(1) is not None) is kept
    if kept:
        assert sync.get(1)["status"] == "paid"


def test_paid_orders_are_not_fetched_for_kitchen():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(1, status="paid"), order(2)]))
    sync.connect()

    assert [o["id"] for o in sync.orders()] == [2]


def test_stale_update_is_ignored():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(1)]))
    sync.connect()

    sync.handle_event(event(EVENT_ORDER_UPDATED, order(1, status="served", version=3)))
    sync.handle_event(event(EVENT_ORDER_UPDATED, order(1, status="cooking", version=2)))

    assert sync.get(1)["status"] == "served"
    assert sync.get(1)["version"] == 3


def test_update_overwrites_item_statuses():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(1)]))
    sync.connect()

    updated = order(1, status="cooking", version=2)
    updated["items"][0]["status"] = "cooking"
    sync.handle_event(event(EVENT_ORDER_UPDATED, updated))
    sync.handle_event(event(EVENT_ORDER_UPDATED, updated))

    cached = sync.get(1)
    assert cached["status"] == "cooking"
    assert cached["items"][0]["status"] == "cooking"


def test_update_for_unknown_order_is_kept():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([]))
    sync.connect()

    sync.handle_event(event(EVENT_ORDER_UPDATED, order(9, status="cooking", version=2)))

    assert sync.get(9)["status"] == "cooking"


def test_event_racing_the_initial_fetch():
    # The new-order event lands before the fetch response that also contains it
    sync = OrderSynchronizer(ObserverRole.table, static_fetch([order(1, version=2, status="cooking")]), table_number="5")
    sync.handle_event(event(EVENT_NEW_ORDER, order(1)))
    sync.connect()

    assert len(sync.orders()) == 1
    assert sync.get(1)["version"] == 2


def test_malformed_and_unknown_events_are_ignored():
    sync = OrderSynchronizer(ObserverRole.admin, static_fetch([]))
    sync.connect()

    sync.handle_event({"event": EVENT_NEW_ORDER, "data": None})
    sync.handle_event({"event": "something:else", "data": order(1)})

    assert sync.orders() == []


def test_reconnect_resyncs():
    server = [order(1)]
    sync = OrderSynchronizer(ObserverRole.kitchen, lambda: [dict(o) for o in server])
    sync.connect()

    # Events missed while disconnected
    server[0] = order(1, status="cooking", version=2)
    server.append(order(2))
    sync.connect()

    assert [o["status"] for o in sync.orders()] == ["cooking", "pending"]


def test_optimistic_update_success():
    sync = OrderSynchronizer(ObserverRole.kitchen, static_fetch([order(1)]))
    sync.connect()

    seen = []
    result = sync.optimistic_update(1, {"status": "cooking"}, lambda: seen.append(sync.get(1)["status"]) or "ok")

    assert result == "ok"
    assert seen == ["cooking"]


def test_failed_optimistic_update_refetches():
    fetches = []

    def fetch():
        fetches.append(True)
        return [order(1)]

    sync = OrderSynchronizer(ObserverRole.kitchen, fetch)
    sync.connect()

    def failing_request():
        assert sync.get(1)["status"] == "cooking"
        raise httpx.HTTPError("409 Conflict")

    with pytest.raises(httpx.HTTPError):
        sync.optimistic_update(1, {"status": "cooking"}, failing_request)

    assert sync.get(1)["status"] == "pending"
    assert len(fetches) == 2


def test_synchronizer_fed_by_lifecycle(session, guard, lifecycle, publisher, menu):
    kitchen = OrderSynchronizer(ObserverRole.kitchen, lambda: [])
    table = OrderSynchronizer(ObserverRole.table, lambda: [], table_number="5")
    other_table = OrderSynchronizer(ObserverRole.table, lambda: [], table_number="6")
    for view in (kitchen, table, other_table):
        view.connect()

    routes = {
        KITCHEN_CHANNEL: [kitchen],
        table_channel("5"): [table],
        table_channel("6"): [other_table],
    }

    def deliver(channel, message):
        for view in routes.get(channel, []):
            view.handle_message(message)

    publisher.subscribe(deliver)

    guard.try_acquire(session, "5", "A")
    placed = lifecycle.create_order(session, "5", "A", [OrderItemCreate(menu_item_id=menu["Es Teh"], quantity=1)], 5000)
    lifecycle.advance_item_status(session, placed.id, placed.items[0].id, OrderItemStatus.served)

    assert kitchen.get(placed.id)["status"] == "served"
    assert table.get(placed.id)["items"][0]["status"] == "served"
    assert other_table.orders() == []

    lifecycle.close_order(session, placed.id)
    assert kitchen.orders() == []
    assert table.orders() == []


def test_handle_message_decodes_json():
    sync = OrderSynchronizer(ObserverRole.admin, static_fetch([]))
    sync.connect()
    sync.handle_message(encode_event(EVENT_NEW_ORDER, order(1)))

    assert sync.get(1)["id"] == 1


def test_client_identity_persists(tmp_path):
    path = tmp_path / "device" / "identity.json"
    first = ClientIdentity(path)
    first.remember_token("abc")

    second = ClientIdentity(path)
    assert second.client_id == first.client_id
    assert second.token == "abc"


def test_client_identity_recovers_from_corrupt_file(tmp_path):
    path = tmp_path / "identity.json"
    path.write_text("{not json", encoding="utf-8")

    identity = ClientIdentity(path)
    assert identity.client_id
    assert json.loads(path.read_text(encoding="utf-8"))["client_id"] == identity.client_id


def test_api_client_sends_identity(tmp_path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[order(1)])

    identity = ClientIdentity(tmp_path / "identity.json")
    identity.remember_token("tok")
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://api")
    api = OrderApiClient("http://api", identity=identity, client=client)

    view = synchronizer_for(api, ObserverRole.table, table_number="5")
    view.connect()

    assert view.get(1)["table_number"] == "5"
    sent = requests[0]
    assert sent.url.params["table"] == "5"
    assert sent.url.params["include_paid"] == "false"
    assert sent.headers["Authorization"] == "Bearer tok"
    assert sent.headers["X-Client-Id"] == identity.client_id
    api.close()


def test_api_client_raises_on_error_status():
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(409, json={"detail": "nope"})),
        base_url="http://api",
    )
    api = OrderApiClient("http://api", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        api.update_item_status(1, 10, "cooking", actor="kitchen")
