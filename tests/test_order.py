import pytest
from pydantic import ValidationError

from conftest import InMemoryStore
from order import ORDER_TABLE, OrderNotFoundError, OrderStore
from order_state import InvalidTransitionError, OrderStatus
from schemas import OrderCreate, OrderUpdate


@pytest.fixture
def orders():
    return OrderStore(InMemoryStore())


def new_order(user_id="cust-1", **overrides):
    fields = {
        "user_id": user_id,
        "items": [
            {"menu_item_id": "m1", "name": "Sate Ayam", "price": 20000, "quantity": 2},
            {"menu_item_id": "m2", "name": "Es Jeruk", "price": 8000, "quantity": 3, "notes": "less sugar"},
        ],
        "contact_phone": "+628123456789",
    }
    fields.update(overrides)
    return OrderCreate(**fields)


@pytest.mark.asyncio
async def test_create_order_computes_total_and_starts_pending(orders):
    order = await orders.create_order(new_order())

    assert order.status == OrderStatus.PENDING
    assert order.total_price == 2 * 20000 + 3 * 8000
    assert order.completed_at is None
    assert [line.name for line in order.items] == ["Sate Ayam", "Es Jeruk"]
    assert order.items[1].notes == "less sugar"
    assert len({line.id for line in order.items}) == 2

    assert await orders.get_order(order.id) == order


@pytest.mark.asyncio
async def test_full_lifecycle_persists_status_and_completion(orders):
    order = await orders.create_order(new_order())

    await orders.update_status(order.id, OrderStatus.PROCESSING)
    await orders.update_status(order.id, OrderStatus.READY)
    done = await orders.update_status(order.id, OrderStatus.COMPLETED)

    stored = await orders.get_order(order.id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.completed_at == done.completed_at
    assert stored.total_price == order.total_price


@pytest.mark.asyncio
async def test_invalid_transition_leaves_stored_order_unchanged(orders):
    order = await orders.create_order(new_order())

    with pytest.raises(InvalidTransitionError):
        await orders.update_status(order.id, OrderStatus.READY)

    assert (await orders.get_order(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_order_cannot_move(orders):
    order = await orders.create_order(new_order())
    await orders.update_status(order.id, OrderStatus.CANCELLED)

    with pytest.raises(InvalidTransitionError):
        await orders.update_status(order.id, OrderStatus.PROCESSING)


@pytest.mark.asyncio
async def test_status_change_on_missing_order(orders):
    with pytest.raises(OrderNotFoundError):
        await orders.update_status("missing", OrderStatus.PROCESSING)


@pytest.mark.asyncio
async def test_line_items_are_snapshots(orders):
    order = await orders.create_order(new_order())

    # Catalog edits never reach stored lines
    orders.store.tables.setdefault("menu_items", []).append({"id": "m1", "name": "Sate Kambing", "price": 30000})

    stored = await orders.get_order(order.id)
    assert stored.items[0].name == "Sate Ayam"
    assert stored.items[0].price == 20000


@pytest.mark.asyncio
async def test_listing_filters_and_newest_first(orders):
    store = orders.store
    store.seed(ORDER_TABLE, {
        "id": "old", "user_id": "a", "items": [], "total_price": 0,
        "status": "pending", "created_at": "2024-06-01T10:00:00Z",
    })
    store.seed(ORDER_TABLE, {
        "id": "new", "user_id": "b", "items": [], "total_price": 0,
        "status": "ready", "created_at": "2024-06-02T10:00:00Z",
    })

    assert [o.id for o in await orders.list_orders()] == ["new", "old"]
    assert [o.id for o in await orders.list_orders_by_status(OrderStatus.READY)] == ["new"]
    assert [o.id for o in await orders.list_orders_by_user("a")] == ["old"]


@pytest.mark.asyncio
async def test_update_order_details(orders):
    order = await orders.create_order(new_order())

    updated = await orders.update_order(order.id, OrderUpdate(delivery_address="Jl. Sudirman 1"))

    assert updated.delivery_address == "Jl. Sudirman 1"
    assert updated.contact_phone == "+628123456789"
    assert updated.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_delete_order(orders):
    order = await orders.create_order(new_order())
    await orders.delete_order(order.id)

    assert await orders.get_order(order.id) is None
    with pytest.raises(OrderNotFoundError):
        await orders.delete_order(order.id)


@pytest.mark.asyncio
async def test_order_stats(orders):
    first = await orders.create_order(new_order())
    await orders.create_order(new_order())
    await orders.update_status(first.id, OrderStatus.CANCELLED)

    stats = await orders.get_order_stats()

    assert stats == {
        "total": 2,
        "pending": 1,
        "processing": 0,
        "ready": 0,
        "completed": 0,
        "cancelled": 1,
    }


def test_order_requires_items():
    with pytest.raises(ValidationError):
        OrderCreate(user_id="cust-1", items=[])
