import pytest
from pydantic import ValidationError

from conftest import InMemoryStore
from db import StoreError
from menu import (
    CATEGORY_TABLE,
    DEFAULT_CATEGORIES,
    CatalogStore,
    CategoryNotFoundError,
    MenuItemNotFoundError,
)
from schemas import MenuItemCreate, MenuItemUpdate


@pytest.fixture
def catalog():
    return CatalogStore(InMemoryStore())


def rendang(**overrides):
    fields = {
        "name": "Rendang",
        "price": 25000,
        "category": "Main Courses",
        "description": "Slow-cooked beef",
    }
    fields.update(overrides)
    return MenuItemCreate(**fields)


@pytest.mark.asyncio
async def test_menu_item_round_trips_through_create_and_read(catalog):
    created = await catalog.create_menu_item(rendang())

    fetched = await catalog.get_menu_item(created.id)

    assert fetched == created
    assert fetched.price == 25000
    assert fetched.category == "Main Courses"
    assert fetched.available is True
    assert fetched.is_popular is False
    assert fetched.created_at is not None
    assert fetched.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_get_missing_menu_item_returns_none(catalog):
    assert await catalog.get_menu_item("missing") is None


@pytest.mark.asyncio
async def test_list_by_category(catalog):
    await catalog.create_menu_item(rendang())
    await catalog.create_menu_item(rendang(name="Es Campur", price=12000, category="Desserts"))

    mains = await catalog.list_menu_items_by_category("Main Courses")
    everything = await catalog.list_menu_items()

    assert [item.name for item in mains] == ["Rendang"]
    assert [item.name for item in everything] == ["Es Campur", "Rendang"]
    assert await catalog.count_menu_items() == 2


@pytest.mark.asyncio
async def test_partial_update_only_touches_set_fields(catalog):
    created = await catalog.create_menu_item(rendang())

    updated = await catalog.update_menu_item(created.id, MenuItemUpdate(price=27000, available=False))

    assert updated.price == 27000
    assert updated.available is False
    assert updated.name == "Rendang"
    assert updated.description == "Slow-cooked beef"
    assert updated.updated_at >= created.updated_at


def test_update_rejects_unknown_fields_and_negative_price():
    with pytest.raises(ValidationError):
        MenuItemUpdate(colour="red")
    with pytest.raises(ValidationError):
        MenuItemUpdate(price=-1)
    with pytest.raises(ValidationError):
        MenuItemCreate(name="", price=1000, category="Desserts")


@pytest.mark.asyncio
async def test_update_and_delete_missing_item_raise(catalog):
    with pytest.raises(MenuItemNotFoundError):
        await catalog.update_menu_item("missing", MenuItemUpdate(price=1))
    with pytest.raises(MenuItemNotFoundError):
        await catalog.delete_menu_item("missing")


@pytest.mark.asyncio
async def test_delete_menu_item(catalog):
    created = await catalog.create_menu_item(rendang())
    await catalog.delete_menu_item(created.id)
    assert await catalog.get_menu_item(created.id) is None


@pytest.mark.asyncio
async def test_store_failures_propagate(catalog):
    catalog.store.fail = True
    with pytest.raises(StoreError):
        await catalog.create_menu_item(rendang())


@pytest.mark.asyncio
async def test_category_crud(catalog):
    created = await catalog.create_category("  Snacks ")
    assert created.name == "Snacks"

    renamed = await catalog.update_category(created.id, "Street Food")
    assert renamed.name == "Street Food"

    assert [c.name for c in await catalog.list_categories()] == ["Street Food"]

    await catalog.delete_category(created.id)
    assert await catalog.list_categories() == []

    with pytest.raises(CategoryNotFoundError):
        await catalog.delete_category(created.id)


@pytest.mark.asyncio
async def test_default_categories_seed_only_empty_catalog(catalog):
    created = await catalog.ensure_default_categories()
    assert [c.name for c in created] == list(DEFAULT_CATEGORIES)

    assert await catalog.ensure_default_categories() == []
    assert len(await catalog.list_categories()) == len(DEFAULT_CATEGORIES)


@pytest.mark.asyncio
async def test_legacy_category_rows_are_read_and_migrated(catalog):
    catalog.store.seed(CATEGORY_TABLE, {"id": "c1", "nama": "Beverages"})
    catalog.store.seed(CATEGORY_TABLE, {"id": "c2", "name": "Desserts"})

    assert sorted(c.name for c in await catalog.list_categories()) == ["Beverages", "Desserts"]

    assert await catalog.migrate_legacy_categories() == 1
    assert await catalog.migrate_legacy_categories() == 0

    row = await catalog.store.get(CATEGORY_TABLE, "c1")
    assert row["name"] == "Beverages"
