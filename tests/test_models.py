from datetime import datetime, timezone, timedelta

import pytest

from db import StoreError, parse_timestamp, to_store_timestamp
from models import Category, MenuItem, Operator, OperatorRole, Order


def test_parse_timestamp_variants():
    expected = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

    assert parse_timestamp("2024-06-01T10:00:00Z") == expected
    assert parse_timestamp("2024-06-01T10:00:00+00:00") == expected
    assert parse_timestamp("2024-06-01T17:00:00+07:00") == expected
    assert parse_timestamp("2024-06-01T10:00:00") == expected
    assert parse_timestamp(expected) == expected
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(StoreError):
        parse_timestamp("yesterday")
    with pytest.raises(StoreError):
        parse_timestamp(12345)


def test_store_timestamp_is_utc():
    local = datetime(2024, 6, 1, 17, 0, tzinfo=timezone(timedelta(hours=7)))
    assert to_store_timestamp(local) == "2024-06-01T10:00:00+00:00"
    assert to_store_timestamp(None) is None


def test_category_prefers_name_over_legacy_field():
    assert Category.from_record({"id": 1, "nama": "Desserts"}).name == "Desserts"
    assert Category.from_record({"id": 2, "name": "Beverages", "nama": "Minuman"}).name == "Beverages"


def test_operator_from_record():
    operator = Operator.from_record({
        "uid": "u1",
        "email": "a@example.com",
        "role": "superadmin",
        "created_at": "2024-05-01T08:00:00Z",
    })
    assert operator.role == OperatorRole.SUPERADMIN
    assert operator.last_login is None

    with pytest.raises(ValueError):
        Operator.from_record({"uid": "u2", "role": "cashier"})


def test_menu_item_defaults():
    item = MenuItem.from_record({"id": 7, "name": "Kopi", "price": "15000"})
    assert item.id == "7"
    assert item.price == 15000
    assert item.available is True
    assert item.is_popular is False
    assert item.category == ""


def test_order_with_unknown_status_is_a_store_error():
    with pytest.raises(StoreError):
        Order.from_record({"id": "o", "user_id": "u", "items": [], "total_price": 0, "status": "lost"})


def test_order_without_status_is_a_store_error():
    with pytest.raises(StoreError):
        Order.from_record({"id": "o", "user_id": "u", "items": [], "total_price": 0})
