"""
Domain Models
=============
Immutable records for operators, catalog entries and orders.

Each model converts to and from the flat dict a store row holds. Timestamps
are parsed into aware UTC datetimes on the way in.
"""

from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime
from dataclasses import dataclass
from enum import Enum

from db import StoreError, parse_timestamp, to_store_timestamp
from order_state import OrderStatus


# ============================================================================
# OPERATOR
# ============================================================================

class OperatorRole(Enum):
    """Administrative roles that grant dashboard access."""
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


@dataclass(frozen=True)
class Operator:
    """Staff user with an administrative role."""
    id: str
    role: OperatorRole
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'Operator':
        """
        Build from an admin_users row.

        Raises:
            ValueError: If the role is not an operator role
        """
        return cls(
            id=str(row["uid"]),
            role=OperatorRole(row.get("role")),
            email=row.get("email"),
            display_name=row.get("display_name"),
            created_at=parse_timestamp(row.get("created_at")),
            last_login=parse_timestamp(row.get("last_login")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role.value,
        }


# ============================================================================
# CATALOG
# ============================================================================

@dataclass(frozen=True)
class Category:
    """Flat menu category, referenced by name."""
    id: str
    name: str

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'Category':
        # Older rows carry the name under "nama"
        name = row.get("name") or row.get("nama") or ""
        return cls(id=str(row["id"]), name=name)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class MenuItem:
    """A dish or drink in the catalog. Price is in whole currency units."""
    id: str
    name: str
    price: int
    category: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    available: bool = True
    is_popular: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'MenuItem':
        return cls(
            id=str(row["id"]),
            name=row["name"],
            price=int(row["price"]),
            category=row.get("category") or "",
            description=row.get("description"),
            image_url=row.get("image_url"),
            available=bool(row.get("available", True)),
            is_popular=bool(row.get("is_popular", False)),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "category": self.category,
            "description": self.description,
            "image_url": self.image_url,
            "available": self.available,
            "is_popular": self.is_popular,
            "created_at": to_store_timestamp(self.created_at),
            "updated_at": to_store_timestamp(self.updated_at),
        }


# ============================================================================
# ORDERS
# ============================================================================

@dataclass(frozen=True)
class OrderLineItem:
    """
    Menu data copied into an order when it was placed.

    Later catalog edits never reach this copy.
    """
    id: str
    menu_item_id: str
    name: str
    price: int
    quantity: int
    notes: Optional[str] = None

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'OrderLineItem':
        return cls(
            id=str(row["id"]),
            menu_item_id=str(row["menu_item_id"]),
            name=row["name"],
            price=int(row["price"]),
            quantity=int(row["quantity"]),
            notes=row.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "notes": self.notes,
        }


def compute_total(items: List[OrderLineItem]) -> int:
    """Sum of price * quantity over line items."""
    return sum(item.subtotal for item in items)


@dataclass(frozen=True)
class Order:
    """Customer order as seen by the back office."""
    id: str
    user_id: str
    items: Tuple[OrderLineItem, ...]
    total_price: int
    status: OrderStatus
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    contact_phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'Order':
        try:
            status = OrderStatus(row.get("status"))
        except ValueError:
            raise StoreError(f"Order {row.get('id')} has unknown status {row.get('status')!r}")

        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            items=tuple(OrderLineItem.from_record(item) for item in row.get("items") or []),
            total_price=int(row["total_price"]),
            status=status,
            payment_method=row.get("payment_method"),
            delivery_address=row.get("delivery_address"),
            contact_phone=row.get("contact_phone"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": [item.to_dict() for item in self.items],
            "total_price": self.total_price,
            "status": self.status.value,
            "payment_method": self.payment_method,
            "delivery_address": self.delivery_address,
            "contact_phone": self.contact_phone,
            "created_at": to_store_timestamp(self.created_at),
            "updated_at": to_store_timestamp(self.updated_at),
            "completed_at": to_store_timestamp(self.completed_at),
        }
