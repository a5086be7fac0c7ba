"""
Request Schemas for the Admin Dashboard

Pydantic payloads accepted by the API. Update models list every field an
operator may change; anything else is rejected, and only the fields a
request actually sets are written.
"""

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from typing import Annotated, Optional, List

from order_state import OrderStatus


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Names are stripped before the length check, so blanks are rejected
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def _reject_null(value):
    if value is None:
        raise ValueError("may be omitted but not null")
    return value


# ----------------------------
# Auth
# ----------------------------
class LoginRequest(_Strict):
    email: str = Field(..., min_length=3, description="Operator email")
    password: str = Field(..., min_length=1)


class PasswordResetRequest(_Strict):
    email: str = Field(..., min_length=3)


class OperatorCreate(_Strict):
    """Registration of a new admin by a superadmin."""
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    display_name: str = Field(..., min_length=1)


# ----------------------------
# Catalog
# ----------------------------
class MenuItemCreate(_Strict):
    """
    Menu item as submitted from the menu form.
    Collection name: "menu_items"
    """
    name: Name = Field(..., description="Food/Drink name")
    price: int = Field(..., ge=0, description="Price in whole currency units")
    category: Name = Field(..., description="Category name, e.g. Main Courses")
    description: Optional[str] = Field(None, description="Short description")
    image_url: Optional[str] = None
    available: bool = Field(True, description="Whether item can be ordered")
    is_popular: bool = False


class MenuItemUpdate(_Strict):
    """Partial edit. description and image_url may be cleared with null."""
    name: Optional[Name] = None
    price: Optional[int] = Field(None, ge=0)
    category: Optional[Name] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    available: Optional[bool] = None
    is_popular: Optional[bool] = None

    @field_validator("name", "price", "category", "available", "is_popular")
    @classmethod
    def not_null(cls, value):
        return _reject_null(value)


class CategoryCreate(_Strict):
    name: Name


# ----------------------------
# Orders
# ----------------------------
class OrderLineItemCreate(_Strict):
    """Line item snapshot; price is the menu price at order time."""
    menu_item_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    notes: Optional[str] = None


class OrderCreate(_Strict):
    user_id: str = Field(..., min_length=1)
    items: List[OrderLineItemCreate] = Field(..., min_length=1)
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    contact_phone: Optional[str] = None


class OrderUpdate(_Strict):
    """Editable order details. Status changes go through the lifecycle."""
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    contact_phone: Optional[str] = None


class OrderStatusUpdate(_Strict):
    status: OrderStatus = Field(..., description="pending, processing, ready, completed, cancelled")
