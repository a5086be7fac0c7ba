"""
Order Module
============
Order store: CRUD over orders plus status changes through the lifecycle.

Line items are snapshots of menu data taken when the order is placed, and
total_price is computed from them once, on create. Status changes load the
order, run order_state.transition() and write back status, updated_at and
completed_at.

Two operators advancing the same order at once is not coordinated; the
last write wins.
"""

import logging
import uuid
from typing import Dict, List, Any, Optional

from prometheus_client import Counter

from db import DocumentStore, NotFoundError, utc_now, to_store_timestamp
from models import Order, OrderLineItem, compute_total
from order_state import OrderStatus, parse_status, transition
from schemas import OrderCreate, OrderUpdate


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

ORDER_TABLE = "orders"


# ============================================================================
# METRICS
# ============================================================================

order_state_transitions = Counter(
    'order_state_transitions_total',
    'Order state transitions',
    ['from_state', 'to_state']
)


class OrderNotFoundError(NotFoundError):
    """Raised when an order id does not exist."""
    pass


class OrderStore:
    """CRUD and status transitions over the orders collection."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # ========================================================================
    # READS
    # ========================================================================

    async def list_orders(self) -> List[Order]:
        """All orders, newest first."""
        rows = await self.store.query(ORDER_TABLE, order_by="created_at", descending=True)
        return [Order.from_record(row) for row in rows]

    async def list_orders_by_status(self, status: OrderStatus) -> List[Order]:
        status = parse_status(status)
        rows = await self.store.query(
            ORDER_TABLE,
            filters={"status": status.value},
            order_by="created_at",
            descending=True
        )
        return [Order.from_record(row) for row in rows]

    async def list_orders_by_user(self, user_id: str) -> List[Order]:
        rows = await self.store.query(
            ORDER_TABLE,
            filters={"user_id": user_id},
            order_by="created_at",
            descending=True
        )
        return [Order.from_record(row) for row in rows]

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self.store.get(ORDER_TABLE, order_id)
        return Order.from_record(row) if row else None

    async def get_order_stats(self) -> Dict[str, int]:
        """Order count per status plus the overall total."""
        stats = {"total": 0}
        stats.update({status.value: 0 for status in OrderStatus})

        for order in await self.list_orders():
            stats["total"] += 1
            stats[order.status.value] += 1

        return stats

    # ========================================================================
    # WRITES
    # ========================================================================

    async def create_order(self, payload: OrderCreate) -> Order:
        """
        Place an order in PENDING with its total computed from the lines.

        Returns:
            The order as stored
        """
        items = [
            OrderLineItem(
                id=f"line_{uuid.uuid4().hex[:12]}",
                menu_item_id=line.menu_item_id,
                name=line.name,
                price=line.price,
                quantity=line.quantity,
                notes=line.notes,
            )
            for line in payload.items
        ]

        now = to_store_timestamp(utc_now())
        data = {
            "user_id": payload.user_id,
            "items": [item.to_dict() for item in items],
            "total_price": compute_total(items),
            "status": OrderStatus.PENDING.value,
            "payment_method": payload.payment_method,
            "delivery_address": payload.delivery_address,
            "contact_phone": payload.contact_phone,
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }

        order_id = await self.store.create(ORDER_TABLE, data)

        logger.info(
            f"Order created: {order_id} (total={data['total_price']}, lines={len(items)})"
        )

        return Order.from_record({**data, "id": order_id})

    async def update_order(self, order_id: str, patch: OrderUpdate) -> Order:
        """
        Change contact, payment or delivery details.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        changes: Dict[str, Any] = patch.model_dump(exclude_unset=True)
        changes["updated_at"] = to_store_timestamp(utc_now())

        try:
            row = await self.store.update(ORDER_TABLE, order_id, changes)
        except NotFoundError:
            raise OrderNotFoundError(f"Order not found: {order_id}", table=ORDER_TABLE, operation="update")

        return Order.from_record(row)

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """
        Move an order to new_status.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If the lifecycle forbids the change
        """
        current = await self.get_order(order_id)
        if current is None:
            raise OrderNotFoundError(f"Order not found: {order_id}", table=ORDER_TABLE, operation="update")

        updated = transition(current, new_status)

        try:
            await self.store.update(
                ORDER_TABLE,
                order_id,
                {
                    "status": updated.status.value,
                    "updated_at": to_store_timestamp(updated.updated_at),
                    "completed_at": to_store_timestamp(updated.completed_at),
                }
            )
        except NotFoundError:
            raise OrderNotFoundError(f"Order not found: {order_id}", table=ORDER_TABLE, operation="update")

        order_state_transitions.labels(
            from_state=current.status.value,
            to_state=updated.status.value
        ).inc()

        return updated

    async def delete_order(self, order_id: str):
        try:
            await self.store.delete(ORDER_TABLE, order_id)
        except NotFoundError:
            raise OrderNotFoundError(f"Order not found: {order_id}", table=ORDER_TABLE, operation="delete")

        logger.info(f"Deleted order {order_id}")
