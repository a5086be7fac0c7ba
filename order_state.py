"""
Order State Machine
===================
Formal status transitions for the order lifecycle.

State invariants:
- Only the transitions in VALID_TRANSITIONS are accepted
- COMPLETED and CANCELLED are terminal
- completed_at is stamped once, on first entry into COMPLETED
- Pure: returns a new order, never persists or mutates the input
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set, TYPE_CHECKING

if TYPE_CHECKING:
    from models import Order

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """
    Order lifecycle states.

    State flow:
        PENDING -> PROCESSING -> READY -> COMPLETED
           |           |
           +-----------+-> CANCELLED
    """
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvalidTransitionError(Exception):
    """Raised when an order status change is not allowed."""

    def __init__(self, message: str, from_status: Optional[str] = None, to_status: Optional[str] = None):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),  # Terminal state
    OrderStatus.CANCELLED: set(),  # Terminal state
}


def parse_status(value) -> OrderStatus:
    """
    Coerce a status value or string into OrderStatus.

    Raises:
        InvalidTransitionError: If the value names no known status
    """
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidTransitionError(f"Unknown order status: {value!r}", to_status=str(value))


def allowed_targets(status: OrderStatus) -> Set[OrderStatus]:
    """Statuses reachable in one step from status."""
    return set(VALID_TRANSITIONS.get(status, set()))


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def is_terminal(status: OrderStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


def transition(order: 'Order', new_status: OrderStatus, now: Optional[datetime] = None) -> 'Order':
    """
    Validate and apply a status change.

    Args:
        order: Current order snapshot
        new_status: Desired status
        now: Clock reading to stamp (defaults to current UTC time)

    Returns:
        New order snapshot with status, updated_at and possibly completed_at set

    Raises:
        InvalidTransitionError: If (order.status, new_status) is not allowed
    """
    new_status = parse_status(new_status)

    if not can_transition(order.status, new_status):
        error_msg = (
            f"Invalid transition: {order.status.value} -> {new_status.value}"
        )
        logger.warning(
            error_msg,
            extra={
                "order_id": order.id,
                "from_state": order.status.value,
                "to_state": new_status.value
            }
        )
        raise InvalidTransitionError(
            error_msg,
            from_status=order.status.value,
            to_status=new_status.value
        )

    if now is None:
        now = datetime.now(timezone.utc)

    completed_at = order.completed_at
    if new_status == OrderStatus.COMPLETED and completed_at is None:
        completed_at = now

    logger.info(
        f"Order transition: {order.status.value} -> {new_status.value}",
        extra={
            "order_id": order.id,
            "from_state": order.status.value,
            "to_state": new_status.value
        }
    )

    return replace(order, status=new_status, updated_at=now, completed_at=completed_at)
