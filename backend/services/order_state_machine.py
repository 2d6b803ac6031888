"""
Order status state machine.

The transition table is a strict whitelist. Role gating is checked after the
whitelist, so an unknown move is always reported as an invalid transition
regardless of who attempted it. The one exception is a driver asking to pick
up an order another driver holds, which is always "already assigned".
"""
from typing import Any, Dict, FrozenSet, Optional
import logging
import uuid

from models import Order, OrderStatus, UserRole, utcnow
from services.actors import Actor
from services.order_store import OrderStore
from utils.exceptions import (
    DriverAlreadyAssignedError,
    ForbiddenTransitionError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.IN_TRANSIT}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

VENDOR_TARGETS = frozenset({OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP})
DRIVER_TARGETS = frozenset({OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED})
CANCEL_ROLES = frozenset({UserRole.VENDOR, UserRole.ADMIN})


def parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value!r}")


def allowed_targets(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[OrderStatus(status)]


def _check_role(order: Order, current: OrderStatus, target: OrderStatus, actor: Actor, reason: Optional[str]) -> None:
    if target in VENDOR_TARGETS:
        if actor.role != UserRole.VENDOR or actor.vendor_id != order.vendor_id:
            raise ForbiddenTransitionError(
                f"Only the order's vendor can mark it {target.value}", order_id=order.id
            )
    elif target in DRIVER_TARGETS:
        if actor.role != UserRole.DRIVER or actor.driver_id is None:
            raise ForbiddenTransitionError(f"Only a driver can mark an order {target.value}", order_id=order.id)
        if target == OrderStatus.DELIVERED and order.driver_id != actor.driver_id:
            raise ForbiddenTransitionError("Only the assigned driver can deliver this order", order_id=order.id)
    elif target == OrderStatus.CANCELLED:
        if actor.role not in CANCEL_ROLES:
            raise ForbiddenTransitionError("Only the vendor or an admin can cancel an order", order_id=order.id)
        if actor.role == UserRole.VENDOR and actor.vendor_id != order.vendor_id:
            raise ForbiddenTransitionError("Only the order's vendor can cancel it", order_id=order.id)
        if current != OrderStatus.PENDING and not (reason and reason.strip()):
            raise ValidationError("A cancellation reason is required once the order is confirmed")


def validate_transition(
    order: Order, target: Any, actor: Actor, reason: Optional[str] = None
) -> Dict[str, Any]:
    """
    Check a requested move against the whitelist and the actor's rights.

    Returns the extra columns to write alongside the new status.
    """
    target = parse_status(target)
    current = OrderStatus(order.status)

    # A claim that lost to another driver reads as "already assigned" even
    # when the winner has already moved the order on.
    if (
        target == OrderStatus.IN_TRANSIT
        and actor.role == UserRole.DRIVER
        and order.driver_id is not None
        and order.driver_id != actor.driver_id
    ):
        raise DriverAlreadyAssignedError(order_id=order.id)

    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move an order from {current.value} to {target.value}",
            order_id=order.id,
        )

    _check_role(order, current, target, actor, reason)

    now = utcnow()
    extra: Dict[str, Any] = {}
    if target == OrderStatus.IN_TRANSIT:
        extra["picked_up_at"] = now
    elif target == OrderStatus.DELIVERED:
        extra["actual_delivery_time"] = now
    elif target == OrderStatus.CANCELLED:
        extra["cancellation_reason"] = reason.strip() if reason else None
        extra["cancelled_by"] = actor.user_id
    return extra


class OrderStateMachine:
    def __init__(self, store: OrderStore):
        self.store = store

    async def transition(
        self,
        order_id: uuid.UUID,
        target: Any,
        actor: Actor,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Order:
        """Apply one status change; losers of a race get StaleStateError and may re-read and retry."""
        target = parse_status(target)
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id=order_id)

        extra = validate_transition(order, target, actor, reason)
        return await self.store.transition_order(
            order_id,
            OrderStatus(order.status),
            target,
            actor,
            extra=extra,
            message=message or reason,
        )
