import uuid

import pytest

from models import Order, OrderStatus, UserRole
from services.actors import Actor
from services.order_state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    allowed_targets,
    parse_status,
    validate_transition,
)
from utils.exceptions import (
    DriverAlreadyAssignedError,
    ForbiddenTransitionError,
    InvalidTransitionError,
    ValidationError,
)


def _order(status, vendor_id=None, driver_id=None):
    return Order(id=uuid.uuid4(), status=status.value, vendor_id=vendor_id or uuid.uuid4(), driver_id=driver_id)


def _vendor(order):
    return Actor(user_id=uuid.uuid4(), role=UserRole.VENDOR, vendor_id=order.vendor_id)


def _driver(driver_id=None):
    return Actor(user_id=uuid.uuid4(), role=UserRole.DRIVER, driver_id=driver_id or uuid.uuid4())


ADMIN = Actor(user_id=uuid.uuid4(), role=UserRole.ADMIN)
CUSTOMER = Actor(user_id=uuid.uuid4(), role=UserRole.CUSTOMER)


class TestTransitionTable:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(OrderStatus)

    def test_cancel_only_before_pickup(self):
        cancellable = {status for status, targets in TRANSITIONS.items() if OrderStatus.CANCELLED in targets}
        assert cancellable == {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING}

    def test_allowed_targets(self):
        assert allowed_targets(OrderStatus.READY_FOR_PICKUP) == {OrderStatus.IN_TRANSIT}

    def test_parse_status_rejects_unknown_values(self):
        with pytest.raises(ValidationError):
            parse_status("shipped")


class TestValidateTransition:
    def test_vendor_confirms_own_order(self):
        order = _order(OrderStatus.PENDING)
        assert validate_transition(order, "confirmed", _vendor(order)) == {}

    def test_whitelist_is_checked_before_role(self):
        order = _order(OrderStatus.PENDING)
        with pytest.raises(InvalidTransitionError):
            validate_transition(order, OrderStatus.DELIVERED, CUSTOMER)

    @pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
    def test_terminal_orders_never_move(self, terminal):
        order = _order(terminal)
        for target in OrderStatus:
            with pytest.raises(InvalidTransitionError):
                validate_transition(order, target, ADMIN, reason="x")

    def test_other_vendor_cannot_confirm(self):
        order = _order(OrderStatus.PENDING)
        stranger = Actor(user_id=uuid.uuid4(), role=UserRole.VENDOR, vendor_id=uuid.uuid4())
        with pytest.raises(ForbiddenTransitionError):
            validate_transition(order, OrderStatus.CONFIRMED, stranger)

    def test_customer_cannot_cancel(self):
        order = _order(OrderStatus.PENDING)
        with pytest.raises(ForbiddenTransitionError):
            validate_transition(order, OrderStatus.CANCELLED, CUSTOMER)

    def test_admin_can_cancel_pending_without_reason(self):
        order = _order(OrderStatus.PENDING)
        extra = validate_transition(order, OrderStatus.CANCELLED, ADMIN)
        assert extra["cancelled_by"] == ADMIN.user_id
        assert extra["cancellation_reason"] is None

    def test_cancel_after_confirmation_needs_reason(self):
        order = _order(OrderStatus.CONFIRMED)
        with pytest.raises(ValidationError):
            validate_transition(order, OrderStatus.CANCELLED, _vendor(order), reason="  ")
        extra = validate_transition(order, OrderStatus.CANCELLED, _vendor(order), reason=" out of stock ")
        assert extra["cancellation_reason"] == "out of stock"

    def test_vendor_cannot_pick_up(self):
        order = _order(OrderStatus.READY_FOR_PICKUP)
        with pytest.raises(ForbiddenTransitionError):
            validate_transition(order, OrderStatus.IN_TRANSIT, _vendor(order))

    def test_driver_picks_up_unassigned_order(self):
        order = _order(OrderStatus.READY_FOR_PICKUP)
        extra = validate_transition(order, OrderStatus.IN_TRANSIT, _driver())
        assert "picked_up_at" in extra

    def test_second_driver_cannot_pick_up(self):
        order = _order(OrderStatus.READY_FOR_PICKUP, driver_id=uuid.uuid4())
        with pytest.raises(DriverAlreadyAssignedError):
            validate_transition(order, OrderStatus.IN_TRANSIT, _driver())

    def test_claim_after_another_driver_picked_up(self):
        holder = uuid.uuid4()
        order = _order(OrderStatus.IN_TRANSIT, driver_id=holder)
        with pytest.raises(DriverAlreadyAssignedError):
            validate_transition(order, OrderStatus.IN_TRANSIT, _driver())
        with pytest.raises(InvalidTransitionError):
            validate_transition(order, OrderStatus.IN_TRANSIT, _driver(holder))

    def test_only_assigned_driver_delivers(self):
        driver_id = uuid.uuid4()
        order = _order(OrderStatus.IN_TRANSIT, driver_id=driver_id)
        with pytest.raises(ForbiddenTransitionError):
            validate_transition(order, OrderStatus.DELIVERED, _driver())
        extra = validate_transition(order, OrderStatus.DELIVERED, _driver(driver_id))
        assert "actual_delivery_time" in extra
