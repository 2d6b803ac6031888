from fastapi import APIRouter, Depends, HTTPException, status, BackgroundTasks
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional
import logging
import uuid

import config
from dependencies.auth import get_current_actor
from dependencies.rbac import (
    require_order_read, require_order_write, require_status_update,
    require_payment_report, require_vendor_orders, require_available_orders
)
from dependencies.services import get_cache, get_order_store, get_state_machine, get_outbox_relay
from models import OrderStatus, UserRole
from services.actors import Actor
from services.checkout import place_orders
from services.notification_dispatcher import OutboxRelay
from services.order_state_machine import OrderStateMachine
from services.order_store import CheckoutOptions, OrderStore, default_delivery_fee_policy
from services.commission import PercentageTax
from services.snapshots import DeliveryAddress
from utils.cache import CacheService, order_key, orders_key, orders_pattern, product_key
from utils.exceptions import MarketplaceError, OrderNotFoundError
from utils.response_helpers import safe_model_validate, order_to_dict
from .schemas import (
    CheckoutRequest, CheckoutResponse, CheckoutFailure, OrderResponse, OrderListResponse,
    StatusUpdateRequest, PaymentReportRequest, PaymentResponse, VendorCommissionSummaryResponse
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


def order_response(order) -> OrderResponse:
    return safe_model_validate(OrderResponse, order_to_dict(order))


def can_view_order(actor: Actor, data: Dict[str, Any]) -> bool:
    if actor.role == UserRole.ADMIN:
        return True
    if data["customer_id"] == str(actor.user_id):
        return True
    if actor.vendor_id is not None and data["vendor_id"] == str(actor.vendor_id):
        return True
    if actor.driver_id is not None:
        if data["driver_id"] == str(actor.driver_id):
            return True
        return data["status"] == OrderStatus.READY_FOR_PICKUP.value and data["driver_id"] is None
    return False


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    checkout_data: CheckoutRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    relay: OutboxRelay = Depends(get_outbox_relay),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_order_write)
):
    """
    Turn the caller's cart into one order per vendor.
    Vendors whose share could not be ordered are listed under failures.
    """
    try:
        options = CheckoutOptions(
            payment_method=checkout_data.payment_method,
            delivery_type=checkout_data.delivery_type,
            delivery_address=DeliveryAddress.parse(checkout_data.delivery_address.model_dump()),
            delivery_instructions=checkout_data.delivery_instructions,
            notes=checkout_data.notes,
            delivery_fee_policy=default_delivery_fee_policy(),
            tax_policy=PercentageTax(config.TAX_RATE_PERCENT) if config.TAX_RATE_PERCENT else None,
        )
        result = await place_orders(store, actor.user_id, options, cache=cache_service)

        if not result.orders:
            # Nothing went through: surface the first rejection as the error
            raise result.failures[0].error

        background_tasks.add_task(relay.publish_pending)

        return CheckoutResponse(
            orders=[order_response(order) for order in result.orders],
            failures=[
                CheckoutFailure(
                    vendor_id=str(failure.vendor_id) if failure.vendor_id else None,
                    error=failure.error.code,
                    detail=failure.error.message,
                    product_ids=[str(product_id) for product_id in failure.product_ids],
                )
                for failure in result.failures
            ],
        )
    except MarketplaceError:
        raise
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error during checkout: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create orders"
        )


@router.get("/me", response_model=OrderListResponse)
async def list_my_orders(
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_order_read)
):
    """List orders placed by the current user"""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    async def load():
        orders = await store.list_orders(customer_id=actor.user_id, limit=limit, offset=(page - 1) * limit)
        return [order_response(order).model_dump(mode="json") for order in orders]

    orders = await cache_service.get_or_load(
        f"{orders_key(actor.user_id)}:{page}:{limit}", load, config.ORDERS_CACHE_TTL
    )
    return OrderListResponse(orders=orders, page=page, limit=limit)


@router.get("/vendor", response_model=OrderListResponse)
async def list_vendor_orders(
    page: int = 1,
    limit: int = 20,
    order_status: OrderStatus = None,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    _: bool = Depends(require_vendor_orders)
):
    """List orders received by the current vendor"""
    if actor.vendor_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No vendor profile for this account"
        )
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    orders = await store.list_orders(
        vendor_id=actor.vendor_id, status=order_status, limit=limit, offset=(page - 1) * limit
    )
    return OrderListResponse(orders=[order_response(order) for order in orders], page=page, limit=limit)


@router.get("/vendor/commission-summary", response_model=VendorCommissionSummaryResponse)
async def get_vendor_commission_summary(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    _: bool = Depends(require_vendor_orders)
):
    """Sales, commission and earnings of the current vendor, optionally within a date range"""
    if actor.vendor_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No vendor profile for this account"
        )
    summary = await store.vendor_commission_summary(actor.vendor_id, start=start_date, end=end_date)
    return VendorCommissionSummaryResponse(**{**asdict(summary), "vendor_id": str(summary.vendor_id)})


@router.get("/available", response_model=OrderListResponse)
async def list_available_orders(
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    _: bool = Depends(require_available_orders)
):
    """Orders ready for pickup that no driver has claimed yet"""
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    orders = await store.list_orders(
        status=OrderStatus.READY_FOR_PICKUP, unassigned=True, limit=limit, offset=(page - 1) * limit
    )
    return OrderListResponse(orders=[order_response(order) for order in orders], page=page, limit=limit)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_order_read)
):
    async def load():
        order = await store.get_order(order_id)
        return order_response(order).model_dump(mode="json") if order else None

    data = await cache_service.get_or_load(order_key(order_id), load, config.ORDER_CACHE_TTL)
    if data is None:
        raise OrderNotFoundError(order_id=order_id)
    if not can_view_order(actor, data):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this order"
        )
    return OrderResponse.model_validate(data)


@router.post("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    status_update: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    state_machine: OrderStateMachine = Depends(get_state_machine),
    relay: OutboxRelay = Depends(get_outbox_relay),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_status_update)
):
    """
    Move an order to a new status.
    A 409 with error "stale_state" means someone else changed the order first; re-read and retry.
    """
    try:
        order = await state_machine.transition(
            order_id,
            status_update.status,
            actor,
            reason=status_update.reason,
            message=status_update.message,
        )
        keys = [order_key(order.id), orders_pattern(order.customer_id)]
        if order.status == OrderStatus.CANCELLED.value:
            keys.extend(product_key(item.product_id) for item in order.items)
        await cache_service.invalidate_many(*keys)
        background_tasks.add_task(relay.publish_pending)
        return order_response(order)
    except MarketplaceError:
        raise
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating order {order_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update order status"
        )


@router.post("/{order_id}/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def report_payment(
    order_id: uuid.UUID,
    payment_data: PaymentReportRequest,
    actor: Actor = Depends(get_current_actor),
    store: OrderStore = Depends(get_order_store),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_payment_report)
):
    """Record a payment outcome reported by the payment provider"""
    try:
        payment = await store.record_payment(
            order_id,
            amount=payment_data.amount,
            status=payment_data.status,
            payment_method=payment_data.payment_method,
            transaction_id=payment_data.transaction_id,
            phone_number=payment_data.phone_number,
            operator_reference=payment_data.operator_reference,
            failure_reason=payment_data.failure_reason,
            metadata=payment_data.metadata,
        )
        await cache_service.invalidate(order_key(order_id))
        return PaymentResponse(
            id=str(payment.id),
            order_id=str(payment.order_id),
            payment_method=payment.payment_method,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            transaction_id=payment.transaction_id,
            failure_reason=payment.failure_reason,
            processed_at=payment.processed_at,
        )
    except MarketplaceError:
        raise
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error recording payment for order {order_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record payment"
        )
