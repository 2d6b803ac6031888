"""
Order events and their outbox representation.

Events are written to ``order_events`` in the same transaction as the change
that caused them, then relayed to the notification dispatcher after commit.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from models import OrderEventRecord, OrderStatus


@dataclass(frozen=True)
class OrderCreated:
    order_id: uuid.UUID
    event_type = "order_created"


@dataclass(frozen=True)
class StatusChanged:
    order_id: uuid.UUID
    new_status: OrderStatus
    message: Optional[str] = None
    event_type = "status_changed"


@dataclass(frozen=True)
class DriverAssigned:
    order_id: uuid.UUID
    driver_id: uuid.UUID
    event_type = "driver_assigned"


@dataclass(frozen=True)
class LowStockProduct:
    product_id: uuid.UUID
    name: str
    quantity: int
    threshold: int


@dataclass(frozen=True)
class LowStock:
    vendor_id: uuid.UUID
    products: List[LowStockProduct] = field(default_factory=list)
    event_type = "low_stock"


OrderEvent = Union[OrderCreated, StatusChanged, DriverAssigned, LowStock]


def event_payload(event: OrderEvent) -> Dict[str, Any]:
    if isinstance(event, StatusChanged):
        return {"new_status": OrderStatus(event.new_status).value, "message": event.message}
    if isinstance(event, DriverAssigned):
        return {"driver_id": str(event.driver_id)}
    if isinstance(event, LowStock):
        return {
            "products": [
                {
                    "product_id": str(product.product_id),
                    "name": product.name,
                    "quantity": product.quantity,
                    "threshold": product.threshold,
                }
                for product in event.products
            ]
        }
    return {}


def add_outbox_event(session: AsyncSession, event: OrderEvent) -> OrderEventRecord:
    """Stage an event on the caller's transaction."""
    record = OrderEventRecord(
        id=uuid.uuid4(),
        order_id=getattr(event, "order_id", None),
        vendor_id=getattr(event, "vendor_id", None),
        event_type=event.event_type,
        payload=event_payload(event),
    )
    session.add(record)
    return record


def event_from_record(record: OrderEventRecord) -> OrderEvent:
    payload = record.payload or {}
    if record.event_type == OrderCreated.event_type:
        return OrderCreated(order_id=record.order_id)
    if record.event_type == StatusChanged.event_type:
        return StatusChanged(
            order_id=record.order_id,
            new_status=OrderStatus(payload["new_status"]),
            message=payload.get("message"),
        )
    if record.event_type == DriverAssigned.event_type:
        return DriverAssigned(order_id=record.order_id, driver_id=uuid.UUID(payload["driver_id"]))
    if record.event_type == LowStock.event_type:
        return LowStock(
            vendor_id=record.vendor_id,
            products=[
                LowStockProduct(
                    product_id=uuid.UUID(item["product_id"]),
                    name=item["name"],
                    quantity=int(item["quantity"]),
                    threshold=int(item["threshold"]),
                )
                for item in payload.get("products", [])
            ],
        )
    raise ValueError(f"Unknown order event type: {record.event_type}")
