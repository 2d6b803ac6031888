"""
Notification fan-out for order events.

The dispatcher works on committed state only: it is fed from the
``order_events`` outbox by OutboxRelay after the business transaction has
committed. Every send is best-effort. Each channel is attempted once per
recipient, failures are logged and nothing is raised back to the caller.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol
import asyncio
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import config
from models import (
    Driver,
    Notification,
    Order,
    OrderEventRecord,
    OutboxStatus,
    Vendor,
    utcnow,
)
from services.order_events import (
    DriverAssigned,
    LowStock,
    OrderCreated,
    OrderEvent,
    StatusChanged,
    event_from_record,
)
from services.snapshots import ProductSnapshot
from utils import notifications as templates

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class NotificationTransport(Protocol):
    def send_email(self, to: str, subject: str, html: str, text: str) -> bool: ...

    def send_sms(self, to: str, text: str) -> bool: ...


class DefaultTransport:
    """SMTP email and Twilio SMS."""

    def send_email(self, to: str, subject: str, html: str, text: str) -> bool:
        return templates.send_email(to, subject, html, text)

    def send_sms(self, to: str, text: str) -> bool:
        return templates.send_sms(to, text)


@dataclass(frozen=True)
class Recipient:
    user_id: Optional[uuid.UUID]
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class OutgoingMessage:
    recipient: Recipient
    subject: str
    html: str
    text: str
    sms: str
    notification_type: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryOutcome:
    recipient: Recipient
    channel: str
    sent: bool
    error: Optional[str] = None


def customer_recipient(order: Order) -> Recipient:
    customer = order.customer
    return Recipient(user_id=customer.id, name=customer.full_name, email=customer.email, phone=customer.phone)


def vendor_recipient(vendor: Vendor) -> Recipient:
    user = vendor.user
    return Recipient(
        user_id=user.id if user else None,
        name=vendor.business_name,
        email=vendor.business_email or (user.email if user else None),
        phone=vendor.business_phone or (user.phone if user else None),
    )


def order_data(order: Order) -> Dict[str, Any]:
    items = []
    for item in order.items:
        snapshot = ProductSnapshot.parse(item.product_snapshot)
        items.append({"name": snapshot.name, "quantity": item.quantity, "total_price": item.total_price})
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer.full_name if order.customer else None,
        "vendor_name": order.vendor.business_name if order.vendor else None,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "delivery_fee": order.delivery_fee,
        "total_amount": order.total_amount,
        "commission_amount": order.commission_amount,
        "vendor_earnings": order.vendor_earnings,
        "payment_method": order.payment_method,
        "status": order.status,
        "items": items,
    }


def driver_data(driver: Optional[Driver]) -> Dict[str, Any]:
    if driver is None:
        return {}
    user = driver.user
    return {
        "name": user.full_name if user else None,
        "phone": user.phone if user else None,
        "vehicle_type": driver.vehicle_type,
        "vehicle_color": driver.vehicle_color,
        "vehicle_plate": driver.vehicle_plate,
    }


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: SessionFactory,
        transport: Optional[NotificationTransport] = None,
        timeout: float = config.NOTIFICATION_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.transport = transport or DefaultTransport()
        self.timeout = timeout

    async def notify(self, event: OrderEvent) -> List[DeliveryOutcome]:
        """Attempt every channel for every recipient of ``event``. Never raises."""
        try:
            messages = await self.build_messages(event)
        except Exception as e:
            logger.error(f"Could not prepare notifications for {event.event_type}: {str(e)}")
            return []

        outcomes: List[DeliveryOutcome] = []
        for message in messages:
            outcomes.extend(await self.deliver(message))
            await self.store_in_app(message)
        return outcomes

    async def _load_order(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .options(
                    selectinload(Order.items),
                    selectinload(Order.customer),
                    selectinload(Order.vendor).selectinload(Vendor.user),
                    selectinload(Order.driver).selectinload(Driver.user),
                )
                .where(Order.id == order_id)
            )
            return result.scalar_one_or_none()

    async def _load_vendor(self, vendor_id: uuid.UUID) -> Optional[Vendor]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Vendor).options(selectinload(Vendor.user)).where(Vendor.id == vendor_id)
            )
            return result.scalar_one_or_none()

    async def build_messages(self, event: OrderEvent) -> List[OutgoingMessage]:
        if isinstance(event, LowStock):
            vendor = await self._load_vendor(event.vendor_id)
            if vendor is None:
                logger.info(f"Vendor {event.vendor_id} no longer exists, skipping low stock alert")
                return []
            products = [
                {"product_id": str(p.product_id), "name": p.name, "quantity": p.quantity, "threshold": p.threshold}
                for p in event.products
            ]
            subject, html, text = templates.get_low_stock_email(vendor.business_name, products)
            return [
                OutgoingMessage(
                    recipient=vendor_recipient(vendor),
                    subject=subject,
                    html=html,
                    text=text,
                    sms=templates.get_low_stock_sms(products),
                    notification_type="low_stock",
                    title="Low stock",
                    body=text,
                    data={"products": products},
                )
            ]

        order = await self._load_order(event.order_id)
        if order is None:
            logger.info(f"Order {event.order_id} no longer exists, skipping {event.event_type}")
            return []

        data = order_data(order)
        reference = {"order_id": str(order.id), "order_number": order.order_number}

        if isinstance(event, OrderCreated):
            subject, html, text = templates.get_order_confirmation_email(data)
            title, body = templates.get_status_message(order.status, order.order_number)
            messages = [
                OutgoingMessage(
                    recipient=customer_recipient(order),
                    subject=subject,
                    html=html,
                    text=text,
                    sms=templates.get_order_confirmation_sms(data),
                    notification_type="order_created",
                    title=title,
                    body=body,
                    data=reference,
                )
            ]
            vendor_subject, vendor_html, vendor_text = templates.get_new_order_email(data)
            messages.append(
                OutgoingMessage(
                    recipient=vendor_recipient(order.vendor),
                    subject=vendor_subject,
                    html=vendor_html,
                    text=vendor_text,
                    sms=templates.get_new_order_sms(data),
                    notification_type="new_order",
                    title="New order",
                    body=vendor_text,
                    data=reference,
                )
            )
            return messages

        if isinstance(event, StatusChanged):
            status = event.new_status.value
            subject, html, text = templates.get_status_update_email(data, status, event.message)
            title, body = templates.get_status_message(status, order.order_number)
            return [
                OutgoingMessage(
                    recipient=customer_recipient(order),
                    subject=subject,
                    html=html,
                    text=text,
                    sms=templates.get_status_update_sms(data, status, event.message),
                    notification_type="order_status",
                    title=title,
                    body=body,
                    data={**reference, "status": status},
                )
            ]

        if isinstance(event, DriverAssigned):
            driver = driver_data(order.driver)
            subject, html, text = templates.get_driver_assigned_email(data, driver)
            return [
                OutgoingMessage(
                    recipient=customer_recipient(order),
                    subject=subject,
                    html=html,
                    text=text,
                    sms=templates.get_driver_assigned_sms(data, driver),
                    notification_type="driver_assigned",
                    title="Driver assigned",
                    body=text,
                    data={**reference, "driver_id": str(event.driver_id)},
                )
            ]

        logger.warning(f"No notification rule for event {event!r}")
        return []

    async def _attempt(self, channel: str, recipient: Recipient, send: Callable[..., bool], *args) -> DeliveryOutcome:
        try:
            sent = await asyncio.wait_for(asyncio.to_thread(send, *args), timeout=self.timeout)
            if sent:
                logger.info(f"{channel} notification delivered to {recipient.name}")
            else:
                logger.warning(f"{channel} notification to {recipient.name} was not sent")
            return DeliveryOutcome(recipient=recipient, channel=channel, sent=bool(sent))
        except asyncio.TimeoutError:
            logger.warning(f"{channel} notification to {recipient.name} timed out after {self.timeout}s")
            return DeliveryOutcome(recipient=recipient, channel=channel, sent=False, error="timeout")
        except Exception as e:
            logger.warning(f"{channel} notification to {recipient.name} failed: {str(e)}")
            return DeliveryOutcome(recipient=recipient, channel=channel, sent=False, error=str(e))

    async def deliver(self, message: OutgoingMessage) -> List[DeliveryOutcome]:
        recipient = message.recipient
        outcomes = []
        if recipient.email:
            outcomes.append(
                await self._attempt(
                    "email", recipient, self.transport.send_email, recipient.email, message.subject, message.html, message.text
                )
            )
        if recipient.phone:
            outcomes.append(await self._attempt("sms", recipient, self.transport.send_sms, recipient.phone, message.sms))
        if not outcomes:
            logger.info(f"No contact method for {recipient.name}, skipping {message.notification_type}")
        return outcomes

    async def store_in_app(self, message: OutgoingMessage) -> None:
        if message.recipient.user_id is None:
            return
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(
                        Notification(
                            id=uuid.uuid4(),
                            user_id=message.recipient.user_id,
                            type=message.notification_type,
                            title=message.title,
                            message=message.body,
                            data=message.data,
                        )
                    )
        except Exception as e:
            logger.warning(f"Could not store in-app notification for {message.recipient.user_id}: {str(e)}")


class OutboxRelay:
    """
    Hands committed outbox events to the dispatcher. Delivery is at-least-once.

    Each channel gets exactly one send attempt. Channel failures are reported in
    the dispatcher's outcomes and the event is still marked published. Only an
    event the dispatcher cannot process at all (unreadable payload, database
    error) counts as a failed attempt, and after ``max_attempts`` of those it is
    marked failed.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        dispatcher: NotificationDispatcher,
        max_attempts: int = config.OUTBOX_MAX_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts

    async def _pending(self, limit: int) -> List[OrderEventRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderEventRecord)
                .where(OrderEventRecord.status == OutboxStatus.PENDING.value)
                .order_by(OrderEventRecord.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _mark_published(self, record: OrderEventRecord) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OrderEventRecord)
                    .where(OrderEventRecord.id == record.id)
                    .values(
                        status=OutboxStatus.PUBLISHED.value,
                        attempts=OrderEventRecord.attempts + 1,
                        published_at=utcnow(),
                        last_error=None,
                    )
                )

    async def _mark_failed_attempt(self, record: OrderEventRecord, error: str) -> None:
        attempts = record.attempts + 1
        status = OutboxStatus.FAILED if attempts >= self.max_attempts else OutboxStatus.PENDING
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OrderEventRecord)
                    .where(OrderEventRecord.id == record.id)
                    .values(status=status.value, attempts=attempts, last_error=error[:2000])
                )

    async def publish_pending(self, limit: int = 100) -> int:
        """Dispatch pending events; returns how many were published."""
        try:
            records = await self._pending(limit)
        except Exception as e:
            logger.error(f"Could not read order event outbox: {str(e)}")
            return 0

        published = 0
        for record in records:
            try:
                event = event_from_record(record)
                await self.dispatcher.notify(event)
                await self._mark_published(record)
                published += 1
            except Exception as e:
                logger.warning(f"Order event {record.id} ({record.event_type}) not published: {str(e)}")
                try:
                    await self._mark_failed_attempt(record, str(e))
                except Exception as mark_error:
                    logger.error(f"Could not update order event {record.id}: {str(mark_error)}")
        if records:
            logger.info(f"Published {published}/{len(records)} order events")
        return published
