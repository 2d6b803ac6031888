import time
import uuid

from sqlalchemy import select

from models import Notification, OrderEventRecord, OrderStatus, OutboxStatus
from services.cart import get_cart_lines
from services.notification_dispatcher import NotificationDispatcher, OutboxRelay
from services.order_events import LowStock, LowStockProduct, OrderCreated, StatusChanged
from services.order_store import OrderStore


class FakeTransport:
    """Records sends; channels listed in ``failing`` raise instead."""

    def __init__(self, failing=(), delay=0):
        self.failing = set(failing)
        self.delay = delay
        self.emails = []
        self.sms = []

    def send_email(self, to, subject, html, text):
        if "email" in self.failing:
            raise ConnectionError("SMTP server unreachable")
        time.sleep(self.delay)
        self.emails.append((to, subject))
        return True

    def send_sms(self, to, text):
        if "sms" in self.failing:
            raise ConnectionError("Twilio unreachable")
        self.sms.append((to, text))
        return True


async def _placed_order(seed, session_factory, make_checkout_options):
    customer = await seed.user(email="awa@example.com", phone="+22670111111")
    vendor = await seed.vendor(business_email="shop@example.com", business_phone="+22670222222")
    product = await seed.product(vendor, "2500")
    await seed.cart_item(customer, product, 1)
    store = OrderStore(session_factory)
    async with session_factory() as session:
        lines = await get_cart_lines(session, customer.id)
    order = await store.create_order_for_group(customer.id, vendor.id, lines, make_checkout_options())
    return order, customer, vendor


async def _notifications(session_factory):
    async with session_factory() as session:
        return list((await session.execute(select(Notification))).scalars().all())


class TestNotificationDispatcher:
    async def test_order_created_reaches_customer_and_vendor(self, seed, session_factory, make_checkout_options):
        order, customer, vendor = await _placed_order(seed, session_factory, make_checkout_options)
        transport = FakeTransport()
        dispatcher = NotificationDispatcher(session_factory, transport=transport)

        outcomes = await dispatcher.notify(OrderCreated(order_id=order.id))

        assert all(outcome.sent for outcome in outcomes)
        assert {to for to, _ in transport.emails} == {"awa@example.com", "shop@example.com"}
        assert {to for to, _ in transport.sms} == {"+22670111111", "+22670222222"}
        stored = await _notifications(session_factory)
        assert {n.user_id for n in stored} == {customer.id, vendor.user_id}
        assert all(n.data["order_number"] == order.order_number for n in stored)

    async def test_one_failing_channel_does_not_stop_the_others(self, seed, session_factory, make_checkout_options):
        order, _, _ = await _placed_order(seed, session_factory, make_checkout_options)
        transport = FakeTransport(failing={"sms"})
        dispatcher = NotificationDispatcher(session_factory, transport=transport)

        outcomes = await dispatcher.notify(OrderCreated(order_id=order.id))

        assert len(transport.emails) == 2
        failed = [outcome for outcome in outcomes if not outcome.sent]
        assert {outcome.channel for outcome in failed} == {"sms"}
        assert all("Twilio" in outcome.error for outcome in failed)

    async def test_slow_channel_times_out(self, seed, session_factory, make_checkout_options):
        order, _, _ = await _placed_order(seed, session_factory, make_checkout_options)
        dispatcher = NotificationDispatcher(session_factory, transport=FakeTransport(delay=0.5), timeout=0.05)

        outcomes = await dispatcher.notify(StatusChanged(order_id=order.id, new_status=OrderStatus.CONFIRMED))

        email = [outcome for outcome in outcomes if outcome.channel == "email"]
        assert email and email[0].error == "timeout"
        assert [outcome.sent for outcome in outcomes if outcome.channel == "sms"] == [True]

    async def test_missing_order_is_a_no_op(self, session_factory):
        dispatcher = NotificationDispatcher(session_factory, transport=FakeTransport())
        assert await dispatcher.notify(OrderCreated(order_id=uuid.uuid4())) == []

    async def test_low_stock_goes_to_vendor(self, seed, session_factory):
        vendor = await seed.vendor(business_email="shop@example.com")
        transport = FakeTransport()
        dispatcher = NotificationDispatcher(session_factory, transport=transport)
        event = LowStock(
            vendor_id=vendor.id,
            products=[LowStockProduct(product_id=uuid.uuid4(), name="Karité", quantity=2, threshold=5)],
        )

        await dispatcher.notify(event)

        assert [to for to, _ in transport.emails] == ["shop@example.com"]
        assert "Karité" in transport.sms[0][1]


class TestOutboxRelay:
    async def test_publishes_pending_events_once(self, seed, session_factory, make_checkout_options):
        await _placed_order(seed, session_factory, make_checkout_options)
        transport = FakeTransport()
        relay = OutboxRelay(session_factory, NotificationDispatcher(session_factory, transport=transport))

        assert await relay.publish_pending() == 1
        assert await relay.publish_pending() == 0
        assert len(transport.emails) == 2

        async with session_factory() as session:
            record = (await session.execute(select(OrderEventRecord))).scalar_one()
        assert record.status == OutboxStatus.PUBLISHED.value
        assert record.attempts == 1
        assert record.published_at is not None

    async def test_event_published_when_every_channel_fails(self, seed, session_factory, make_checkout_options):
        await _placed_order(seed, session_factory, make_checkout_options)
        transport = FakeTransport(failing={"email", "sms"})
        relay = OutboxRelay(session_factory, NotificationDispatcher(session_factory, transport=transport))

        assert await relay.publish_pending() == 1
        assert transport.emails == [] and transport.sms == []
        assert await relay.publish_pending() == 0

        async with session_factory() as session:
            record = (await session.execute(select(OrderEventRecord))).scalar_one()
        assert record.status == OutboxStatus.PUBLISHED.value
        assert record.attempts == 1

    async def test_failed_event_is_retried_then_given_up(self, seed, session_factory, make_checkout_options):
        await _placed_order(seed, session_factory, make_checkout_options)

        class BrokenDispatcher:
            async def notify(self, event):
                raise RuntimeError("dispatcher down")

        relay = OutboxRelay(session_factory, BrokenDispatcher(), max_attempts=2)

        assert await relay.publish_pending() == 0
        async with session_factory() as session:
            record = (await session.execute(select(OrderEventRecord))).scalar_one()
        assert record.status == OutboxStatus.PENDING.value
        assert record.attempts == 1

        assert await relay.publish_pending() == 0
        async with session_factory() as session:
            record = (await session.execute(select(OrderEventRecord))).scalar_one()
        assert record.status == OutboxStatus.FAILED.value
        assert record.last_error == "dispatcher down"
