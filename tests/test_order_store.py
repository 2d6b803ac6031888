import asyncio
from datetime import timedelta
from decimal import Decimal
import re
import uuid

import pytest
from sqlalchemy import func, select

from models import (
    CartItem,
    Driver,
    OrderEventRecord,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    UserRole,
    VendorStatus,
    utcnow,
)
from services.actors import Actor
from services.cart import get_cart_lines
from services.order_state_machine import OrderStateMachine
from services.order_store import OrderStore, generate_order_number, initial_payment_status
from services.snapshots import ProductSnapshot
from utils.exceptions import (
    DriverAlreadyAssignedError,
    InsufficientStockError,
    OrderNotFoundError,
    ProductUnavailableError,
    StaleStateError,
    ValidationError,
)


async def _events(session_factory, order_id=None):
    async with session_factory() as session:
        query = select(OrderEventRecord.event_type).order_by(OrderEventRecord.created_at)
        if order_id is not None:
            query = query.where(OrderEventRecord.order_id == order_id)
        return list((await session.execute(query)).scalars().all())


async def _create_order(seed, store, make_checkout_options, price="5000", quantity=2, stock=100, rate="5.00"):
    customer = await seed.user()
    vendor = await seed.vendor(commission_rate=rate)
    product = await seed.product(vendor, price, quantity=stock)
    await seed.cart_item(customer, product, quantity)
    async with store.session_factory() as session:
        lines = await get_cart_lines(session, customer.id)
    order = await store.create_order_for_group(customer.id, vendor.id, lines, make_checkout_options())
    return order, customer, vendor, product


async def _order_for(seed, store, options, vendor, price, quantity):
    customer = await seed.user()
    product = await seed.product(vendor, price)
    await seed.cart_item(customer, product, quantity)
    async with store.session_factory() as session:
        lines = await get_cart_lines(session, customer.id)
    return await store.create_order_for_group(customer.id, vendor.id, lines, options)


async def _stock(session_factory, product_id):
    async with session_factory() as session:
        return (await session.execute(select(Product.quantity).where(Product.id == product_id))).scalar_one()


async def _ready_for_pickup(store, order, vendor_actor):
    for source, target in (
        (OrderStatus.PENDING, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP),
    ):
        await store.transition_order(order.id, source, target, vendor_actor)


class TestHelpers:
    def test_order_number_format(self):
        assert re.fullmatch(r"MK-\d{8}-[0-9A-F]{8}", generate_order_number())

    def test_cash_on_delivery_starts_pending(self):
        assert initial_payment_status(PaymentMethod.CASH_ON_DELIVERY) == PaymentStatus.PENDING
        assert initial_payment_status(PaymentMethod.ORANGE_MONEY) == PaymentStatus.COMPLETED


class TestCreateOrder:
    async def test_order_carries_commission_snapshot(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, customer, vendor, product = await _create_order(seed, store, make_checkout_options)

        assert order.status == OrderStatus.PENDING.value
        assert order.subtotal == Decimal("10000.00")
        assert order.commission_rate == Decimal("5.00")
        assert order.commission_amount == Decimal("500.00")
        assert order.vendor_earnings == Decimal("9500.00")
        assert order.platform_revenue == Decimal("500.00")
        assert order.total_amount == Decimal("12000.00")
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.delivery_address["city"] == "Ouagadougou"

        assert len(order.items) == 1
        snapshot = ProductSnapshot.parse(order.items[0].product_snapshot)
        assert snapshot.name == product.name
        assert snapshot.price == Decimal("5000")

    async def test_stock_decremented_and_cart_cleared(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, customer, vendor, product = await _create_order(seed, store, make_checkout_options, stock=10)

        async with session_factory() as session:
            remaining = (await session.execute(select(Product.quantity).where(Product.id == product.id))).scalar_one()
            cart_rows = (
                await session.execute(select(func.count()).select_from(CartItem).where(CartItem.user_id == customer.id))
            ).scalar_one()
        assert remaining == 8
        assert cart_rows == 0
        assert await _events(session_factory, order.id) == ["order_created"]

    async def test_low_stock_event_is_written(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory, low_stock_threshold=5)
        await _create_order(seed, store, make_checkout_options, stock=6)
        assert "low_stock" in await _events(session_factory)

    async def test_snapshot_survives_product_change(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, _, _, product = await _create_order(seed, store, make_checkout_options)

        async with session_factory() as session:
            async with session.begin():
                stored = await session.get(Product, product.id)
                stored.name = "Renamed"
                stored.price = Decimal("9999")

        reloaded = await store.get_order(order.id)
        snapshot = ProductSnapshot.parse(reloaded.items[0].product_snapshot)
        assert snapshot.name == product.name
        assert reloaded.items[0].unit_price == Decimal("5000")
        assert reloaded.subtotal == Decimal("10000.00")

    async def test_insufficient_stock_rolls_back_everything(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        customer = await seed.user()
        vendor = await seed.vendor()
        plenty = await seed.product(vendor, "1000", quantity=50)
        scarce = await seed.product(vendor, "1000", quantity=1)
        await seed.cart_item(customer, plenty, 3)
        await seed.cart_item(customer, scarce, 2)
        async with session_factory() as session:
            lines = await get_cart_lines(session, customer.id)

        with pytest.raises(InsufficientStockError):
            await store.create_order_for_group(customer.id, vendor.id, lines, make_checkout_options())

        async with session_factory() as session:
            quantity = (await session.execute(select(Product.quantity).where(Product.id == plenty.id))).scalar_one()
            items = (await session.execute(select(func.count()).select_from(OrderItem))).scalar_one()
            cart_rows = (await session.execute(select(func.count()).select_from(CartItem))).scalar_one()
        assert quantity == 50
        assert items == 0
        assert cart_rows == 2
        assert await _events(session_factory) == []

    async def test_suspended_vendor_rejected(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        customer = await seed.user()
        vendor = await seed.vendor(status=VendorStatus.SUSPENDED)
        product = await seed.product(vendor, "1000")
        await seed.cart_item(customer, product)
        async with session_factory() as session:
            lines = await get_cart_lines(session, customer.id)

        with pytest.raises(ProductUnavailableError):
            await store.create_order_for_group(customer.id, vendor.id, lines, make_checkout_options())

    async def test_pending_vendor_rejected(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        customer = await seed.user()
        vendor = await seed.vendor(status=VendorStatus.PENDING)
        product = await seed.product(vendor, "1000", quantity=5)
        await seed.cart_item(customer, product)
        async with session_factory() as session:
            lines = await get_cart_lines(session, customer.id)

        with pytest.raises(ProductUnavailableError):
            await store.create_order_for_group(customer.id, vendor.id, lines, make_checkout_options())
        assert await _stock(session_factory, product.id) == 5

    async def test_rate_is_read_at_creation_time(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, _, vendor, _ = await _create_order(seed, store, make_checkout_options, rate="12.50")
        assert order.commission_rate == Decimal("12.50")
        assert order.commission_amount == Decimal("1250.00")


class TestDecrementStock:
    async def test_guarded_decrement(self, seed, session_factory):
        store = OrderStore(session_factory, low_stock_threshold=2)
        vendor = await seed.vendor()
        product = await seed.product(vendor, "100", quantity=3)

        level = await store.decrement_stock(product.id, 1)
        assert level.remaining == 2
        assert level.is_low

        with pytest.raises(InsufficientStockError):
            await store.decrement_stock(product.id, 3)

    async def test_untracked_products_are_untouched(self, seed, session_factory):
        store = OrderStore(session_factory)
        vendor = await seed.vendor()
        product = await seed.product(vendor, "100", quantity=0, track_quantity=False)

        level = await store.decrement_stock(product.id, 10)
        assert level.remaining is None
        assert not level.is_low

    async def test_inactive_product(self, seed, session_factory):
        store = OrderStore(session_factory)
        vendor = await seed.vendor()
        product = await seed.product(vendor, "100", is_active=False)
        with pytest.raises(ProductUnavailableError):
            await store.decrement_stock(product.id, 1)


class TestTransitions:
    async def test_full_lifecycle(
        self, seed, session_factory, make_checkout_options, make_vendor_actor, make_driver_actor
    ):
        store = OrderStore(session_factory)
        machine = OrderStateMachine(store)
        order, _, vendor, _ = await _create_order(seed, store, make_checkout_options)
        driver = await seed.driver()
        vendor_actor = make_vendor_actor(vendor)
        driver_actor = make_driver_actor(driver)

        for target in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP):
            order = await machine.transition(order.id, target, vendor_actor)
            assert order.status == target.value

        order = await machine.transition(order.id, OrderStatus.IN_TRANSIT, driver_actor)
        assert order.driver_id == driver.id
        assert order.picked_up_at is not None

        order = await machine.transition(order.id, OrderStatus.DELIVERED, driver_actor)
        assert order.status == OrderStatus.DELIVERED.value
        assert order.actual_delivery_time is not None

        async with session_factory() as session:
            deliveries = (
                await session.execute(select(Driver.total_deliveries).where(Driver.id == driver.id))
            ).scalar_one()
        assert deliveries == 1

        events = await _events(session_factory, order.id)
        assert events.count("status_changed") == 5
        assert events.count("driver_assigned") == 1

    async def test_stale_expected_status_loses(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        order, _, vendor, _ = await _create_order(seed, store, make_checkout_options)
        actor = make_vendor_actor(vendor)

        await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.CONFIRMED, actor)
        with pytest.raises(StaleStateError):
            await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED, actor)

        reloaded = await store.get_order(order.id)
        assert reloaded.status == OrderStatus.CONFIRMED.value

    async def test_second_driver_claim_rejected(
        self, seed, session_factory, make_checkout_options, make_vendor_actor, make_driver_actor
    ):
        store = OrderStore(session_factory)
        order, _, vendor, _ = await _create_order(seed, store, make_checkout_options)
        await _ready_for_pickup(store, order, make_vendor_actor(vendor))

        first = make_driver_actor(await seed.driver())
        second = make_driver_actor(await seed.driver())

        # Both drivers read ready_for_pickup; the first conditional update wins
        await store.transition_order(order.id, OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT, first)
        with pytest.raises(DriverAlreadyAssignedError):
            await store.transition_order(order.id, OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT, second)

        reloaded = await store.get_order(order.id)
        assert reloaded.driver_id == first.driver_id

    async def test_concurrent_driver_claims(
        self, seed, session_factory, make_checkout_options, make_vendor_actor, make_driver_actor
    ):
        store = OrderStore(session_factory)
        machine = OrderStateMachine(store)
        order, _, vendor, _ = await _create_order(seed, store, make_checkout_options)
        await _ready_for_pickup(store, order, make_vendor_actor(vendor))
        drivers = [make_driver_actor(await seed.driver()), make_driver_actor(await seed.driver())]

        results = await asyncio.gather(
            *(machine.transition(order.id, "in_transit", driver) for driver in drivers),
            return_exceptions=True,
        )

        winners = [result for result in results if not isinstance(result, Exception)]
        losers = [result for result in results if isinstance(result, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], DriverAlreadyAssignedError)

        reloaded = await store.get_order(order.id)
        assert reloaded.status == OrderStatus.IN_TRANSIT.value
        assert reloaded.driver_id == winners[0].driver_id
        assert reloaded.driver_id in {driver.driver_id for driver in drivers}

    async def test_concurrent_moves_from_same_status(
        self, seed, session_factory, make_checkout_options, make_vendor_actor
    ):
        store = OrderStore(session_factory)
        order, _, vendor, product = await _create_order(seed, store, make_checkout_options, quantity=2, stock=10)
        actor = make_vendor_actor(vendor)
        await store.transition_order(order.id, OrderStatus.PENDING, OrderStatus.CONFIRMED, actor)

        results = await asyncio.gather(
            store.transition_order(order.id, OrderStatus.CONFIRMED, OrderStatus.PREPARING, actor),
            store.transition_order(
                order.id, OrderStatus.CONFIRMED, OrderStatus.CANCELLED, actor, extra={"cancellation_reason": "closed"}
            ),
            return_exceptions=True,
        )

        winners = [result for result in results if not isinstance(result, Exception)]
        losers = [result for result in results if isinstance(result, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StaleStateError)

        reloaded = await store.get_order(order.id)
        assert reloaded.status == winners[0].status
        # Stock only comes back when the cancellation is the move that won
        expected_stock = 10 if reloaded.status == OrderStatus.CANCELLED.value else 8
        assert await _stock(session_factory, product.id) == expected_stock

    async def test_cancel_restores_stock(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        machine = OrderStateMachine(store)
        order, _, vendor, product = await _create_order(seed, store, make_checkout_options, quantity=3, stock=10)
        untracked = await seed.product(vendor, "500", quantity=0, track_quantity=False)
        assert await _stock(session_factory, product.id) == 7

        async with session_factory() as session:
            session.add(
                OrderItem(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    product_id=untracked.id,
                    position=1,
                    quantity=4,
                    unit_price=Decimal("500"),
                    total_price=Decimal("2000"),
                    product_snapshot={"name": untracked.name, "price": "500"},
                )
            )
            await session.commit()

        cancelled = await machine.transition(order.id, "cancelled", make_vendor_actor(vendor))

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert await _stock(session_factory, product.id) == 10
        assert await _stock(session_factory, untracked.id) == 0

    async def test_delivery_keeps_stock_taken(
        self, seed, session_factory, make_checkout_options, make_vendor_actor, make_driver_actor
    ):
        store = OrderStore(session_factory)
        machine = OrderStateMachine(store)
        order, _, vendor, product = await _create_order(seed, store, make_checkout_options, quantity=3, stock=10)
        await _ready_for_pickup(store, order, make_vendor_actor(vendor))
        driver = make_driver_actor(await seed.driver())

        await machine.transition(order.id, "in_transit", driver)
        await machine.transition(order.id, "delivered", driver)

        assert await _stock(session_factory, product.id) == 7

    async def test_unknown_order(self, session_factory):
        store = OrderStore(session_factory)
        actor = Actor(user_id=uuid.uuid4(), role=UserRole.ADMIN)
        with pytest.raises(OrderNotFoundError):
            await store.transition_order(uuid.uuid4(), OrderStatus.PENDING, OrderStatus.CANCELLED, actor)
        with pytest.raises(OrderNotFoundError):
            await OrderStateMachine(store).transition(uuid.uuid4(), OrderStatus.CANCELLED, actor)


class TestListingAndPayments:
    async def test_list_orders_filters(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, customer, vendor, _ = await _create_order(seed, store, make_checkout_options)
        await _create_order(seed, store, make_checkout_options)

        mine = await store.list_orders(customer_id=customer.id)
        assert [o.id for o in mine] == [order.id]
        assert [o.id for o in await store.list_orders(vendor_id=vendor.id)] == [order.id]
        assert len(await store.list_orders(status=OrderStatus.PENDING, unassigned=True)) == 2
        assert await store.list_orders(status=OrderStatus.DELIVERED) == []

    async def test_record_payment_updates_order(self, seed, session_factory, make_checkout_options):
        store = OrderStore(session_factory)
        order, _, _, _ = await _create_order(seed, store, make_checkout_options)

        payment = await store.record_payment(
            order.id, Decimal("12000"), PaymentStatus.COMPLETED, transaction_id="OM-123"
        )
        assert payment.payment_method == PaymentMethod.CASH_ON_DELIVERY.value
        assert payment.processed_at is not None

        reloaded = await store.get_order(order.id)
        assert reloaded.payment_status == PaymentStatus.COMPLETED.value
        async with session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(Payment))).scalar_one()
        assert count == 1

    async def test_record_payment_unknown_order(self, session_factory):
        store = OrderStore(session_factory)
        with pytest.raises(OrderNotFoundError):
            await store.record_payment(uuid.uuid4(), Decimal("1"), PaymentStatus.FAILED)


class TestCommissionAnalytics:
    async def _orders(self, seed, store, options, vendor_actor):
        first = await seed.vendor(commission_rate="5.00")
        second = await seed.vendor(commission_rate="10.00")
        await _order_for(seed, store, options, first, "5000", 2)
        await _order_for(seed, store, options, second, "3000", 1)
        cancelled = await _order_for(seed, store, options, first, "8000", 1)
        await store.transition_order(cancelled.id, OrderStatus.PENDING, OrderStatus.CANCELLED, vendor_actor(first))
        return first, second

    async def test_vendor_summary(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        first, _ = await self._orders(seed, store, make_checkout_options(), make_vendor_actor)

        summary = await store.vendor_commission_summary(first.id)

        assert summary.total_orders == 1
        assert summary.total_revenue == Decimal("10000.00")
        assert summary.total_commission == Decimal("500.00")
        assert summary.total_earnings == Decimal("9500.00")
        assert summary.avg_commission_rate == Decimal("5.00")
        assert summary.total_delivery_fees == Decimal("2000.00")

    async def test_platform_summary(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        await self._orders(seed, store, make_checkout_options(), make_vendor_actor)

        summary = await store.platform_commission_summary()

        assert summary.total_orders == 2
        assert summary.total_gmv == Decimal("17000.00")
        assert summary.total_commission_revenue == Decimal("800.00")
        assert summary.total_vendor_earnings == Decimal("12200.00")
        assert summary.avg_commission_rate == Decimal("7.50")
        assert summary.total_delivery_revenue == Decimal("4000.00")

    async def test_top_vendors(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        first, second = await self._orders(seed, store, make_checkout_options(), make_vendor_actor)

        ranking = await store.top_vendors_by_revenue()
        assert [entry.vendor_id for entry in ranking] == [first.id, second.id]
        assert ranking[0].business_name == first.business_name
        assert ranking[1].total_commission == Decimal("300.00")
        assert ranking[1].commission_rate == Decimal("10.00")

        assert [entry.vendor_id for entry in await store.top_vendors_by_revenue(limit=1)] == [first.id]

    async def test_date_range(self, seed, session_factory, make_checkout_options, make_vendor_actor):
        store = OrderStore(session_factory)
        first, _ = await self._orders(seed, store, make_checkout_options(), make_vendor_actor)
        now = utcnow()

        covering = await store.platform_commission_summary(start=now - timedelta(days=1), end=now + timedelta(days=1))
        assert covering.total_orders == 2

        future = await store.vendor_commission_summary(first.id, start=now + timedelta(days=1))
        assert future.total_orders == 0
        assert future.total_revenue == Decimal("0.00")
        assert await store.top_vendors_by_revenue(start=now + timedelta(days=1)) == []

        with pytest.raises(ValidationError):
            await store.platform_commission_summary(start=now, end=now - timedelta(days=1))
