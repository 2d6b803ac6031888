"""
Persistence for orders, order items and payments.

Every write runs in its own transaction. Creation is atomic per vendor group,
transitions are conditional updates on the expected current status, and stock
is decremented with a guarded UPDATE in the same transaction as the items.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import logging
import uuid

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import config
from models import (
    CartItem,
    DeliveryType,
    Driver,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    Vendor,
    VendorStatus,
    utcnow,
)
from services.actors import Actor
from services.cart_splitter import CartLine
from services.commission import (
    DeliveryFeePolicy,
    TaxPolicy,
    TieredDeliveryFee,
    compute_order_totals,
    line_total,
)
from services.order_events import (
    DriverAssigned,
    LowStock,
    LowStockProduct,
    OrderCreated,
    StatusChanged,
    add_outbox_event,
)
from services.snapshots import DeliveryAddress
from utils.exceptions import (
    DriverAlreadyAssignedError,
    InsufficientStockError,
    MarketplaceError,
    OrderNotFoundError,
    ProductUnavailableError,
    StaleStateError,
    ValidationError,
)
from utils.timeouts import translate_timeouts

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def default_delivery_fee_policy() -> DeliveryFeePolicy:
    return TieredDeliveryFee(standard=config.STANDARD_DELIVERY_FEE, express=config.EXPRESS_DELIVERY_FEE)


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"MK-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def initial_payment_status(payment_method: PaymentMethod) -> PaymentStatus:
    if PaymentMethod(payment_method).value in config.DEFERRED_PAYMENT_METHODS:
        return PaymentStatus.PENDING
    return PaymentStatus.COMPLETED


@dataclass
class CheckoutOptions:
    payment_method: PaymentMethod
    delivery_address: DeliveryAddress
    delivery_type: DeliveryType = DeliveryType.STANDARD
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None
    delivery_fee_policy: DeliveryFeePolicy = field(default_factory=default_delivery_fee_policy)
    tax_policy: Optional[TaxPolicy] = None


@dataclass
class GroupFailure:
    vendor_id: Optional[uuid.UUID]
    error: MarketplaceError
    product_ids: List[uuid.UUID] = field(default_factory=list)


@dataclass
class CheckoutResult:
    orders: List[Order] = field(default_factory=list)
    failures: List[GroupFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.orders) and bool(self.failures)


@dataclass(frozen=True)
class StockLevel:
    product_id: uuid.UUID
    name: str
    remaining: Optional[int]
    threshold: int

    @property
    def is_low(self) -> bool:
        return self.remaining is not None and self.remaining <= self.threshold


@dataclass(frozen=True)
class VendorCommissionSummary:
    vendor_id: uuid.UUID
    total_orders: int
    total_revenue: Decimal
    total_commission: Decimal
    total_earnings: Decimal
    avg_commission_rate: Decimal
    total_delivery_fees: Decimal


@dataclass(frozen=True)
class PlatformCommissionSummary:
    total_orders: int
    total_gmv: Decimal
    total_commission_revenue: Decimal
    total_vendor_earnings: Decimal
    avg_commission_rate: Decimal
    total_delivery_revenue: Decimal


@dataclass(frozen=True)
class VendorRevenue:
    vendor_id: uuid.UUID
    business_name: str
    total_orders: int
    total_revenue: Decimal
    total_commission: Decimal
    commission_rate: Decimal


def _money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))


class OrderStore:
    def __init__(self, session_factory: SessionFactory, low_stock_threshold: int = config.LOW_STOCK_THRESHOLD):
        self.session_factory = session_factory
        self.low_stock_threshold = low_stock_threshold

    # Reads

    async def _load_order(self, session: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self.session_factory() as session:
            async with translate_timeouts("get order"):
                return await self._load_order(session, order_id)

    async def list_orders(
        self,
        customer_id: Optional[uuid.UUID] = None,
        vendor_id: Optional[uuid.UUID] = None,
        status: Optional[OrderStatus] = None,
        unassigned: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        query = select(Order).options(selectinload(Order.items))
        if customer_id is not None:
            query = query.where(Order.customer_id == customer_id)
        if vendor_id is not None:
            query = query.where(Order.vendor_id == vendor_id)
        if status is not None:
            query = query.where(Order.status == OrderStatus(status).value)
        if unassigned:
            query = query.where(Order.driver_id.is_(None))
        query = query.order_by(Order.created_at.desc()).offset(offset).limit(limit)

        async with self.session_factory() as session:
            async with translate_timeouts("list orders"):
                result = await session.execute(query)
                return list(result.scalars().all())

    # Commission analytics
    # Cancelled orders earn nothing and are left out of every figure.

    def _analytics_conditions(self, start: Optional[datetime], end: Optional[datetime]) -> list:
        if start is not None and end is not None and start > end:
            raise ValidationError("start_date must not be after end_date")
        conditions = [Order.status != OrderStatus.CANCELLED.value]
        if start is not None:
            conditions.append(Order.created_at >= start)
        if end is not None:
            conditions.append(Order.created_at <= end)
        return conditions

    async def vendor_commission_summary(
        self, vendor_id: uuid.UUID, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> VendorCommissionSummary:
        query = select(
            func.count(Order.id),
            func.sum(Order.subtotal),
            func.sum(Order.commission_amount),
            func.sum(Order.vendor_earnings),
            func.avg(Order.commission_rate),
            func.sum(Order.delivery_fee),
        ).where(Order.vendor_id == vendor_id, *self._analytics_conditions(start, end))

        async with self.session_factory() as session:
            async with translate_timeouts("vendor commission summary"):
                row = (await session.execute(query)).one()

        return VendorCommissionSummary(
            vendor_id=vendor_id,
            total_orders=row[0] or 0,
            total_revenue=_money(row[1]),
            total_commission=_money(row[2]),
            total_earnings=_money(row[3]),
            avg_commission_rate=_money(row[4]),
            total_delivery_fees=_money(row[5]),
        )

    async def platform_commission_summary(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> PlatformCommissionSummary:
        query = select(
            func.count(Order.id),
            func.sum(Order.total_amount),
            func.sum(Order.platform_revenue),
            func.sum(Order.vendor_earnings),
            func.avg(Order.commission_rate),
            func.sum(Order.delivery_fee),
        ).where(*self._analytics_conditions(start, end))

        async with self.session_factory() as session:
            async with translate_timeouts("platform commission summary"):
                row = (await session.execute(query)).one()

        return PlatformCommissionSummary(
            total_orders=row[0] or 0,
            total_gmv=_money(row[1]),
            total_commission_revenue=_money(row[2]),
            total_vendor_earnings=_money(row[3]),
            avg_commission_rate=_money(row[4]),
            total_delivery_revenue=_money(row[5]),
        )

    async def top_vendors_by_revenue(
        self, limit: int = 10, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[VendorRevenue]:
        revenue = func.sum(Order.subtotal)
        query = (
            select(
                Order.vendor_id,
                Vendor.business_name,
                func.count(Order.id),
                revenue,
                func.sum(Order.commission_amount),
                func.avg(Order.commission_rate),
            )
            .join(Vendor, Vendor.id == Order.vendor_id)
            .where(*self._analytics_conditions(start, end))
            .group_by(Order.vendor_id, Vendor.business_name)
            .order_by(revenue.desc(), Order.vendor_id)
            .limit(limit)
        )

        async with self.session_factory() as session:
            async with translate_timeouts("top vendors"):
                rows = (await session.execute(query)).all()

        return [
            VendorRevenue(
                vendor_id=row[0],
                business_name=row[1],
                total_orders=row[2],
                total_revenue=_money(row[3]),
                total_commission=_money(row[4]),
                commission_rate=_money(row[5]),
            )
            for row in rows
        ]

    # Stock

    async def decrement_stock(
        self, product_id: uuid.UUID, quantity: int, session: Optional[AsyncSession] = None
    ) -> StockLevel:
        """
        Take ``quantity`` units off a product's stock.

        Runs on the caller's transaction when a session is given, otherwise in
        its own. Untracked products are left alone.
        """
        if session is None:
            async with self.session_factory() as own_session:
                async with translate_timeouts("decrement stock"):
                    async with own_session.begin():
                        return await self.decrement_stock(product_id, quantity, session=own_session)

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero", product_id=product_id)

        product = (
            await session.execute(select(Product).where(Product.id == product_id))
        ).scalar_one_or_none()
        if product is None or not product.is_active:
            raise ProductUnavailableError(product_id=product_id)

        threshold = product.low_stock_threshold if product.low_stock_threshold is not None else self.low_stock_threshold
        if not product.track_quantity:
            return StockLevel(product_id=product_id, name=product.name, remaining=None, threshold=threshold)

        result = await session.execute(
            update(Product)
            .where(Product.id == product_id, Product.quantity >= quantity)
            .values(quantity=Product.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStockError(
                f"Not enough stock for {product.name}", product_id=product_id, requested=quantity
            )

        remaining = (
            await session.execute(select(Product.quantity).where(Product.id == product_id))
        ).scalar_one()
        return StockLevel(product_id=product_id, name=product.name, remaining=remaining, threshold=threshold)

    async def _restore_stock(self, session: AsyncSession, order: Order) -> None:
        """Give a cancelled order's units back to the products that track stock."""
        for item in order.items:
            result = await session.execute(
                update(Product)
                .where(Product.id == item.product_id, Product.track_quantity.is_(True))
                .values(quantity=Product.quantity + item.quantity, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.info(f"Restored {item.quantity} units of product {item.product_id} (order {order.order_number} cancelled)")

    # Creation

    async def _fresh_lines(self, session: AsyncSession, vendor_id: uuid.UUID, lines: List[CartLine]) -> List[CartLine]:
        """Re-read every product inside the transaction and price lines from it."""
        fresh = []
        for line in lines:
            product = (
                await session.execute(select(Product).where(Product.id == line.product_id))
            ).scalar_one_or_none()
            if product is None or not product.is_active or product.vendor_id != vendor_id:
                raise ProductUnavailableError(
                    f"{line.product_name} is no longer available", product_id=line.product_id
                )
            fresh.append(
                replace(
                    line,
                    unit_price=product.price,
                    product_name=product.name,
                    image=product.primary_image,
                    extras=dict(product.attributes or {}),
                )
            )
        return fresh

    async def create_order_for_group(
        self,
        customer_id: uuid.UUID,
        vendor_id: uuid.UUID,
        lines: List[CartLine],
        options: CheckoutOptions,
    ) -> Order:
        async with self.session_factory() as session:
            async with translate_timeouts("create order"):
                async with session.begin():
                    # The rate is read under a row lock in the same transaction
                    # that stores it on the order.
                    vendor = (
                        await session.execute(select(Vendor).where(Vendor.id == vendor_id).with_for_update())
                    ).scalar_one_or_none()
                    if vendor is None or vendor.status != VendorStatus.APPROVED.value:
                        raise ProductUnavailableError("Vendor is not accepting orders", vendor_id=vendor_id)

                    fresh = await self._fresh_lines(session, vendor_id, lines)
                    totals = compute_order_totals(
                        fresh,
                        vendor.commission_rate,
                        options.delivery_fee_policy,
                        options.delivery_type,
                        options.tax_policy,
                    )

                    order = Order(
                        id=uuid.uuid4(),
                        order_number=generate_order_number(),
                        customer_id=customer_id,
                        vendor_id=vendor_id,
                        status=OrderStatus.PENDING.value,
                        subtotal=totals.subtotal,
                        tax_amount=totals.tax,
                        delivery_fee=totals.delivery_fee,
                        total_amount=totals.total,
                        commission_rate=totals.commission_rate,
                        commission_amount=totals.commission_amount,
                        vendor_earnings=totals.vendor_earnings,
                        platform_revenue=totals.platform_revenue,
                        currency=config.CURRENCY,
                        payment_method=PaymentMethod(options.payment_method).value,
                        payment_status=initial_payment_status(options.payment_method).value,
                        delivery_type=DeliveryType(options.delivery_type).value,
                        delivery_address=options.delivery_address.to_json(),
                        delivery_instructions=options.delivery_instructions,
                        notes=options.notes,
                    )
                    session.add(order)
                    await session.flush()

                    low_stock: List[LowStockProduct] = []
                    for position, line in enumerate(fresh):
                        level = await self.decrement_stock(line.product_id, line.quantity, session=session)
                        if level.is_low:
                            low_stock.append(
                                LowStockProduct(
                                    product_id=level.product_id,
                                    name=level.name,
                                    quantity=level.remaining,
                                    threshold=level.threshold,
                                )
                            )
                        session.add(
                            OrderItem(
                                id=uuid.uuid4(),
                                order_id=order.id,
                                product_id=line.product_id,
                                position=position,
                                quantity=line.quantity,
                                unit_price=line.unit_price,
                                total_price=line_total(line.unit_price, line.quantity),
                                product_snapshot=line.snapshot().to_json(),
                            )
                        )

                    await session.execute(
                        delete(CartItem).where(
                            CartItem.user_id == customer_id,
                            CartItem.id.in_([line.cart_item_id for line in lines]),
                        )
                    )

                    add_outbox_event(session, OrderCreated(order_id=order.id))
                    if low_stock:
                        add_outbox_event(session, LowStock(vendor_id=vendor_id, products=low_stock))

                    await session.flush()
                    created = await self._load_order(session, order.id)

        logger.info(
            f"Order {created.order_number} created for vendor {vendor_id}: "
            f"subtotal={created.subtotal} commission={created.commission_amount} total={created.total_amount}"
        )
        return created

    async def create_orders_for_vendor_groups(
        self,
        customer_id: uuid.UUID,
        groups: Dict[uuid.UUID, List[CartLine]],
        options: CheckoutOptions,
    ) -> CheckoutResult:
        """Create one order per vendor group; a failing group never affects the others."""
        result = CheckoutResult()
        for vendor_id, lines in groups.items():
            try:
                order = await self.create_order_for_group(customer_id, vendor_id, lines, options)
                result.orders.append(order)
            except MarketplaceError as e:
                logger.warning(f"Order for vendor {vendor_id} rejected: {e.message}")
                result.failures.append(
                    GroupFailure(vendor_id=vendor_id, error=e, product_ids=[line.product_id for line in lines])
                )
            except Exception as e:
                logger.error(f"Error creating order for vendor {vendor_id}: {str(e)}")
                result.failures.append(
                    GroupFailure(
                        vendor_id=vendor_id,
                        error=MarketplaceError("Order could not be created for this vendor"),
                        product_ids=[line.product_id for line in lines],
                    )
                )
        return result

    # Transitions

    async def transition_order(
        self,
        order_id: uuid.UUID,
        from_status: OrderStatus,
        to_status: OrderStatus,
        actor: Actor,
        extra: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> Order:
        """
        Move an order from ``from_status`` to ``to_status`` if nobody changed it first.

        Raises StaleStateError when the stored status no longer matches and
        DriverAlreadyAssignedError when another driver already claimed the order.
        Cancelling puts the order's units back into stock in the same transaction.
        """
        from_status = OrderStatus(from_status)
        to_status = OrderStatus(to_status)
        values: Dict[str, Any] = dict(extra or {})
        values["status"] = to_status.value
        values["updated_at"] = utcnow()

        conditions = [Order.id == order_id, Order.status == from_status.value]
        claiming = to_status == OrderStatus.IN_TRANSIT and actor.driver_id is not None
        if claiming:
            conditions.append(or_(Order.driver_id.is_(None), Order.driver_id == actor.driver_id))
            values["driver_id"] = actor.driver_id

        async with self.session_factory() as session:
            async with translate_timeouts("transition order"):
                async with session.begin():
                    previous_driver = (
                        await session.execute(select(Order.driver_id).where(Order.id == order_id))
                    ).scalar_one_or_none()

                    result = await session.execute(
                        update(Order).where(*conditions).values(**values).execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        current = (
                            await session.execute(
                                select(Order.status, Order.driver_id).where(Order.id == order_id)
                            )
                        ).one_or_none()
                        if current is None:
                            raise OrderNotFoundError(order_id=order_id)
                        if claiming and current.driver_id not in (None, actor.driver_id):
                            raise DriverAlreadyAssignedError(order_id=order_id)
                        raise StaleStateError(
                            order_id=order_id, expected=from_status.value, actual=current.status
                        )

                    order = await self._load_order(session, order_id)

                    if to_status == OrderStatus.DELIVERED and order.driver_id is not None:
                        await session.execute(
                            update(Driver)
                            .where(Driver.id == order.driver_id)
                            .values(total_deliveries=Driver.total_deliveries + 1)
                        )
                    elif to_status == OrderStatus.CANCELLED:
                        await self._restore_stock(session, order)

                    add_outbox_event(session, StatusChanged(order_id=order_id, new_status=to_status, message=message))
                    if claiming and previous_driver is None:
                        add_outbox_event(session, DriverAssigned(order_id=order_id, driver_id=actor.driver_id))

        logger.info(f"Order {order.order_number} moved {from_status.value} -> {to_status.value} by {actor.role.value} {actor.user_id}")
        return order

    # Payments

    async def record_payment(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        status: PaymentStatus,
        payment_method: Optional[PaymentMethod] = None,
        transaction_id: Optional[str] = None,
        phone_number: Optional[str] = None,
        operator_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """Store a payment attempt reported by the payment provider and mirror its status on the order."""
        status = PaymentStatus(status)
        async with self.session_factory() as session:
            async with translate_timeouts("record payment"):
                async with session.begin():
                    order = (
                        await session.execute(select(Order).where(Order.id == order_id).with_for_update())
                    ).scalar_one_or_none()
                    if order is None:
                        raise OrderNotFoundError(order_id=order_id)

                    payment = Payment(
                        id=uuid.uuid4(),
                        order_id=order_id,
                        payment_method=PaymentMethod(payment_method or order.payment_method).value,
                        amount=amount,
                        currency=order.currency,
                        status=status.value,
                        transaction_id=transaction_id,
                        phone_number=phone_number,
                        operator_reference=operator_reference,
                        failure_reason=failure_reason,
                        processed_at=utcnow() if status != PaymentStatus.PENDING else None,
                        payment_metadata=metadata,
                    )
                    session.add(payment)
                    order.payment_status = status.value

        logger.info(f"Payment {status.value} recorded for order {order.order_number}")
        return payment
