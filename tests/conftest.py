"""
Shared fixtures: a throwaway SQLite database per test and a small seeding helper.
"""
from decimal import Decimal
from typing import Optional
import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from models import (
    Base,
    CartItem,
    Driver,
    PaymentMethod,
    Product,
    User,
    UserRole,
    Vendor,
    VendorStatus,
)
from services.actors import Actor
from services.commission import FlatDeliveryFee
from services.order_store import CheckoutOptions
from services.snapshots import DeliveryAddress


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


class Seed:
    """Inserts rows in their own committed transaction and returns them detached."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def add(self, *objects):
        async with self.session_factory() as session:
            async with session.begin():
                session.add_all(objects)
        return objects[0] if len(objects) == 1 else objects

    async def user(self, role: UserRole = UserRole.CUSTOMER, **fields) -> User:
        suffix = uuid.uuid4().hex[:8]
        fields.setdefault("email", f"{role.value}-{suffix}@example.com")
        fields.setdefault("phone", "+22670000000")
        fields.setdefault("first_name", role.value.title())
        fields.setdefault("last_name", suffix)
        return await self.add(User(id=uuid.uuid4(), role=role.value, **fields))

    async def vendor(
        self,
        commission_rate: str = "5.00",
        status: VendorStatus = VendorStatus.APPROVED,
        user: Optional[User] = None,
        **fields,
    ) -> Vendor:
        user = user or await self.user(UserRole.VENDOR)
        fields.setdefault("business_name", f"Shop {user.last_name}")
        return await self.add(
            Vendor(
                id=uuid.uuid4(),
                user_id=user.id,
                status=status.value,
                commission_rate=Decimal(commission_rate),
                **fields,
            )
        )

    async def driver(self, user: Optional[User] = None, **fields) -> Driver:
        user = user or await self.user(UserRole.DRIVER)
        fields.setdefault("vehicle_type", "motorbike")
        return await self.add(Driver(id=uuid.uuid4(), user_id=user.id, status="approved", **fields))

    async def product(self, vendor: Vendor, price: str, quantity: int = 100, **fields) -> Product:
        fields.setdefault("name", f"Product {uuid.uuid4().hex[:6]}")
        return await self.add(
            Product(id=uuid.uuid4(), vendor_id=vendor.id, price=Decimal(price), quantity=quantity, **fields)
        )

    async def cart_item(self, user: User, product: Product, quantity: int = 1) -> CartItem:
        return await self.add(CartItem(id=uuid.uuid4(), user_id=user.id, product_id=product.id, quantity=quantity))


@pytest.fixture
def seed(session_factory):
    return Seed(session_factory)


def vendor_actor(vendor: Vendor) -> Actor:
    return Actor(user_id=vendor.user_id, role=UserRole.VENDOR, vendor_id=vendor.id)


def driver_actor(driver: Driver) -> Actor:
    return Actor(user_id=driver.user_id, role=UserRole.DRIVER, driver_id=driver.id)


def checkout_options(fee: str = "2000", method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY) -> CheckoutOptions:
    return CheckoutOptions(
        payment_method=method,
        delivery_address=DeliveryAddress(address="Rue 12, Secteur 4", city="Ouagadougou"),
        delivery_fee_policy=FlatDeliveryFee(Decimal(fee)),
    )


@pytest.fixture
def make_vendor_actor():
    return vendor_actor


@pytest.fixture
def make_driver_actor():
    return driver_actor


@pytest.fixture
def make_checkout_options():
    return checkout_options
