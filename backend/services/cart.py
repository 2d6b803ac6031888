from decimal import Decimal
from typing import List, Optional
import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import CartItem, Product
from services.cart_splitter import CartLine
from utils.cache import CacheService, cart_key
from utils.exceptions import ProductUnavailableError, ValidationError

logger = logging.getLogger(__name__)


def _check_quantity(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than zero", quantity=quantity)


async def get_cart_lines(session: AsyncSession, user_id: uuid.UUID) -> List[CartLine]:
    """Cart rows joined with their products, in the order they were added."""
    result = await session.execute(
        select(CartItem, Product)
        .outerjoin(Product, Product.id == CartItem.product_id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.created_at, CartItem.id)
    )
    lines = []
    for item, product in result.all():
        if product is None:
            lines.append(
                CartLine(
                    cart_item_id=item.id,
                    product_id=item.product_id,
                    vendor_id=None,
                    quantity=item.quantity,
                    unit_price=Decimal("0"),
                    product_name="Unavailable product",
                    is_available=False,
                )
            )
            continue
        lines.append(
            CartLine(
                cart_item_id=item.id,
                product_id=product.id,
                vendor_id=product.vendor_id,
                quantity=item.quantity,
                unit_price=product.price,
                product_name=product.name,
                image=product.primary_image,
                is_available=product.is_active,
                extras=dict(product.attributes or {}),
            )
        )
    return lines


async def add_to_cart(
    session: AsyncSession,
    user_id: uuid.UUID,
    product_id: uuid.UUID,
    quantity: int,
    cache: Optional[CacheService] = None,
) -> CartItem:
    """Add a product, or bump the quantity when it is already in the cart."""
    _check_quantity(quantity)
    product = (await session.execute(select(Product).where(Product.id == product_id))).scalar_one_or_none()
    if product is None or not product.is_active:
        raise ProductUnavailableError(product_id=product_id)

    item = (
        await session.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        )
    ).scalar_one_or_none()
    if item is None:
        item = CartItem(id=uuid.uuid4(), user_id=user_id, product_id=product_id, quantity=quantity)
        session.add(item)
    else:
        item.quantity = item.quantity + quantity

    await session.commit()
    if cache is not None:
        await cache.invalidate(cart_key(user_id))
    logger.info(f"Cart of {user_id}: {product.name} x{item.quantity}")
    return item


async def update_cart_item(
    session: AsyncSession,
    user_id: uuid.UUID,
    cart_item_id: uuid.UUID,
    quantity: int,
    cache: Optional[CacheService] = None,
) -> CartItem:
    _check_quantity(quantity)
    item = (
        await session.execute(select(CartItem).where(CartItem.id == cart_item_id, CartItem.user_id == user_id))
    ).scalar_one_or_none()
    if item is None:
        raise ValidationError("Cart item not found", cart_item_id=cart_item_id)
    item.quantity = quantity
    await session.commit()
    if cache is not None:
        await cache.invalidate(cart_key(user_id))
    return item


async def remove_cart_item(
    session: AsyncSession,
    user_id: uuid.UUID,
    cart_item_id: uuid.UUID,
    cache: Optional[CacheService] = None,
) -> bool:
    result = await session.execute(
        delete(CartItem).where(CartItem.id == cart_item_id, CartItem.user_id == user_id)
    )
    await session.commit()
    if cache is not None:
        await cache.invalidate(cart_key(user_id))
    return result.rowcount > 0
