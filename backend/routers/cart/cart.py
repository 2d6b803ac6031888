from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from decimal import Decimal
import logging
import uuid

import config
from config import get_db
from dependencies.auth import get_current_user
from dependencies.rbac import require_cart_access
from dependencies.services import get_cache
from services.cart import add_to_cart, get_cart_lines, remove_cart_item, update_cart_item
from utils.cache import CacheService, cart_key
from utils.exceptions import MarketplaceError
from utils.response_helpers import cart_line_to_dict, safe_model_validate_list
from .schemas import CartItemAdd, CartItemUpdate, CartLineResponse, CartResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["Cart"])


async def build_cart_response(db: AsyncSession, user_id: uuid.UUID) -> dict:
    lines = await get_cart_lines(db, user_id)
    subtotal = sum((line.unit_price * line.quantity for line in lines if line.is_available), Decimal("0"))
    response = CartResponse(
        items=safe_model_validate_list(CartLineResponse, [cart_line_to_dict(line) for line in lines]),
        item_count=sum(line.quantity for line in lines),
        subtotal=subtotal,
    )
    return response.model_dump(mode="json")


@router.get("", response_model=CartResponse)
async def get_cart(
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_cart_access)
):
    user_id = current_user["user_id"]
    return await cache_service.get_or_load(
        cart_key(user_id), lambda: build_cart_response(db, user_id), config.CART_CACHE_TTL
    )


@router.post("/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_cart_item(
    item: CartItemAdd,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_cart_access)
):
    try:
        await add_to_cart(db, current_user["user_id"], item.product_id, item.quantity, cache=cache_service)
        return await build_cart_response(db, current_user["user_id"])
    except MarketplaceError:
        await db.rollback()
        raise
    except Exception as e:
        logger.error(f"Error adding to cart: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to add item to cart"
        )


@router.patch("/items/{cart_item_id}", response_model=CartResponse)
async def change_cart_item(
    cart_item_id: uuid.UUID,
    item: CartItemUpdate,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_cart_access)
):
    try:
        await update_cart_item(db, current_user["user_id"], cart_item_id, item.quantity, cache=cache_service)
        return await build_cart_response(db, current_user["user_id"])
    except MarketplaceError:
        await db.rollback()
        raise
    except Exception as e:
        logger.error(f"Error updating cart item {cart_item_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update cart item"
        )


@router.delete("/items/{cart_item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_cart_item(
    cart_item_id: uuid.UUID,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache_service: CacheService = Depends(get_cache),
    _: bool = Depends(require_cart_access)
):
    removed = await remove_cart_item(db, current_user["user_id"], cart_item_id, cache=cache_service)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Cart item not found"
        )
