"""
Checkout: turn a customer's cart into one order per vendor.
"""
from typing import Optional
import logging
import uuid

from services.cart import get_cart_lines
from services.cart_splitter import split
from services.order_store import CheckoutOptions, CheckoutResult, GroupFailure, OrderStore
from utils.cache import CacheService, cart_key, order_key, orders_pattern, product_key
from utils.exceptions import EmptyCartError, ProductUnavailableError
from utils.timeouts import translate_timeouts

logger = logging.getLogger(__name__)


async def place_orders(
    store: OrderStore,
    customer_id: uuid.UUID,
    options: CheckoutOptions,
    cache: Optional[CacheService] = None,
) -> CheckoutResult:
    """
    Split the cart by vendor and create each vendor's order independently.

    Groups containing an unavailable product are reported in
    ``result.failures`` and left in the cart; the other groups still go
    through. Raises EmptyCartError when there is nothing to order.
    """
    async with store.session_factory() as session:
        async with translate_timeouts("load cart"):
            lines = await get_cart_lines(session, customer_id)
    if not lines:
        raise EmptyCartError()

    failures = []
    orphaned = [line for line in lines if line.vendor_id is None]
    if orphaned:
        failures.append(
            GroupFailure(
                vendor_id=None,
                error=ProductUnavailableError("Some products in your cart no longer exist"),
                product_ids=[line.product_id for line in orphaned],
            )
        )

    groups = {}
    for vendor_id, group in split(lines).items():
        unavailable = [line for line in group if not line.is_available]
        if unavailable:
            names = ", ".join(line.product_name for line in unavailable)
            failures.append(
                GroupFailure(
                    vendor_id=vendor_id,
                    error=ProductUnavailableError(f"No longer available: {names}", vendor_id=vendor_id),
                    product_ids=[line.product_id for line in group],
                )
            )
            continue
        groups[vendor_id] = group

    result = await store.create_orders_for_vendor_groups(customer_id, groups, options)
    result.failures = failures + result.failures

    if cache is not None:
        keys = [cart_key(customer_id), orders_pattern(customer_id)]
        for order in result.orders:
            keys.append(order_key(order.id))
            keys.extend(product_key(item.product_id) for item in order.items)
        await cache.invalidate_many(*keys)

    logger.info(
        f"Checkout for {customer_id}: {len(result.orders)} order(s) created, {len(result.failures)} group(s) rejected"
    )
    return result
