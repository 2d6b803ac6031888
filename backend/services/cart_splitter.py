from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
import uuid

from services.snapshots import ProductSnapshot
from utils.exceptions import EmptyCartError


@dataclass(frozen=True)
class CartLine:
    """A cart row joined with the product data checkout needs."""
    cart_item_id: uuid.UUID
    product_id: uuid.UUID
    vendor_id: Optional[uuid.UUID]
    quantity: int
    unit_price: Decimal
    product_name: str
    image: Optional[str] = None
    is_available: bool = True
    extras: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> ProductSnapshot:
        return ProductSnapshot(name=self.product_name, price=self.unit_price, image=self.image, extras=dict(self.extras))


def split(cart_items: Iterable[CartLine]) -> Dict[uuid.UUID, List[CartLine]]:
    """
    Group cart lines by the vendor that owns each product.

    Groups come out in order of first appearance and keep the cart order of
    their lines. Lines without a vendor (product gone) are not grouped; the
    caller reports them separately.
    """
    items = list(cart_items)
    if not items:
        raise EmptyCartError()

    groups: Dict[uuid.UUID, List[CartLine]] = {}
    for item in items:
        if item.vendor_id is None:
            continue
        groups.setdefault(item.vendor_id, []).append(item)
    return groups
