from decimal import Decimal
import uuid

import pytest

from services.cart_splitter import CartLine, split
from utils.exceptions import EmptyCartError


def _line(vendor_id, price="1000", quantity=1, name="Item"):
    return CartLine(
        cart_item_id=uuid.uuid4(),
        product_id=uuid.uuid4(),
        vendor_id=vendor_id,
        quantity=quantity,
        unit_price=Decimal(price),
        product_name=name,
    )


class TestSplit:
    def test_groups_by_vendor_in_order_of_first_appearance(self):
        v1, v2 = uuid.uuid4(), uuid.uuid4()
        lines = [_line(v2, name="a"), _line(v1, name="b"), _line(v2, name="c")]

        groups = split(lines)

        assert list(groups) == [v2, v1]
        assert [line.product_name for line in groups[v2]] == ["a", "c"]
        assert [line.product_name for line in groups[v1]] == ["b"]

    def test_every_line_lands_in_exactly_one_group(self):
        vendors = [uuid.uuid4() for _ in range(3)]
        lines = [_line(vendors[i % 3]) for i in range(7)]

        groups = split(lines)

        grouped = [line.cart_item_id for group in groups.values() for line in group]
        assert sorted(grouped) == sorted(line.cart_item_id for line in lines)
        assert all(line.vendor_id == vendor_id for vendor_id, group in groups.items() for line in group)

    def test_lines_without_vendor_are_left_out(self):
        vendor_id = uuid.uuid4()
        groups = split([_line(None), _line(vendor_id)])
        assert list(groups) == [vendor_id]

    def test_empty_cart_raises(self):
        with pytest.raises(EmptyCartError):
            split([])


class TestCartLineSnapshot:
    def test_snapshot_keeps_name_price_and_image(self):
        line = CartLine(
            cart_item_id=uuid.uuid4(),
            product_id=uuid.uuid4(),
            vendor_id=uuid.uuid4(),
            quantity=2,
            unit_price=Decimal("2500"),
            product_name="Shea butter",
            image="https://cdn.example.com/shea.jpg",
            extras={"size": "250g"},
        )
        snapshot = line.snapshot()
        assert snapshot.name == "Shea butter"
        assert snapshot.price == Decimal("2500")
        assert snapshot.image == "https://cdn.example.com/shea.jpg"
        assert snapshot.extras == {"size": "250g"}
