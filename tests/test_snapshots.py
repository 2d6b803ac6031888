from decimal import Decimal
import json

from services.snapshots import SNAPSHOT_VERSION, DeliveryAddress, ProductSnapshot


class TestProductSnapshot:
    def test_parses_json_string(self):
        raw = json.dumps({"name": "Bissap", "price": "750.50", "image": "b.jpg"})
        snapshot = ProductSnapshot.parse(raw)
        assert snapshot.name == "Bissap"
        assert snapshot.price == Decimal("750.50")
        assert snapshot.image == "b.jpg"
        assert snapshot.version == SNAPSHOT_VERSION

    def test_unknown_keys_are_kept_as_extras(self):
        snapshot = ProductSnapshot.parse({"name": "Bissap", "price": 750, "color": "red"})
        assert snapshot.extras == {"color": "red"}

    def test_garbage_falls_back_to_defaults(self):
        snapshot = ProductSnapshot.parse("{not json")
        assert snapshot.name == "Unknown product"
        assert snapshot.price == Decimal("0")

    def test_none_and_bad_price(self):
        assert ProductSnapshot.parse(None).name == "Unknown product"
        assert ProductSnapshot.parse({"name": "X", "price": "free"}).price == Decimal("0")

    def test_to_json_is_serializable(self):
        snapshot = ProductSnapshot(name="Attiéké", price=Decimal("500"), extras={"origin": "CI"})
        data = snapshot.to_json()
        json.dumps(data)
        assert ProductSnapshot.parse(data) == snapshot


class TestDeliveryAddress:
    def test_extra_fields_are_allowed(self):
        address = DeliveryAddress.parse({"address": "Rue 5", "city": "Bobo", "gate_code": "12"})
        assert address.city == "Bobo"
        assert address.to_json()["gate_code"] == "12"

    def test_to_json_drops_empty_fields(self):
        data = DeliveryAddress(address="Rue 5").to_json()
        assert "latitude" not in data
        assert data["address"] == "Rue 5"

    def test_malformed_coordinates_keep_text(self):
        address = DeliveryAddress.parse({"address": "Rue 5", "city": "Bobo", "latitude": "north"})
        assert address.address == "Rue 5"
        assert address.latitude is None
