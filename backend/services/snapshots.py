"""
Versioned records stored as JSON on orders: the product snapshot kept on every
order item and the structured delivery address. Both parse defensively so old
or hand-edited rows still load.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
import json
import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def _as_mapping(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable snapshot payload, using defaults")
            return {}
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    return dict(raw) if isinstance(raw, dict) else {}


class ProductSnapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    name: str = "Unknown product"
    price: Decimal = Decimal("0")
    image: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value):
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            return Decimal("0")

    @classmethod
    def parse(cls, raw: Any) -> "ProductSnapshot":
        data = _as_mapping(raw)
        known = {}
        for key in list(data):
            if key in cls.model_fields:
                value = data.pop(key)
                if value is not None:
                    known[key] = value
        extras = known.pop("extras", None)
        extras = dict(extras) if isinstance(extras, dict) else {}
        extras.update(data)
        try:
            return cls(**known, extras=extras)
        except ValueError:
            logger.warning("Malformed product snapshot, falling back to defaults")
            return cls(name=str(known.get("name", "Unknown product")), extras=extras)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class DeliveryAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = SNAPSHOT_VERSION
    address: str = ""
    city: Optional[str] = None
    district: Optional[str] = None
    landmark: Optional[str] = None
    phone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def parse(cls, raw: Any) -> "DeliveryAddress":
        data = {key: value for key, value in _as_mapping(raw).items() if value is not None}
        try:
            return cls(**data)
        except ValueError:
            logger.warning("Malformed delivery address, keeping only the text fields")
            return cls(address=str(data.get("address", "")), city=data.get("city"))

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
