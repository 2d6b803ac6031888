"""
Response helper utilities for handling UUID conversions and model validation
"""
from typing import Any, Dict, List
import uuid
from pydantic import BaseModel

from services.snapshots import DeliveryAddress, ProductSnapshot


def convert_uuids_to_strings(obj: Any) -> Any:
    """
    Recursively convert UUID objects to strings in any data structure
    """
    if isinstance(obj, uuid.UUID):
        return str(obj)
    elif isinstance(obj, dict):
        return {key: convert_uuids_to_strings(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_uuids_to_strings(item) for item in obj]
    else:
        return obj


def safe_model_validate(model_class: BaseModel, data: Any) -> BaseModel:
    """
    Safely validate a model by converting UUIDs to strings first
    """
    clean_data = convert_uuids_to_strings(data)
    if isinstance(clean_data, dict):
        clean_data = {k: v for k, v in clean_data.items() if not k.startswith('_')}
    return model_class.model_validate(clean_data)


def safe_model_validate_list(model_class: BaseModel, data_list: List[Any]) -> List[BaseModel]:
    """
    Safely validate a list of models by converting UUIDs to strings first
    """
    return [safe_model_validate(model_class, item) for item in data_list]


def order_item_to_dict(item) -> Dict[str, Any]:
    """Convert OrderItem model to dict, reading the product snapshot defensively"""
    snapshot = ProductSnapshot.parse(item.product_snapshot)
    return {
        'id': str(item.id),
        'product_id': str(item.product_id),
        'quantity': item.quantity,
        'unit_price': item.unit_price,
        'total_price': item.total_price,
        'product_name': snapshot.name,
        'product_image': snapshot.image,
        'product_snapshot': snapshot.to_json(),
    }


def order_to_dict(order) -> Dict[str, Any]:
    """Convert Order model (with items loaded) to dict with string UUIDs"""
    return {
        'id': str(order.id),
        'order_number': order.order_number,
        'customer_id': str(order.customer_id),
        'vendor_id': str(order.vendor_id),
        'driver_id': str(order.driver_id) if order.driver_id else None,
        'status': order.status,
        'subtotal': order.subtotal,
        'tax_amount': order.tax_amount,
        'delivery_fee': order.delivery_fee,
        'total_amount': order.total_amount,
        'commission_rate': order.commission_rate,
        'commission_amount': order.commission_amount,
        'vendor_earnings': order.vendor_earnings,
        'platform_revenue': order.platform_revenue,
        'currency': order.currency,
        'payment_method': order.payment_method,
        'payment_status': order.payment_status,
        'delivery_type': order.delivery_type,
        'delivery_address': DeliveryAddress.parse(order.delivery_address).to_json(),
        'delivery_instructions': order.delivery_instructions,
        'notes': order.notes,
        'cancellation_reason': order.cancellation_reason,
        'picked_up_at': order.picked_up_at,
        'actual_delivery_time': order.actual_delivery_time,
        'created_at': order.created_at,
        'updated_at': order.updated_at,
        'items': [order_item_to_dict(item) for item in order.items],
    }


def cart_line_to_dict(line) -> Dict[str, Any]:
    """Convert a CartLine to dict with string UUIDs"""
    return {
        'id': str(line.cart_item_id),
        'product_id': str(line.product_id),
        'vendor_id': str(line.vendor_id) if line.vendor_id else None,
        'product_name': line.product_name,
        'image': line.image,
        'unit_price': line.unit_price,
        'quantity': line.quantity,
        'is_available': line.is_available,
    }
