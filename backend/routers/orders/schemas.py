from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal

from models import DeliveryType, PaymentMethod, PaymentStatus


class DeliveryAddressIn(BaseModel):
    address: str = Field(min_length=1, max_length=500)
    city: Optional[str] = None
    district: Optional[str] = None
    landmark: Optional[str] = None
    phone: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class CheckoutRequest(BaseModel):
    payment_method: PaymentMethod
    delivery_type: DeliveryType = DeliveryType.STANDARD
    delivery_address: DeliveryAddressIn
    delivery_instructions: Optional[str] = Field(default=None, max_length=1000)
    notes: Optional[str] = Field(default=None, max_length=1000)


class StatusUpdateRequest(BaseModel):
    # Plain string so unknown statuses surface as a domain validation error
    status: str
    reason: Optional[str] = Field(default=None, max_length=1000)
    message: Optional[str] = Field(default=None, max_length=1000)


class PaymentReportRequest(BaseModel):
    amount: Decimal = Field(ge=0)
    status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    phone_number: Optional[str] = None
    operator_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_name: str
    product_image: Optional[str] = None
    product_snapshot: Dict[str, Any]


class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_id: str
    vendor_id: str
    driver_id: Optional[str] = None
    status: str
    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    vendor_earnings: Decimal
    platform_revenue: Decimal
    currency: str
    payment_method: str
    payment_status: str
    delivery_type: str
    delivery_address: Dict[str, Any]
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    picked_up_at: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    page: int
    limit: int


class CheckoutFailure(BaseModel):
    vendor_id: Optional[str] = None
    error: str
    detail: str
    product_ids: List[str]


class CheckoutResponse(BaseModel):
    orders: List[OrderResponse]
    failures: List[CheckoutFailure]


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    payment_method: str
    amount: Decimal
    currency: str
    status: str
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class VendorCommissionSummaryResponse(BaseModel):
    vendor_id: str
    total_orders: int
    total_revenue: Decimal
    total_commission: Decimal
    total_earnings: Decimal
    avg_commission_rate: Decimal
    total_delivery_fees: Decimal
