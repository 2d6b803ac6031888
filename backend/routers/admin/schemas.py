from pydantic import BaseModel
from typing import Optional, List
from decimal import Decimal


class CleanupStepResponse(BaseModel):
    name: str
    rows: int = 0
    skipped: bool = False
    error: Optional[str] = None


class DeletionReportResponse(BaseModel):
    user_id: str
    user_deleted: bool
    already_absent: bool
    deleted_concurrently: bool
    fallback_used: bool
    rows_affected: int
    steps: List[CleanupStepResponse]


class BlockingReferenceResponse(BaseModel):
    table: str
    column: str
    count: int
    constraint: Optional[str] = None


class DeletionDiagnosticsResponse(BaseModel):
    user_id: str
    user_exists: bool
    is_vendor: bool
    vendor_product_count: int
    blocking: List[BlockingReferenceResponse]
    errors: List[str]


class OutboxPublishResponse(BaseModel):
    published: int


class PlatformCommissionSummaryResponse(BaseModel):
    total_orders: int
    total_gmv: Decimal
    total_commission_revenue: Decimal
    total_vendor_earnings: Decimal
    avg_commission_rate: Decimal
    total_delivery_revenue: Decimal


class VendorRevenueResponse(BaseModel):
    vendor_id: str
    business_name: str
    total_orders: int
    total_revenue: Decimal
    total_commission: Decimal
    commission_rate: Decimal


class TopVendorsResponse(BaseModel):
    vendors: List[VendorRevenueResponse]
