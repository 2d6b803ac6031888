from fastapi import APIRouter, Depends, HTTPException, status, Query
from dataclasses import asdict
from datetime import datetime
from typing import Optional
import logging
import uuid

from config import get_session_factory
from dependencies.auth import get_current_user
from dependencies.rbac import require_admin, require_outbox_publish, require_user_deletion, require_user_diagnostics
from dependencies.services import get_deletion_orchestrator, get_order_store, get_outbox_relay
from services.account_deletion import AccountDeletionOrchestrator
from services.deletion_diagnostics import diagnose_user_references
from services.notification_dispatcher import OutboxRelay
from services.order_store import OrderStore
from utils.exceptions import MarketplaceError
from .schemas import (
    DeletionDiagnosticsResponse, DeletionReportResponse, OutboxPublishResponse,
    PlatformCommissionSummaryResponse, TopVendorsResponse, VendorRevenueResponse
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.delete("/users/{user_id}", response_model=DeletionReportResponse)
async def delete_user(
    user_id: uuid.UUID,
    current_user = Depends(get_current_user),
    orchestrator: AccountDeletionOrchestrator = Depends(get_deletion_orchestrator),
    _: bool = Depends(require_user_deletion)
):
    """
    Admin only: delete a user and everything that depends on it
    """
    if user_id == current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Admins cannot delete their own account"
        )
    try:
        report = await orchestrator.delete_user_comprehensive(user_id)
        logger.info(f"Admin {current_user['user_id']} deleted user {user_id}")
        return report.to_dict()
    except MarketplaceError:
        raise
    except Exception as e:
        logger.error(f"Delete user {user_id} failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete user"
        )


@router.get("/users/{user_id}/deletion-diagnostics", response_model=DeletionDiagnosticsResponse)
async def get_deletion_diagnostics(
    user_id: uuid.UUID,
    current_user = Depends(get_current_user),
    session_factory = Depends(get_session_factory),
    _: bool = Depends(require_user_diagnostics)
):
    """
    Admin only: list the rows that still reference a user
    """
    try:
        diagnostics = await diagnose_user_references(session_factory, user_id)
        return diagnostics.to_dict()
    except Exception as e:
        logger.error(f"Deletion diagnostics for {user_id} failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run deletion diagnostics"
        )


@router.post("/outbox/publish", response_model=OutboxPublishResponse)
async def publish_outbox(
    limit: int = Query(100, ge=1, le=1000),
    current_user = Depends(get_current_user),
    relay: OutboxRelay = Depends(get_outbox_relay),
    _: bool = Depends(require_outbox_publish)
):
    """
    Admin only: push pending order events to the notification dispatcher
    """
    published = await relay.publish_pending(limit)
    return OutboxPublishResponse(published=published)


@router.get("/commission/summary", response_model=PlatformCommissionSummaryResponse)
async def get_platform_commission_summary(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    current_user = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
    _: bool = Depends(require_admin)
):
    """
    Admin only: gross merchandise value, platform commission and vendor payouts
    """
    summary = await store.platform_commission_summary(start=start_date, end=end_date)
    return PlatformCommissionSummaryResponse(**asdict(summary))


@router.get("/commission/top-vendors", response_model=TopVendorsResponse)
async def get_top_vendors(
    limit: int = Query(10, ge=1, le=100),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    current_user = Depends(get_current_user),
    store: OrderStore = Depends(get_order_store),
    _: bool = Depends(require_admin)
):
    """
    Admin only: vendors ranked by sales
    """
    vendors = await store.top_vendors_by_revenue(limit, start=start_date, end=end_date)
    return TopVendorsResponse(
        vendors=[
            VendorRevenueResponse(**{**asdict(vendor), "vendor_id": str(vendor.vendor_id)})
            for vendor in vendors
        ]
    )
