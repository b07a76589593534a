"""Diagnostic API routes (manual override, debug listing, metadata repair)

Mounted only when diagnostic routes are enabled. When ADMIN_API_TOKEN is set,
every route requires a matching X-Admin-Token header.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from reconciler.api.deps import get_reconciliation_service
from reconciler.core.config import settings
from reconciler.core.exceptions import ProviderUnavailable
from reconciler.schemas.subscriptions import (
    DebugSubscriptionsResponse, FixMetadataResponse, ProviderSubscriptionView,
    SetSubscriptionRequest, SetSubscriptionResponse
)
from reconciler.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    """Dependency: require the admin token when one is configured"""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        security_logger.warning("Diagnostic route called without a valid admin token")
        raise HTTPException(403, "Admin token required")


router = APIRouter(tags=["diagnostics"], dependencies=[Depends(require_admin_token)])


@router.post("/set-subscription/{user_id}", response_model=SetSubscriptionResponse)
async def set_subscription(
    user_id: str,
    request_data: SetSubscriptionRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Write the cached status directly, bypassing Stripe"""
    record = await service.set_manual(user_id, request_data.subscribed)
    return SetSubscriptionResponse(success=True, subscribed=record.subscribed)


@router.get("/debug-subscriptions/{user_id}", response_model=DebugSubscriptionsResponse)
async def debug_subscriptions(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """List the Stripe subscriptions tagged with the user, with the local records"""
    try:
        found = await service.list_user_subscriptions(user_id)
    except ProviderUnavailable as e:
        logger.error(f"Debug listing failed for user {user_id}: {e}")
        return JSONResponse(status_code=502, content={"error": str(e)})

    return DebugSubscriptionsResponse(
        uid=user_id,
        totalSubscriptions=found.scanned,
        userSubscriptions=len(found.subscriptions),
        subscriptions=[
            ProviderSubscriptionView(
                id=sub.id,
                status=sub.status,
                created=sub.created,
                current_period_end=sub.current_period_end,
                metadata=sub.metadata,
            )
            for sub in found.subscriptions
        ],
        truncated=found.truncated,
        cached=service.cached(user_id),
        stored=await service.load_stored(user_id),
    )


@router.post("/fix-subscription-metadata/{user_id}", response_model=FixMetadataResponse)
async def fix_subscription_metadata(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Tag the newest untagged live subscription with the user id and mark the user active"""
    try:
        tagged = await service.repair_metadata(user_id)
    except ProviderUnavailable as e:
        logger.error(f"Metadata repair failed for user {user_id}: {e}")
        return JSONResponse(status_code=502, content={"error": str(e)})

    if tagged is None:
        return FixMetadataResponse(success=True, message="No subscriptions found without metadata")
    return FixMetadataResponse(
        success=True,
        subscriptionId=tagged.id,
        message="Subscription metadata updated successfully"
    )
