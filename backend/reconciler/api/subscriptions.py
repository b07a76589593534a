"""Subscription API routes"""
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from reconciler.api.deps import get_billing_client, get_reconciliation_service, get_webhook_ingestor
from reconciler.core.exceptions import NotFoundUpstream, NotSubscribed, ProviderUnavailable, SignatureInvalid
from reconciler.schemas.subscriptions import (
    CancelSubscriptionResponse, CheckoutSessionRequest, CheckoutSessionResponse,
    CheckSubscriptionResponse, RefreshSubscriptionResponse
)
from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.services.stripe_service import BillingClient
from reconciler.services.webhook_service import WebhookIngestor

router = APIRouter(tags=["subscriptions"])
logger = logging.getLogger(__name__)


def provider_error_response(e: ProviderUnavailable) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": str(e)})


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor)
):
    """Handle Stripe webhook events

    The body is read as raw bytes: signature verification needs the exact payload.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        result = await ingestor.ingest(payload, sig_header)
    except SignatureInvalid as e:
        logger.error(f"Webhook rejected: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)})
    except ProviderUnavailable as e:
        # Failure status makes Stripe redeliver
        logger.error(f"Webhook processing failed, provider unavailable: {e}")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return {"received": True, "status": result.outcome.value}


@router.get("/check-subscription/{user_id}", response_model=CheckSubscriptionResponse)
async def check_subscription(
    user_id: str,
    force: bool = Query(False),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Cached entitlement check; ``force=true`` re-resolves from Stripe.

    ``force`` accepts true/false, 1/0, yes/no and on/off; any other value is
    rejected with 422 before the cache or Stripe is consulted.
    """
    try:
        record = await service.check_status(user_id, force_refresh=force)
    except ProviderUnavailable as e:
        logger.error(f"Subscription check failed for user {user_id}: {e}")
        return provider_error_response(e)
    return CheckSubscriptionResponse(subscribed=record.subscribed)


@router.post("/refresh-subscription/{user_id}", response_model=RefreshSubscriptionResponse)
async def refresh_subscription(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    try:
        record = await service.refresh(user_id)
    except ProviderUnavailable as e:
        logger.error(f"Subscription refresh failed for user {user_id}: {e}")
        return provider_error_response(e)
    return RefreshSubscriptionResponse(success=True, subscribed=record.subscribed)


@router.post("/cancel-subscription/{user_id}", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    user_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Cancel the user's live subscription in Stripe.

    404 when nothing is subscribed locally or upstream, 502 when Stripe fails.
    The local record only changes to canceled after Stripe confirms.
    """
    try:
        result = await service.cancel(user_id)
    except (NotSubscribed, NotFoundUpstream) as e:
        return JSONResponse(
            status_code=404,
            content=CancelSubscriptionResponse(success=False, error=str(e)).model_dump(exclude_none=True)
        )
    except ProviderUnavailable as e:
        logger.error(f"Failed to cancel subscription for user {user_id}: {e}")
        return JSONResponse(
            status_code=502,
            content=CancelSubscriptionResponse(
                success=False,
                error=f"Failed to cancel subscription in Stripe: {e}"
            ).model_dump(exclude_none=True)
        )

    return CancelSubscriptionResponse(
        success=True,
        subscriptionId=result.subscription_id,
        message="Subscription canceled successfully"
    )


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    request_data: CheckoutSessionRequest,
    billing: BillingClient = Depends(get_billing_client)
):
    """Start a Stripe checkout for the configured price, tagged with the user id"""
    try:
        url = await billing.create_checkout_session(request_data.userId, request_data.email)
    except ProviderUnavailable as e:
        logger.error(f"Failed to create checkout session for user {request_data.userId}: {e}")
        return provider_error_response(e)
    logger.info(f"Created checkout session for user {request_data.userId}")
    return CheckoutSessionResponse(url=url)
