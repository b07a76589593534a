"""FastAPI dependencies resolving the services built at startup"""
from fastapi import Request

from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.services.stripe_service import BillingClient
from reconciler.services.webhook_service import WebhookIngestor


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation


def get_webhook_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.webhook_ingestor


def get_billing_client(request: Request) -> BillingClient:
    return request.app.state.billing
