"""Webhook Routes - Stripe and PayPal.

POST /api/webhooks/stripe - Stripe events (Stripe-Signature verified)
POST /api/webhooks/paypal - PayPal events (verify-webhook-signature)

Responses:
- 200 for applied, deferred, stale, ignored and duplicate events
- 400 for an invalid signature (never applied)
- 503 when the webhook secret / webhook id is not configured
- 500 when processing failed internally; the event is marked FAILED and the
  provider's retry will reclaim it
"""
from fastapi import APIRouter, Depends, Header, Request
import logging

from dependencies import get_reconciliation_service
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payload = await request.body()
    result = await reconciliation.process_stripe_webhook(payload, stripe_signature)
    return {"received": True, **result}


@router.post("/api/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    payload = await request.body()
    result = await reconciliation.process_paypal_webhook(payload, request.headers)
    return {"received": True, **result}
