"""Billing Routes - plans, quotes, charges and cancellation.

Endpoints:
- GET /api/billing/plans - Tier catalogue
- GET /api/billing/quote?word_count= - One-time essay price
- POST /api/billing/charge - Start a subscription or one-time essay charge
- POST /api/billing/paypal/capture - Capture an approved PayPal order
- POST /api/billing/cancel - Cancel at period end
- GET /api/billing/status - Tier, usage and billing metadata

None of these endpoints change the subscription tier. Upgrades and
downgrades are applied only when the provider's webhook is reconciled.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from typing import Any, Optional
import logging

from dependencies import get_account_repository, get_account_service, get_payment_gateway
from middleware import get_current_account
from models import Account, ChargePurpose, ChargeResult
from services.account_repository import AccountRepository
from services.account_service import AccountService, to_response
from services.entitlement_service import remaining_essays
from services.payment_gateway import PaymentGateway
from services.plan_registry import plan_registry, CURRENCY

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class ChargeRequest(BaseModel):
    purpose: str
    provider: str
    plan: Optional[str] = None
    word_count: Optional[int] = None
    amount: Optional[Any] = None
    account_id: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CaptureRequest(BaseModel):
    order_id: str


class CancelRequest(BaseModel):
    subscription_id: str
    provider: str


@router.get("/plans")
async def get_plans():
    """Public plan catalogue."""
    return {
        "plans": plan_registry.get_all_plans(),
        "currency": CURRENCY,
    }


@router.get("/quote")
async def get_quote(word_count: int = Query(...)):
    """Per-essay price. Same function the charge path uses."""
    return plan_registry.quote_essay_price(word_count)


@router.post("/charge", response_model=ChargeResult)
async def create_charge(
    body: ChargeRequest,
    account: Account = Depends(get_current_account),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    account_service: AccountService = Depends(get_account_service),
):
    if body.account_id and body.account_id != account.account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot charge another account"
        )

    result = await gateway.charge(
        account,
        purpose=body.purpose,
        provider=body.provider,
        plan=body.plan,
        word_count=body.word_count,
        amount=body.amount,
        return_url=body.return_url,
        cancel_url=body.cancel_url,
    )

    if result.purpose == ChargePurpose.SUBSCRIPTION_CREATE:
        await account_service.mark_subscription_pending(account.account_id, result)
    return result


@router.post("/paypal/capture")
async def capture_paypal_order(
    body: CaptureRequest,
    account: Account = Depends(get_current_account),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return await gateway.capture_paypal_order(account, body.order_id)


@router.post("/cancel")
async def cancel_subscription(
    body: CancelRequest,
    account: Account = Depends(get_current_account),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Cancel at the end of the paid period. The tier is kept until then."""
    result = await gateway.cancel_subscription(account, body.subscription_id, body.provider)
    return {
        **result,
        "message": "Your subscription will end at the close of the current billing period.",
    }


@router.get("/status")
async def get_billing_status(
    account: Account = Depends(get_current_account),
    repository: AccountRepository = Depends(get_account_repository),
):
    billing = await repository.get_billing(account.account_id)
    view = to_response(account)
    return {
        "account_id": account.account_id,
        "subscription_tier": view.subscription_tier,
        "subscription_state": view.subscription_state,
        "subscription_expiry": view.subscription_expiry,
        "subscription_id": view.subscription_id,
        "subscription_provider": view.subscription_provider,
        "cancellation_pending": view.cancellation_pending,
        "pending_subscription": view.pending_subscription,
        "essays_used": view.essays_used,
        "max_essays": view.max_essays,
        "essays_remaining": remaining_essays(account),
        "essay_credits": view.essay_credits,
        "can_write_essay": view.can_write_essay,
        "billing": {
            "stripe_customer_id": billing.stripe_customer_id,
            "last_payment_amount": billing.last_payment_amount,
            "last_payment_method": billing.last_payment_method,
            "last_payment_at": billing.last_payment_at,
            "payment_failed_at": billing.payment_failed_at,
            "payment_failure_count": billing.payment_failure_count,
        },
    }
