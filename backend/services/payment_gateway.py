"""Payment Gateway - single entry point for initiating charges.

``charge`` turns an internal charge request into provider calls and returns
what the client needs to confirm it (a Stripe client secret or a PayPal
approval URL). It never changes an account's tier: the authoritative upgrade
only happens when the provider's webhook is reconciled.

Rules:
- input is validated (and plan configuration resolved) before any external call
- essay prices come from plan_registry.get_essay_price, the same function the
  quote endpoint uses
- every provider call is bounded by PROVIDER_TIMEOUT_SECONDS and a timeout is
  reported as ProviderTimeout, distinct from ProviderRejected
- nothing is written for a failed charge
"""
import asyncio
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Dict, Optional

from models import (
    Account,
    AuditAction,
    ChargePurpose,
    ChargeRecord,
    ChargeResult,
    PaymentProvider,
    SubscriptionTier,
)
from services.account_repository import AccountRepository
from services.entitlement_service import is_paid_period_lapsed
from services.errors import BillingError, ProviderTimeout, ValidationError
from services.payment_ledger import PaymentLedger
from services.paypal_service import paypal_service
from services.plan_registry import plan_registry
from services.stripe_service import stripe_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def provider_timeout_seconds() -> float:
    return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))


def _enum(enum_cls, value: Any, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label}: {value} (expected one of {allowed})")


class PaymentGateway:

    def __init__(self, repository: AccountRepository, ledger: PaymentLedger):
        self.repository = repository
        self.ledger = ledger

    async def _bounded(self, provider: PaymentProvider, operation: str, coro: Awaitable) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=provider_timeout_seconds())
        except asyncio.TimeoutError:
            logger.error("PROVIDER_ERROR provider=%s kind=timeout op=%s", provider.value, operation)
            raise ProviderTimeout(f"{provider.value} did not respond in time", provider=provider.value)

    async def charge(
        self,
        account: Account,
        purpose: Any,
        provider: Any,
        plan: Optional[str] = None,
        word_count: Optional[int] = None,
        amount: Optional[Any] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ChargeResult:
        purpose = _enum(ChargePurpose, purpose, "purpose")
        provider = _enum(PaymentProvider, provider, "provider")

        tier: Optional[SubscriptionTier] = None
        price: Optional[Decimal] = None
        if purpose == ChargePurpose.SUBSCRIPTION_CREATE:
            if not plan:
                raise ValidationError("plan is required for subscription charges")
            tier = plan_registry.resolve_tier(plan)
            if tier == SubscriptionTier.FREE:
                raise ValidationError("The free tier cannot be purchased")
            if (
                account.subscription_tier == tier
                and not account.cancellation_pending
                and not is_paid_period_lapsed(account)
            ):
                raise ValidationError(f"Account is already subscribed to {tier.value}")
            # raises ConfigurationError before we touch the provider
            plan_registry.get_provider_plan_id(provider, tier)
        else:
            if word_count is None:
                raise ValidationError("word_count is required for essay charges")
            price = plan_registry.get_essay_price(word_count)
            if amount is not None:
                try:
                    requested = Decimal(str(amount))
                except InvalidOperation:
                    raise ValidationError("amount must be a number")
                if requested != price:
                    raise ValidationError(
                        f"amount {requested} does not match the quoted price {price} for {word_count} words"
                    )

        charge = ChargeRecord(
            account_id=account.account_id,
            purpose=purpose,
            provider=provider,
            amount=float(price) if price is not None else float(plan_registry.get_plan(tier)["monthly_price"]),
            tier=tier,
            word_count=word_count,
        )
        logger.info(
            "CHARGE_INITIATING charge_id=%s account_id=%s purpose=%s provider=%s tier=%s amount=%s",
            charge.charge_id, account.account_id, purpose.value, provider.value,
            tier.value if tier else None, charge.amount,
        )

        try:
            result = await self._bounded(
                provider,
                f"charge.{purpose.value}",
                self._initiate(account, charge, price, return_url, cancel_url),
            )
        except BillingError as e:
            await create_audit_log(
                action=AuditAction.CHARGE_FAILED,
                actor_id=account.account_id,
                account_id=account.account_id,
                resource_type="charge",
                resource_id=charge.charge_id,
                metadata={
                    "provider": provider.value,
                    "purpose": purpose.value,
                    "error_code": e.error_code,
                },
            )
            raise

        stored = charge.model_copy(update={"provider_reference": result.provider_reference})
        await self.ledger.record_charge(stored)
        if result.customer_id:
            await self.repository.update_billing(account.account_id, {"stripe_customer_id": result.customer_id})

        await create_audit_log(
            action=AuditAction.CHARGE_INITIATED,
            actor_id=account.account_id,
            account_id=account.account_id,
            resource_type="charge",
            resource_id=charge.charge_id,
            metadata={
                "provider": provider.value,
                "purpose": purpose.value,
                "tier": tier.value if tier else None,
                "amount": charge.amount,
                "provider_reference": result.provider_reference,
            },
        )
        return result

    async def _initiate(
        self,
        account: Account,
        charge: ChargeRecord,
        price: Optional[Decimal],
        return_url: Optional[str],
        cancel_url: Optional[str],
    ) -> ChargeResult:
        base: Dict[str, Any] = {
            "charge_id": charge.charge_id,
            "provider": charge.provider,
            "purpose": charge.purpose,
            "amount": charge.amount,
            "tier": charge.tier,
        }

        if charge.provider == PaymentProvider.STRIPE:
            billing = await self.repository.get_billing(account.account_id)
            customer_id = await stripe_service.get_or_create_customer(account, billing.stripe_customer_id)
            if charge.purpose == ChargePurpose.SUBSCRIPTION_CREATE:
                created = await stripe_service.create_subscription(account, charge.tier, customer_id, charge.charge_id)
                return ChargeResult(
                    **base,
                    provider_reference=created["subscription_id"],
                    client_secret=created["client_secret"],
                    customer_id=customer_id,
                )
            intent = await stripe_service.create_payment_intent(
                account, price, charge.word_count, charge.charge_id, customer_id
            )
            return ChargeResult(
                **base,
                provider_reference=intent["payment_intent_id"],
                client_secret=intent["client_secret"],
                customer_id=customer_id,
            )

        if charge.purpose == ChargePurpose.SUBSCRIPTION_CREATE:
            created = await paypal_service.create_subscription(
                account, charge.tier, charge.charge_id, return_url, cancel_url
            )
            return ChargeResult(
                **base, provider_reference=created["subscription_id"], approval_url=created["approval_url"]
            )
        order = await paypal_service.create_order(
            account, price, charge.word_count, charge.charge_id, return_url, cancel_url
        )
        return ChargeResult(**base, provider_reference=order["order_id"], approval_url=order["approval_url"])

    async def capture_paypal_order(self, account: Account, order_id: str) -> Dict[str, Any]:
        """Capture an approved PayPal order that belongs to ``account``.

        The essay credit itself is granted when PAYMENT.CAPTURE.COMPLETED is
        reconciled.
        """
        charge = await self.ledger.get_charge_by_reference(PaymentProvider.PAYPAL, order_id)
        if charge is None or charge.account_id != account.account_id:
            raise ValidationError("Unknown PayPal order")
        return await self._bounded(
            PaymentProvider.PAYPAL, "order.capture", paypal_service.capture_order(order_id)
        )

    async def cancel_subscription(self, account: Account, subscription_id: str, provider: Any) -> Dict[str, Any]:
        """Request cancellation at the end of the paid period. Idempotent.

        The account keeps its tier and is only flagged ``cancellation_pending``;
        the downgrade is applied when the provider's deletion event arrives.
        """
        provider = _enum(PaymentProvider, provider, "provider")
        if not subscription_id:
            raise ValidationError("subscription_id is required")

        if account.subscription_id != subscription_id:
            if account.subscription_id:
                raise ValidationError("Subscription does not belong to this account")
            # nothing active on this account: the subscription is already gone
            return {"subscription_id": subscription_id, "status": "canceled", "already_canceled": True}
        if account.subscription_provider and account.subscription_provider != provider:
            raise ValidationError(
                f"Subscription {subscription_id} is billed through {account.subscription_provider.value}"
            )
        if account.cancellation_pending:
            return {"subscription_id": subscription_id, "status": "cancellation_pending", "already_canceled": True}

        if provider == PaymentProvider.STRIPE:
            result = await self._bounded(provider, "subscription.cancel", stripe_service.cancel_subscription(subscription_id))
        else:
            result = await self._bounded(provider, "subscription.cancel", paypal_service.cancel_subscription(subscription_id))

        def mutate(current: Account):
            if current.subscription_id != subscription_id or current.cancellation_pending:
                return None
            return {"set": {"cancellation_pending": True}}

        await self.repository.apply(account.account_id, mutate)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_id=account.account_id,
            account_id=account.account_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"provider": provider.value, "already_canceled": result.get("already_canceled", False)},
        )
        logger.info(
            "SUBSCRIPTION_CANCEL_REQUESTED account_id=%s subscription_id=%s provider=%s",
            account.account_id, subscription_id, provider.value,
        )
        return result
