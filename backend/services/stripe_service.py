"""Stripe Service - card-network payments.

This service handles:
- Customer get-or-create (customer id kept in account billing metadata)
- Subscription creation (payment_behavior=default_incomplete, client secret returned)
- One-time essay PaymentIntents
- Cancel at period end
- Webhook signature verification and event normalization

Key Principles:
- Price ids come from plan_registry only
- Metadata carries account_id and charge_id for webhook correlation
- Stripe exceptions are translated into the typed ProviderError family
"""
import asyncio
import functools
import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from models import Account, EventKind, PaymentProvider, ProviderEvent, SubscriptionTier
from services.errors import (
    ConfigurationError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    SignatureVerificationFailed,
)
from services.plan_registry import plan_registry, to_minor_units

logger = logging.getLogger(__name__)

PROVIDER = PaymentProvider.STRIPE.value

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})
ENDED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})


def _api_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def _webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _get(obj: Any, *path: str) -> Any:
    """Nested lookup over Stripe objects / dicts; None when any hop is missing."""
    for key in path:
        if obj is None:
            return None
        if isinstance(obj, list):
            obj = obj[int(key)] if len(obj) > int(key) else None
            continue
        getter = getattr(obj, "get", None)
        obj = getter(key) if getter else None
    return obj


def _ts(value: Any) -> Optional[datetime]:
    return datetime.fromtimestamp(int(value), tz=timezone.utc) if value else None


class StripeService:
    """Stripe billing operations."""

    def _configure(self) -> None:
        key = _api_key()
        if not key:
            raise ConfigurationError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set")
        stripe.api_key = key

    async def _call(self, operation: str, fn, **params) -> Any:
        """Run a blocking Stripe SDK call off the event loop, translating errors."""
        self._configure()
        try:
            return await asyncio.to_thread(functools.partial(fn, **params))
        except stripe.CardError as e:
            logger.warning("PROVIDER_ERROR provider=stripe kind=rejected op=%s code=%s", operation, e.code)
            raise ProviderRejected(e.user_message or "Card was declined", provider=PROVIDER)
        except stripe.InvalidRequestError as e:
            logger.warning("PROVIDER_ERROR provider=stripe kind=rejected op=%s error=%s", operation, e.user_message or str(e))
            raise ProviderRejected(e.user_message or "Stripe rejected the request", provider=PROVIDER)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error("PROVIDER_ERROR provider=stripe kind=unavailable op=%s error=%s", operation, e)
            raise ProviderUnavailable("Payment provider unreachable", provider=PROVIDER)
        except stripe.StripeError as e:
            logger.error("PROVIDER_ERROR provider=stripe kind=error op=%s error=%s", operation, e)
            raise ProviderError(e.user_message or "Payment provider error", provider=PROVIDER)

    async def get_or_create_customer(self, account: Account, customer_id: Optional[str] = None) -> str:
        if customer_id:
            return customer_id
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            email=account.email,
            name=account.full_name,
            metadata={"account_id": account.account_id, "source": "phd-writer-pro"},
            idempotency_key=f"customer-{account.account_id}",
        )
        logger.info("STRIPE_CUSTOMER_CREATED account_id=%s customer_id=%s", account.account_id, customer["id"])
        return customer["id"]

    async def create_subscription(
        self, account: Account, tier: SubscriptionTier, customer_id: str, charge_id: str
    ) -> Dict[str, Any]:
        price_id = plan_registry.get_provider_plan_id(PaymentProvider.STRIPE, tier)
        subscription = await self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata={"account_id": account.account_id, "tier": tier.value, "charge_id": charge_id},
            idempotency_key=f"subscription-{charge_id}",
        )
        client_secret = (
            _get(subscription, "latest_invoice", "payment_intent", "client_secret")
            or _get(subscription, "latest_invoice", "confirmation_secret", "client_secret")
        )
        if not client_secret:
            raise ProviderError("Stripe did not return a payment confirmation secret", provider=PROVIDER)
        return {
            "subscription_id": subscription["id"],
            "client_secret": client_secret,
            "customer_id": customer_id,
        }

    async def create_payment_intent(
        self, account: Account, amount: Decimal, word_count: int, charge_id: str, customer_id: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": "usd",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "type": "essay_payment",
                "account_id": account.account_id,
                "charge_id": charge_id,
                "word_count": str(word_count),
            },
            "idempotency_key": f"payment-{charge_id}",
        }
        if customer_id:
            params["customer"] = customer_id
        intent = await self._call("payment_intent.create", stripe.PaymentIntent.create, **params)
        return {"payment_intent_id": intent["id"], "client_secret": intent["client_secret"]}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel at period end. Already canceled or already scheduled is success."""
        subscription = await self._call("subscription.retrieve", stripe.Subscription.retrieve, id=subscription_id)
        status = subscription.get("status")
        if status in ENDED_SUBSCRIPTION_STATUSES:
            return {"subscription_id": subscription_id, "status": status, "already_canceled": True}
        if subscription.get("cancel_at_period_end"):
            return {"subscription_id": subscription_id, "status": status, "already_canceled": True}
        updated = await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=True,
        )
        return {"subscription_id": subscription_id, "status": updated.get("status"), "already_canceled": False}

    # =========================================================================
    # Webhooks
    # =========================================================================

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        secret = _webhook_secret()
        if not secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set; refusing unsigned Stripe events")
        if not signature:
            raise SignatureVerificationFailed("Missing Stripe-Signature header", provider=PROVIDER)
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationFailed(f"Invalid Stripe signature: {e}", provider=PROVIDER)
        except ValueError as e:
            raise SignatureVerificationFailed(f"Invalid Stripe payload: {e}", provider=PROVIDER)
        return json.loads(payload)

    def to_provider_event(self, event: Any) -> ProviderEvent:
        event_type = event.get("type") or ""
        obj = _get(event, "data", "object") or {}
        metadata = obj.get("metadata") or {}
        fields: Dict[str, Any] = {
            "provider": PaymentProvider.STRIPE,
            "event_id": event.get("id"),
            "event_type": event_type,
            "kind": EventKind.UNHANDLED,
            "occurred_at": _ts(event.get("created")) or datetime.now(timezone.utc),
            "account_id": metadata.get("account_id"),
            "customer_id": obj.get("customer") if isinstance(obj.get("customer"), str) else None,
        }

        if event_type == "payment_intent.succeeded":
            if metadata.get("type") == "essay_payment":
                fields.update(
                    kind=EventKind.ONE_TIME_PAYMENT_SUCCEEDED,
                    amount=(obj.get("amount_received") or obj.get("amount") or 0) / 100,
                    charge_id=metadata.get("charge_id"),
                    provider_reference=obj.get("id"),
                )

        elif event_type.startswith("customer.subscription."):
            status = obj.get("status")
            price_id = _get(obj, "items", "data", "0", "price", "id")
            tier = plan_registry.get_tier_from_provider_plan_id(PaymentProvider.STRIPE, price_id)
            if tier is None and metadata.get("tier"):
                tier = plan_registry.resolve_tier(metadata["tier"])
            fields.update(
                subscription_id=obj.get("id"),
                status=status,
                tier=tier,
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                period_end=_ts(obj.get("current_period_end") or _get(obj, "items", "data", "0", "current_period_end")),
                charge_id=metadata.get("charge_id"),
            )
            if event_type == "customer.subscription.deleted" or status in ENDED_SUBSCRIPTION_STATUSES:
                fields["kind"] = EventKind.SUBSCRIPTION_DELETED
            elif status in ACTIVE_SUBSCRIPTION_STATUSES:
                fields["kind"] = EventKind.SUBSCRIPTION_UPDATED

        elif event_type in ("invoice.payment_failed", "invoice.paid", "invoice.payment_succeeded"):
            subscription_id = obj.get("subscription")
            if isinstance(subscription_id, dict):
                subscription_id = subscription_id.get("id")
            subscription_id = subscription_id or _get(obj, "parent", "subscription_details", "subscription")
            sub_metadata = (
                _get(obj, "subscription_details", "metadata")
                or _get(obj, "parent", "subscription_details", "metadata")
                or {}
            )
            fields.update(
                subscription_id=subscription_id,
                account_id=fields["account_id"] or sub_metadata.get("account_id"),
                provider_reference=obj.get("id"),
            )
            if event_type == "invoice.payment_failed":
                fields.update(kind=EventKind.INVOICE_PAYMENT_FAILED, amount=(obj.get("amount_due") or 0) / 100)
            else:
                fields.update(kind=EventKind.INVOICE_PAID, amount=(obj.get("amount_paid") or 0) / 100)

        return ProviderEvent(**fields)


stripe_service = StripeService()
