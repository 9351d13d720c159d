"""Reconciliation Service - authoritative application of provider webhooks.

Flow for every delivery:
1. Verify authenticity (Stripe signature / PayPal verify-webhook-signature)
2. Normalize into a ProviderEvent
3. Claim (provider, event_id) in payment_events - duplicates stop here
4. Ordering checks against the account's subscription_event_at
5. Apply exactly one transition:
   - one-time payment succeeded   -> +1 essay credit
   - subscription created/updated -> tier, expiry, quota ceiling, subscription id
   - subscription deleted         -> free tier, no expiry, free quota ceiling
   - invoice payment failed       -> no downgrade; recorded for operator follow-up
   - invoice paid / sale completed -> payment recorded, paid period extended
6. Record the outcome (PROCESSED / DEFERRED / STALE / IGNORED / FAILED)

A cancellation for a subscription we have never seen is DEFERRED and replayed
right after that subscription's activation is applied. Events older than the
last applied subscription event are STALE and never applied.
"""
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from models import (
    Account,
    AuditAction,
    ChargeStatus,
    EventKind,
    PaymentEventStatus,
    PaymentProvider,
    ProviderEvent,
    SubscriptionTier,
)
from services.account_repository import AccountRepository
from services.errors import SignatureVerificationFailed, ValidationError
from services.payment_ledger import PaymentLedger
from services.paypal_service import paypal_service
from services.plan_registry import BILLING_PERIOD, plan_registry
from services.stripe_service import stripe_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

Outcome = Tuple[PaymentEventStatus, Dict[str, Any]]

# credit-granting payment events remembered per account
CREDITED_EVENTS_KEPT = 50


class ReconciliationService:

    def __init__(self, repository: AccountRepository, ledger: PaymentLedger):
        self.repository = repository
        self.ledger = ledger

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process_stripe_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        try:
            raw = stripe_service.construct_event(payload, signature)
        except SignatureVerificationFailed as e:
            await self._reject(PaymentProvider.STRIPE, e)
            raise
        return await self.process_event(stripe_service.to_provider_event(raw))

    async def process_paypal_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        try:
            body = json.loads(payload)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        try:
            await paypal_service.verify_webhook(headers, body)
        except SignatureVerificationFailed as e:
            await self._reject(PaymentProvider.PAYPAL, e)
            raise
        return await self.process_event(paypal_service.to_provider_event(body))

    async def _reject(self, provider: PaymentProvider, error: SignatureVerificationFailed) -> None:
        logger.warning("PROVIDER_ERROR provider=%s kind=signature error=%s", provider.value, error.message)
        await create_audit_log(
            action=AuditAction.WEBHOOK_REJECTED,
            actor_id="SYSTEM",
            metadata={"provider": provider.value, "reason": error.message},
        )

    async def process_event(self, event: ProviderEvent) -> Dict[str, Any]:
        """Deduplicate and apply one verified event."""
        if not event.event_id:
            raise ValidationError("Event has no id")

        logger.info(
            "WEBHOOK_RECEIVED provider=%s event_id=%s event_type=%s kind=%s account_id=%s subscription_id=%s",
            event.provider.value, event.event_id, event.event_type, event.kind.value,
            event.account_id, event.subscription_id,
        )

        previous = await self.ledger.claim_event(event)
        if previous is not None:
            logger.info(
                "WEBHOOK_DUPLICATE provider=%s event_id=%s previous_status=%s",
                event.provider.value, event.event_id, previous,
            )
            return {"status": "already_processed", "event_id": event.event_id, "previous_status": previous}

        try:
            status, details = await self._apply(event)
        except Exception as e:
            logger.error(
                "INTERNAL_ERROR op=webhook provider=%s event_id=%s event_type=%s error=%s",
                event.provider.value, event.event_id, event.event_type, e,
                exc_info=True,
            )
            await self.ledger.finish_event(event.provider, event.event_id, PaymentEventStatus.FAILED, error=str(e))
            await create_audit_log(
                action=AuditAction.WEBHOOK_FAILED,
                actor_id="SYSTEM",
                account_id=event.account_id,
                metadata={
                    "provider": event.provider.value,
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "error": str(e),
                },
            )
            raise

        await self.ledger.finish_event(event.provider, event.event_id, status, **details)
        logger.info(
            "WEBHOOK_PROCESSED provider=%s event_id=%s status=%s account_id=%s",
            event.provider.value, event.event_id, status.value, details.get("account_id"),
        )

        if status == PaymentEventStatus.PROCESSED and event.kind == EventKind.SUBSCRIPTION_UPDATED:
            await self._replay_deferred(event)

        return {"status": status.value.lower(), "event_id": event.event_id, **details}

    async def _replay_deferred(self, activation: ProviderEvent) -> None:
        """Apply deferred events for the activated subscription.

        The activation is already committed, so a failing replay is recorded
        as FAILED on its own event rather than failing the activation.
        """
        for deferred in await self.ledger.deferred_events(activation.provider, activation.subscription_id):
            logger.info(
                "WEBHOOK_REPLAY_DEFERRED provider=%s event_id=%s subscription_id=%s",
                deferred.provider.value, deferred.event_id, deferred.subscription_id,
            )
            try:
                status, details = await self._apply(deferred)
            except Exception as e:
                logger.error(
                    "INTERNAL_ERROR op=webhook_replay provider=%s event_id=%s subscription_id=%s error=%s",
                    deferred.provider.value, deferred.event_id, deferred.subscription_id, e,
                    exc_info=True,
                )
                await self.ledger.finish_event(
                    deferred.provider, deferred.event_id, PaymentEventStatus.FAILED, error=str(e)
                )
                await create_audit_log(
                    action=AuditAction.WEBHOOK_FAILED,
                    actor_id="SYSTEM",
                    account_id=deferred.account_id,
                    metadata={
                        "provider": deferred.provider.value,
                        "event_id": deferred.event_id,
                        "event_type": deferred.event_type,
                        "replayed_after": activation.event_id,
                        "error": str(e),
                    },
                )
                continue
            await self.ledger.finish_event(deferred.provider, deferred.event_id, status, **details)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _resolve_account(self, event: ProviderEvent) -> Optional[Account]:
        if event.account_id:
            return await self.repository.get(event.account_id)
        if event.subscription_id:
            account = await self.repository.get_by_subscription(event.subscription_id)
            if account:
                return account
        if event.customer_id and event.provider == PaymentProvider.STRIPE:
            return await self.repository.get_by_stripe_customer(event.customer_id)
        return None

    async def _apply(self, event: ProviderEvent) -> Outcome:
        if event.kind == EventKind.UNHANDLED:
            return PaymentEventStatus.IGNORED, {"reason": "unhandled_event_type"}

        account = await self._resolve_account(event)

        if event.kind == EventKind.SUBSCRIPTION_DELETED:
            return await self._apply_subscription_deleted(account, event)

        if account is None:
            logger.warning(
                "WEBHOOK_ACCOUNT_NOT_FOUND provider=%s event_id=%s account_id=%s subscription_id=%s",
                event.provider.value, event.event_id, event.account_id, event.subscription_id,
            )
            return PaymentEventStatus.IGNORED, {"reason": "account_not_found"}

        handlers = {
            EventKind.ONE_TIME_PAYMENT_SUCCEEDED: self._apply_one_time_payment,
            EventKind.SUBSCRIPTION_UPDATED: self._apply_subscription_updated,
            EventKind.INVOICE_PAYMENT_FAILED: self._apply_invoice_payment_failed,
            EventKind.INVOICE_PAID: self._apply_invoice_paid,
        }
        return await handlers[event.kind](account, event)

    async def _record_payment(self, account_id: str, event: ProviderEvent) -> None:
        await self.repository.update_billing(
            account_id,
            {
                "last_payment_amount": event.amount,
                "last_payment_method": event.provider.value,
                "last_payment_at": event.occurred_at,
                "payment_failure_count": 0,
            },
        )
        if event.charge_id:
            await self.ledger.update_charge(
                event.charge_id,
                {"status": ChargeStatus.SUCCEEDED.value, "provider_event_id": event.event_id},
            )

    async def _apply_one_time_payment(self, account: Account, event: ProviderEvent) -> Outcome:
        # billing and charge writes are overwrites; the credit below is the only increment
        await self._record_payment(account.account_id, event)

        event_key = f"{event.provider.value}:{event.event_id}"
        granted: Dict[str, bool] = {}

        def mutate(current: Account):
            granted.clear()
            if event_key in current.credited_event_ids:
                return None
            granted["credit"] = True
            return {
                "inc": {"essay_credits": 1},
                "set": {"credited_event_ids": (current.credited_event_ids + [event_key])[-CREDITED_EVENTS_KEPT:]},
            }

        updated = await self.repository.apply(account.account_id, mutate)
        if not granted:
            logger.info(
                "WEBHOOK_CREDIT_ALREADY_GRANTED provider=%s event_id=%s account_id=%s",
                event.provider.value, event.event_id, account.account_id,
            )
            return PaymentEventStatus.PROCESSED, {
                "account_id": account.account_id,
                "essay_credits": updated.essay_credits,
            }

        await create_audit_log(
            action=AuditAction.ESSAY_CREDIT_GRANTED,
            actor_id="SYSTEM",
            account_id=account.account_id,
            resource_type="charge",
            resource_id=event.charge_id or event.provider_reference,
            metadata={"provider": event.provider.value, "event_id": event.event_id, "amount": event.amount},
        )
        return PaymentEventStatus.PROCESSED, {
            "account_id": account.account_id,
            "essay_credits": updated.essay_credits,
        }

    async def _apply_subscription_updated(self, account: Account, event: ProviderEvent) -> Outcome:
        outcome: Dict[str, Any] = {}

        def mutate(current: Account):
            if current.subscription_event_at and event.occurred_at < current.subscription_event_at:
                outcome["stale"] = True
                return None
            tier = event.tier
            if tier is None and current.subscription_id == event.subscription_id:
                tier = current.subscription_tier
            if tier is None or tier == SubscriptionTier.FREE:
                outcome["unknown_plan"] = True
                return None
            outcome["tier"] = tier
            return {
                "set": {
                    "subscription_tier": tier.value,
                    "max_essays": plan_registry.quota_for_tier(tier),
                    "subscription_expiry": event.period_end or event.occurred_at + BILLING_PERIOD,
                    "subscription_id": event.subscription_id,
                    "subscription_provider": event.provider.value,
                    "subscription_event_at": event.occurred_at,
                    "cancellation_pending": event.cancel_at_period_end,
                },
                "unset": ["pending_subscription"],
            }

        updated = await self.repository.apply(account.account_id, mutate)
        if outcome.get("stale"):
            logger.warning(
                "WEBHOOK_OUT_OF_ORDER provider=%s event_id=%s account_id=%s occurred_at=%s last_applied=%s",
                event.provider.value, event.event_id, account.account_id,
                event.occurred_at.isoformat(), updated.subscription_event_at,
            )
            return PaymentEventStatus.STALE, {"account_id": account.account_id, "reason": "older_than_last_applied"}
        if outcome.get("unknown_plan"):
            logger.error(
                "WEBHOOK_UNKNOWN_PLAN provider=%s event_id=%s subscription_id=%s (check provider plan id env vars)",
                event.provider.value, event.event_id, event.subscription_id,
            )
            return PaymentEventStatus.IGNORED, {"account_id": account.account_id, "reason": "unknown_plan"}

        if event.charge_id:
            await self.ledger.update_charge(
                event.charge_id,
                {"status": ChargeStatus.SUCCEEDED.value, "provider_event_id": event.event_id},
            )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            actor_id="SYSTEM",
            account_id=account.account_id,
            resource_type="subscription",
            resource_id=event.subscription_id,
            metadata={
                "provider": event.provider.value,
                "event_id": event.event_id,
                "tier": outcome["tier"].value,
                "expiry": updated.subscription_expiry.isoformat() if updated.subscription_expiry else None,
                "cancellation_pending": updated.cancellation_pending,
            },
        )
        return PaymentEventStatus.PROCESSED, {
            "account_id": account.account_id,
            "tier": updated.subscription_tier.value,
        }

    async def _apply_subscription_deleted(self, account: Optional[Account], event: ProviderEvent) -> Outcome:
        if account is None or account.subscription_id != event.subscription_id:
            if await self.ledger.subscription_seen(event.provider, event.subscription_id):
                # an older subscription ended after the account moved on
                return PaymentEventStatus.STALE, {
                    "account_id": account.account_id if account else None,
                    "reason": "subscription_not_current",
                }
            logger.warning(
                "WEBHOOK_DEFERRED provider=%s event_id=%s subscription_id=%s reason=cancellation_before_creation",
                event.provider.value, event.event_id, event.subscription_id,
            )
            return PaymentEventStatus.DEFERRED, {
                "account_id": account.account_id if account else None,
                "reason": "subscription_not_yet_created",
            }

        outcome: Dict[str, Any] = {}

        def mutate(current: Account):
            if current.subscription_id != event.subscription_id:
                outcome["not_current"] = True
                return None
            if current.subscription_event_at and event.occurred_at < current.subscription_event_at:
                outcome["stale"] = True
                return None
            return {
                "set": {
                    "subscription_tier": SubscriptionTier.FREE.value,
                    "max_essays": plan_registry.quota_for_tier(SubscriptionTier.FREE),
                    "subscription_event_at": event.occurred_at,
                    "cancellation_pending": False,
                },
                "unset": ["subscription_expiry", "subscription_id", "subscription_provider", "pending_subscription"],
            }

        await self.repository.apply(account.account_id, mutate)
        if outcome:
            logger.warning(
                "WEBHOOK_OUT_OF_ORDER provider=%s event_id=%s account_id=%s reason=%s",
                event.provider.value, event.event_id, account.account_id, ",".join(outcome),
            )
            return PaymentEventStatus.STALE, {"account_id": account.account_id, "reason": "older_than_last_applied"}

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            actor_id="SYSTEM",
            account_id=account.account_id,
            resource_type="subscription",
            resource_id=event.subscription_id,
            metadata={"provider": event.provider.value, "event_id": event.event_id},
        )
        return PaymentEventStatus.PROCESSED, {
            "account_id": account.account_id,
            "tier": SubscriptionTier.FREE.value,
        }

    async def _apply_invoice_payment_failed(self, account: Account, event: ProviderEvent) -> Outcome:
        # No automatic downgrade: the provider retries and eventually deletes the subscription.
        billing = await self.repository.update_billing(
            account.account_id,
            {"payment_failed_at": event.occurred_at},
            inc_fields={"payment_failure_count": 1},
        )
        logger.warning(
            "PAYMENT_FAILED_FOLLOWUP provider=%s account_id=%s subscription_id=%s amount=%s failure_count=%s",
            event.provider.value, account.account_id, event.subscription_id, event.amount,
            billing.payment_failure_count,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_FAILED,
            actor_id="SYSTEM",
            account_id=account.account_id,
            resource_type="subscription",
            resource_id=event.subscription_id,
            metadata={
                "provider": event.provider.value,
                "event_id": event.event_id,
                "amount": event.amount,
                "failure_count": billing.payment_failure_count,
            },
        )
        return PaymentEventStatus.PROCESSED, {"account_id": account.account_id}

    async def _apply_invoice_paid(self, account: Account, event: ProviderEvent) -> Outcome:
        """Recurring payment: record it and push the paid period forward.

        PayPal signals renewals only through PAYMENT.SALE.COMPLETED, so this is
        where its subscriptions get their next period. Expiry never moves back.
        """
        await self._record_payment(account.account_id, event)
        if not event.subscription_id:
            return PaymentEventStatus.PROCESSED, {"account_id": account.account_id}

        renewed_until = event.period_end or event.occurred_at + BILLING_PERIOD
        renewed: Dict[str, bool] = {}

        def mutate(current: Account):
            renewed.clear()
            if current.subscription_id != event.subscription_id:
                return None
            if current.subscription_tier == SubscriptionTier.FREE:
                return None
            if current.subscription_expiry and current.subscription_expiry >= renewed_until:
                return None
            renewed["expiry"] = True
            return {"set": {"subscription_expiry": renewed_until}}

        await self.repository.apply(account.account_id, mutate)
        if renewed:
            logger.info(
                "SUBSCRIPTION_RENEWED provider=%s account_id=%s subscription_id=%s expiry=%s",
                event.provider.value, account.account_id, event.subscription_id, renewed_until.isoformat(),
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_RENEWED,
                actor_id="SYSTEM",
                account_id=account.account_id,
                resource_type="subscription",
                resource_id=event.subscription_id,
                metadata={
                    "provider": event.provider.value,
                    "event_id": event.event_id,
                    "amount": event.amount,
                    "expiry": renewed_until.isoformat(),
                },
            )
        return PaymentEventStatus.PROCESSED, {"account_id": account.account_id}
