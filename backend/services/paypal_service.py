"""PayPal REST integration - wallet-network payments.

Talks to the PayPal REST API over httpx:
- OAuth2 client-credentials token (cached until shortly before expiry)
- /v1/billing/subscriptions (create, cancel)
- /v2/checkout/orders (create, capture) for one-time essay payments
- /v1/notifications/verify-webhook-signature for webhook authenticity

Transport failures are translated into ProviderTimeout / ProviderUnavailable,
4xx answers into ProviderRejected.
"""
import os
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from models import Account, EventKind, PaymentProvider, ProviderEvent, SubscriptionTier
from services.errors import (
    ConfigurationError,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
    SignatureVerificationFailed,
)
from services.plan_registry import plan_registry

logger = logging.getLogger(__name__)

PROVIDER = PaymentProvider.PAYPAL.value
BRAND_NAME = "PhD Writer Pro"

PAYPAL_API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# transmission headers PayPal signs webhooks with
SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

SUBSCRIPTION_ACTIVE_EVENTS = frozenset({
    "BILLING.SUBSCRIPTION.ACTIVATED",
    "BILLING.SUBSCRIPTION.UPDATED",
    "BILLING.SUBSCRIPTION.RE-ACTIVATED",
})
SUBSCRIPTION_ENDED_EVENTS = frozenset({
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.EXPIRED",
})


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _frontend_url() -> str:
    return (os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")


class PayPalService:
    """PayPal REST API client."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        mode = (os.getenv("PAYPAL_MODE") or "sandbox").strip().lower()
        return PAYPAL_API_BASE.get(mode, PAYPAL_API_BASE["sandbox"])

    @property
    def timeout(self) -> float:
        return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))

    def _credentials(self) -> tuple[str, str]:
        client_id = (os.getenv("PAYPAL_CLIENT_ID") or "").strip()
        client_secret = (os.getenv("PAYPAL_CLIENT_SECRET") or "").strip()
        if not client_id or not client_secret:
            raise ConfigurationError("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET are not set")
        return client_id, client_secret

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _send(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error("PROVIDER_ERROR provider=paypal kind=timeout op=%s", operation)
            raise ProviderTimeout("PayPal did not respond in time", provider=PROVIDER)
        except httpx.TransportError as e:
            logger.error("PROVIDER_ERROR provider=paypal kind=unavailable op=%s error=%s", operation, e)
            raise ProviderUnavailable("PayPal unreachable", provider=PROVIDER)

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        client_id, client_secret = self._credentials()
        response = await self._send(
            "oauth2.token",
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            logger.error("PROVIDER_ERROR provider=paypal kind=rejected op=oauth2.token status=%s", response.status_code)
            raise ConfigurationError("PayPal rejected the configured client credentials")
        body = response.json()
        self._token = body["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _api(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        response = await self._send(operation, method, url, headers=headers, **kwargs)
        if response.status_code >= 500:
            logger.error("PROVIDER_ERROR provider=paypal kind=unavailable op=%s status=%s", operation, response.status_code)
            raise ProviderUnavailable(f"PayPal error {response.status_code}", provider=PROVIDER)
        return response

    @staticmethod
    def _rejected(operation: str, response: httpx.Response) -> ProviderRejected:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") or body.get("name") or f"PayPal rejected the request ({response.status_code})"
        logger.warning(
            "PROVIDER_ERROR provider=paypal kind=rejected op=%s status=%s name=%s",
            operation, response.status_code, body.get("name"),
        )
        return ProviderRejected(message, provider=PROVIDER)

    @staticmethod
    def _approval_url(body: Dict[str, Any]) -> str:
        for link in body.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                return link["href"]
        raise ProviderError("PayPal response is missing the approval link", provider=PROVIDER)

    async def create_subscription(
        self,
        account: Account,
        tier: SubscriptionTier,
        charge_id: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        plan_id = plan_registry.get_provider_plan_id(PaymentProvider.PAYPAL, tier)
        payload = {
            "plan_id": plan_id,
            "custom_id": account.account_id,
            "subscriber": {"email_address": account.email},
            "application_context": {
                "brand_name": BRAND_NAME,
                "user_action": "SUBSCRIBE_NOW",
                "return_url": return_url or f"{_frontend_url()}/subscription/success",
                "cancel_url": cancel_url or f"{_frontend_url()}/pricing",
            },
        }
        response = await self._api(
            "subscription.create", "POST", "/v1/billing/subscriptions",
            json=payload, headers={"PayPal-Request-Id": f"subscription-{charge_id}"},
        )
        if response.status_code not in (200, 201):
            raise self._rejected("subscription.create", response)
        body = response.json()
        return {"subscription_id": body["id"], "approval_url": self._approval_url(body)}

    async def create_order(
        self,
        account: Account,
        amount: Decimal,
        word_count: int,
        charge_id: str,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {"currency_code": "USD", "value": f"{amount:.2f}"},
                    "description": f"PhD Essay Writing - {word_count} words",
                    "custom_id": account.account_id,
                    "invoice_id": charge_id,
                }
            ],
            "application_context": {
                "brand_name": BRAND_NAME,
                "user_action": "PAY_NOW",
                "return_url": return_url or f"{_frontend_url()}/payment/success",
                "cancel_url": cancel_url or f"{_frontend_url()}/essay-writer",
            },
        }
        response = await self._api(
            "order.create", "POST", "/v2/checkout/orders",
            json=payload, headers={"PayPal-Request-Id": f"order-{charge_id}"},
        )
        if response.status_code not in (200, 201):
            raise self._rejected("order.create", response)
        body = response.json()
        return {"order_id": body["id"], "approval_url": self._approval_url(body)}

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """Capture an approved order. An order captured earlier is success."""
        response = await self._api(
            "order.capture", "POST", f"/v2/checkout/orders/{order_id}/capture",
            headers={"PayPal-Request-Id": f"capture-{order_id}"},
        )
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            return {"order_id": order_id, "status": "COMPLETED", "already_captured": True}
        if response.status_code not in (200, 201):
            raise self._rejected("order.capture", response)
        body = response.json()
        return {"order_id": order_id, "status": body.get("status"), "already_captured": False}

    async def cancel_subscription(self, subscription_id: str, reason: str = "Cancelled by subscriber") -> Dict[str, Any]:
        """Cancel a subscription. Already cancelled (422 SUBSCRIPTION_STATUS_INVALID) is success."""
        response = await self._api(
            "subscription.cancel", "POST", f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": reason},
        )
        if response.status_code == 204:
            return {"subscription_id": subscription_id, "status": "CANCELLED", "already_canceled": False}
        if response.status_code == 422 and "SUBSCRIPTION_STATUS_INVALID" in response.text:
            return {"subscription_id": subscription_id, "status": "CANCELLED", "already_canceled": True}
        raise self._rejected("subscription.cancel", response)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def verify_webhook(self, headers: Mapping[str, str], event: Dict[str, Any]) -> None:
        """Ask PayPal to verify a webhook delivery. Raises SignatureVerificationFailed."""
        webhook_id = (os.getenv("PAYPAL_WEBHOOK_ID") or "").strip()
        if not webhook_id:
            raise ConfigurationError("PAYPAL_WEBHOOK_ID is not set; refusing unsigned PayPal events")
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in SIGNATURE_HEADERS.values() if not lowered.get(h)]
        if missing:
            raise SignatureVerificationFailed(
                f"Missing PayPal signature headers: {', '.join(missing)}", provider=PROVIDER
            )
        payload = {field: lowered[header] for field, header in SIGNATURE_HEADERS.items()}
        payload.update({"webhook_id": webhook_id, "webhook_event": event})
        response = await self._api(
            "webhook.verify", "POST", "/v1/notifications/verify-webhook-signature", json=payload
        )
        if response.status_code != 200 or response.json().get("verification_status") != "SUCCESS":
            raise SignatureVerificationFailed("PayPal webhook signature verification failed", provider=PROVIDER)

    def to_provider_event(self, event: Dict[str, Any]) -> ProviderEvent:
        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        fields: Dict[str, Any] = {
            "provider": PaymentProvider.PAYPAL,
            "event_id": event.get("id"),
            "event_type": event_type,
            "kind": EventKind.UNHANDLED,
            "occurred_at": _parse_time(event.get("create_time")) or datetime.now(timezone.utc),
            "account_id": resource.get("custom_id"),
        }

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            fields.update(
                kind=EventKind.ONE_TIME_PAYMENT_SUCCEEDED,
                amount=float((resource.get("amount") or {}).get("value") or 0),
                charge_id=resource.get("invoice_id"),
                provider_reference=(
                    (resource.get("supplementary_data") or {}).get("related_ids", {}).get("order_id")
                    or resource.get("id")
                ),
            )

        elif event_type.startswith("BILLING.SUBSCRIPTION."):
            status = resource.get("status")
            fields.update(
                subscription_id=resource.get("id"),
                status=status,
                tier=plan_registry.get_tier_from_provider_plan_id(PaymentProvider.PAYPAL, resource.get("plan_id")),
                period_end=_parse_time((resource.get("billing_info") or {}).get("next_billing_time")),
            )
            if event_type in SUBSCRIPTION_ENDED_EVENTS:
                fields["kind"] = EventKind.SUBSCRIPTION_DELETED
            elif event_type in SUBSCRIPTION_ACTIVE_EVENTS and status == "ACTIVE":
                fields["kind"] = EventKind.SUBSCRIPTION_UPDATED
            elif event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
                fields["kind"] = EventKind.INVOICE_PAYMENT_FAILED

        elif event_type == "PAYMENT.SALE.COMPLETED":
            fields.update(
                kind=EventKind.INVOICE_PAID,
                subscription_id=resource.get("billing_agreement_id"),
                amount=float((resource.get("amount") or {}).get("total") or 0),
                provider_reference=resource.get("id"),
            )

        return ProviderEvent(**fields)


paypal_service = PayPalService()
