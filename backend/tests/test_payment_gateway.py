"""
Charge initiation and cancellation through the PaymentGateway.

Stripe SDK calls are patched with MagicMocks; PayPal runs against an
httpx.MockTransport.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe

from conftest import seed
from models import ChargePurpose, ChargeStatus, PaymentProvider, SubscriptionTier
from services.errors import ConfigurationError, ProviderRejected, ProviderTimeout, ValidationError
from services.payment_gateway import PaymentGateway
from services.paypal_service import PayPalService
from services.stripe_service import stripe_service


@pytest.fixture(autouse=True)
def provider_env(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_gateway")
    monkeypatch.setenv("STRIPE_ESSENTIALS_PRICE_ID", "price_essentials")
    monkeypatch.setenv("STRIPE_PRO_PRICE_ID", "price_pro")
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "client-id")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("PAYPAL_ESSENTIALS_PLAN_ID", "P-ESSENTIALS")
    monkeypatch.setenv("PAYPAL_PRO_PLAN_ID", "P-PRO")


@pytest.fixture
def gateway(repository, ledger):
    return PaymentGateway(repository, ledger)


class PayPalApi:
    """Records requests and answers the order/subscription endpoints."""

    def __init__(self):
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AAtest", "expires_in": 32400})
        self.requests.append((request.method, path, json.loads(request.content) if request.content else None))
        if path == "/v1/billing/subscriptions":
            return httpx.Response(201, json={
                "id": "I-BW452GLLEP1G",
                "status": "APPROVAL_PENDING",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=BA-1"}],
            })
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T"}],
            })
        if path.endswith("/capture"):
            return httpx.Response(201, json={"id": "5O190127TN364715T", "status": "COMPLETED"})
        if path.endswith("/cancel"):
            return httpx.Response(204)
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


@pytest.fixture
def paypal_api():
    api = PayPalApi()
    service = PayPalService(transport=httpx.MockTransport(api.handler))
    with patch("services.payment_gateway.paypal_service", service):
        yield api


class TestStripeCharges:

    @pytest.mark.asyncio
    async def test_essay_payment_uses_quoted_amount(self, gateway, repository, ledger):
        account = seed(repository)
        customer = MagicMock(return_value={"id": "cus_123"})
        intent = MagicMock(return_value={"id": "pi_123", "client_secret": "pi_123_secret_abc"})

        with patch("stripe.Customer.create", customer), patch("stripe.PaymentIntent.create", intent):
            result = await gateway.charge(account, "one_time_essay_charge", "stripe", word_count=4000)

        assert result.amount == 39.99
        assert result.client_secret == "pi_123_secret_abc"
        assert result.provider_reference == "pi_123"
        params = intent.call_args.kwargs
        assert params["amount"] == 3999
        assert params["metadata"]["charge_id"] == result.charge_id
        assert params["metadata"]["account_id"] == account.account_id

        stored = ledger.charges[result.charge_id]
        assert stored.status == ChargeStatus.PENDING
        assert stored.provider_reference == "pi_123"
        assert repository.billing[account.account_id]["stripe_customer_id"] == "cus_123"
        # the tier never changes on charge initiation
        assert repository.accounts[account.account_id]["subscription_tier"] == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_subscription_returns_client_secret(self, gateway, repository):
        account = seed(repository)
        subscription = MagicMock(return_value={
            "id": "sub_123",
            "status": "incomplete",
            "latest_invoice": {"payment_intent": {"client_secret": "seti_secret"}},
        })

        with patch("stripe.Customer.create", MagicMock(return_value={"id": "cus_123"})), \
                patch("stripe.Subscription.create", subscription):
            result = await gateway.charge(account, ChargePurpose.SUBSCRIPTION_CREATE, PaymentProvider.STRIPE, plan="pro")

        assert result.tier == SubscriptionTier.PRO
        assert result.client_secret == "seti_secret"
        params = subscription.call_args.kwargs
        assert params["items"] == [{"price": "price_pro"}]
        assert params["metadata"]["tier"] == "pro"
        assert params["payment_behavior"] == "default_incomplete"

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(self, gateway, repository):
        account = seed(repository)
        repository.billing[account.account_id] = {"account_id": account.account_id, "stripe_customer_id": "cus_old"}
        customer = MagicMock()
        intent = MagicMock(return_value={"id": "pi_1", "client_secret": "s"})

        with patch("stripe.Customer.create", customer), patch("stripe.PaymentIntent.create", intent):
            await gateway.charge(account, "one_time_essay_charge", "stripe", word_count=800)

        customer.assert_not_called()
        assert intent.call_args.kwargs["customer"] == "cus_old"

    @pytest.mark.asyncio
    async def test_declined_card_records_nothing(self, gateway, repository, ledger):
        account = seed(repository)
        declined = MagicMock(side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

        with patch("stripe.Customer.create", MagicMock(return_value={"id": "cus_123"})), \
                patch("stripe.PaymentIntent.create", declined):
            with pytest.raises(ProviderRejected) as exc:
                await gateway.charge(account, "one_time_essay_charge", "stripe", word_count=1200)

        assert exc.value.status_code == 402
        assert ledger.charges == {}
        assert account.account_id not in repository.billing

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_from_rejection(self, gateway, repository, ledger, monkeypatch):
        monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "0.05")
        account = seed(repository)

        async def hanging_customer(*args, **kwargs):
            await asyncio.sleep(1)

        with patch.object(stripe_service, "get_or_create_customer", hanging_customer):
            with pytest.raises(ProviderTimeout) as exc:
                await gateway.charge(account, "one_time_essay_charge", "stripe", word_count=1200)

        assert exc.value.error_code == "PROVIDER_TIMEOUT"
        assert ledger.charges == {}


class TestValidationBeforeProviderCall:

    @pytest.mark.asyncio
    async def test_missing_price_id_is_configuration_error(self, gateway, repository, monkeypatch):
        monkeypatch.delenv("STRIPE_PRO_PRICE_ID")
        account = seed(repository)
        customer = MagicMock()

        with patch("stripe.Customer.create", customer):
            with pytest.raises(ConfigurationError):
                await gateway.charge(account, "subscription_create", "stripe", plan="pro")

        customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_amount_must_match_quote(self, gateway, repository):
        account = seed(repository)
        with pytest.raises(ValidationError):
            await gateway.charge(account, "one_time_essay_charge", "stripe", word_count=4000, amount="29.99")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"purpose": "refund", "provider": "stripe", "word_count": 1000},
        {"purpose": "one_time_essay_charge", "provider": "bitcoin", "word_count": 1000},
        {"purpose": "one_time_essay_charge", "provider": "stripe"},
        {"purpose": "one_time_essay_charge", "provider": "stripe", "word_count": 12000},
        {"purpose": "subscription_create", "provider": "stripe"},
        {"purpose": "subscription_create", "provider": "stripe", "plan": "free"},
    ])
    async def test_invalid_requests(self, gateway, repository, kwargs):
        account = seed(repository)
        with pytest.raises(ValidationError):
            await gateway.charge(account, **kwargs)

    @pytest.mark.asyncio
    async def test_already_subscribed_to_active_tier(self, gateway, repository):
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.ESSENTIALS,
            max_essays=5,
            subscription_expiry=datetime.now(timezone.utc) + timedelta(days=10),
        )
        with pytest.raises(ValidationError):
            await gateway.charge(account, "subscription_create", "stripe", plan="essentials")


class TestPayPalCharges:

    @pytest.mark.asyncio
    async def test_subscription_returns_approval_url(self, gateway, repository, ledger, paypal_api):
        account = seed(repository)
        result = await gateway.charge(account, "subscription_create", "paypal", plan="essentials")

        assert result.approval_url.startswith("https://www.sandbox.paypal.com/")
        assert result.provider_reference == "I-BW452GLLEP1G"
        method, path, body = paypal_api.requests[0]
        assert (method, path) == ("POST", "/v1/billing/subscriptions")
        assert body["plan_id"] == "P-ESSENTIALS"
        assert body["custom_id"] == account.account_id
        assert result.charge_id in ledger.charges

    @pytest.mark.asyncio
    async def test_order_then_capture(self, gateway, repository, paypal_api):
        account = seed(repository)
        result = await gateway.charge(account, "one_time_essay_charge", "paypal", word_count=2600)

        _, _, body = paypal_api.requests[0]
        unit = body["purchase_units"][0]
        assert unit["amount"] == {"currency_code": "USD", "value": "39.99"}
        assert unit["invoice_id"] == result.charge_id

        captured = await gateway.capture_paypal_order(account, result.provider_reference)
        assert captured["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_capture_of_someone_elses_order_rejected(self, gateway, repository, paypal_api):
        owner = seed(repository)
        other = seed(repository, email="other@university.edu")
        result = await gateway.charge(owner, "one_time_essay_charge", "paypal", word_count=600)

        with pytest.raises(ValidationError):
            await gateway.capture_paypal_order(other, result.provider_reference)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_stripe_cancel_sets_pending_and_keeps_tier(self, gateway, repository):
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.PRO,
            max_essays=None,
            subscription_id="sub_123",
            subscription_provider=PaymentProvider.STRIPE,
        )
        modify = MagicMock(return_value={"status": "active", "cancel_at_period_end": True})

        with patch("stripe.Subscription.retrieve", MagicMock(return_value={"status": "active", "cancel_at_period_end": False})), \
                patch("stripe.Subscription.modify", modify):
            result = await gateway.cancel_subscription(account, "sub_123", "stripe")

        assert result["already_canceled"] is False
        assert modify.call_args.kwargs == {"id": "sub_123", "cancel_at_period_end": True}
        doc = repository.accounts[account.account_id]
        assert doc["cancellation_pending"] is True
        assert doc["subscription_tier"] == SubscriptionTier.PRO

    @pytest.mark.asyncio
    async def test_cancel_twice_is_idempotent(self, gateway, repository):
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.ESSENTIALS,
            max_essays=5,
            subscription_id="sub_123",
            subscription_provider=PaymentProvider.STRIPE,
            cancellation_pending=True,
        )
        retrieve = MagicMock()
        with patch("stripe.Subscription.retrieve", retrieve):
            result = await gateway.cancel_subscription(account, "sub_123", "stripe")

        assert result["already_canceled"] is True
        retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_without_active_subscription(self, gateway, repository):
        account = seed(repository)
        result = await gateway.cancel_subscription(account, "sub_gone", "stripe")
        assert result["already_canceled"] is True

    @pytest.mark.asyncio
    async def test_cancel_foreign_subscription_rejected(self, gateway, repository):
        account = seed(repository, subscription_id="sub_mine", subscription_provider=PaymentProvider.STRIPE)
        with pytest.raises(ValidationError):
            await gateway.cancel_subscription(account, "sub_theirs", "stripe")

    @pytest.mark.asyncio
    async def test_paypal_cancel(self, gateway, repository, paypal_api):
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.ESSENTIALS,
            max_essays=5,
            subscription_id="I-BW452GLLEP1G",
            subscription_provider=PaymentProvider.PAYPAL,
        )
        result = await gateway.cancel_subscription(account, "I-BW452GLLEP1G", "paypal")

        assert result["status"] == "CANCELLED"
        assert paypal_api.requests[0][1] == "/v1/billing/subscriptions/I-BW452GLLEP1G/cancel"
        assert repository.accounts[account.account_id]["cancellation_pending"] is True
