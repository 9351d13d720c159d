"""
Billing API: charge initiation, the pending subscription view, status and cancel.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import auth_headers, seed
from models import ChargePurpose, ChargeResult, PaymentProvider, SubscriptionTier
from services.account_service import AccountService


@pytest.fixture(autouse=True)
def stripe_env(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_routes")
    monkeypatch.setenv("STRIPE_ESSENTIALS_PRICE_ID", "price_essentials")
    monkeypatch.setenv("STRIPE_PRO_PRICE_ID", "price_pro")


@pytest.fixture
def stripe_api():
    mocks = {
        "customer": MagicMock(return_value={"id": "cus_routes"}),
        "subscription": MagicMock(return_value={
            "id": "sub_routes",
            "latest_invoice": {"payment_intent": {"client_secret": "sub_secret"}},
        }),
        "intent": MagicMock(return_value={"id": "pi_routes", "client_secret": "pi_secret"}),
    }
    with patch("stripe.Customer.create", mocks["customer"]), \
            patch("stripe.Subscription.create", mocks["subscription"]), \
            patch("stripe.PaymentIntent.create", mocks["intent"]):
        yield mocks


class TestCharge:

    def test_subscription_charge_marks_pending_without_upgrading(self, client, repository, stripe_api):
        account = seed(repository)
        response = client.post(
            "/api/billing/charge",
            json={"purpose": "subscription_create", "provider": "stripe", "plan": "essentials"},
            headers=auth_headers(account),
        )

        assert response.status_code == 200
        assert response.json()["client_secret"] == "sub_secret"

        me = client.get("/api/auth/me", headers=auth_headers(account)).json()
        assert me["subscription_tier"] == "free"
        assert me["subscription_state"] == "pending"
        assert me["pending_subscription"]["tier"] == "essentials"
        assert me["pending_subscription"]["provider_reference"] == "sub_routes"

    def test_essay_charge_does_not_mark_pending(self, client, repository, stripe_api):
        account = seed(repository)
        response = client.post(
            "/api/billing/charge",
            json={"purpose": "one_time_essay_charge", "provider": "stripe", "word_count": 1800},
            headers=auth_headers(account),
        )

        assert response.status_code == 200
        assert response.json()["amount"] == 29.99
        assert repository.accounts[account.account_id]["pending_subscription"] is None

    def test_charging_another_account_is_forbidden(self, client, repository, stripe_api):
        account = seed(repository)
        response = client.post(
            "/api/billing/charge",
            json={"purpose": "one_time_essay_charge", "provider": "stripe", "word_count": 1800,
                  "account_id": "ACC-SOMEONEELSE"},
            headers=auth_headers(account),
        )
        assert response.status_code == 403
        stripe_api["intent"].assert_not_called()

    def test_missing_configuration_is_503(self, client, repository, stripe_api, monkeypatch):
        monkeypatch.delenv("STRIPE_ESSENTIALS_PRICE_ID")
        account = seed(repository)
        response = client.post(
            "/api/billing/charge",
            json={"purpose": "subscription_create", "provider": "stripe", "plan": "essentials"},
            headers=auth_headers(account),
        )
        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["error_code"] == "BILLING_NOT_CONFIGURED"
        assert detail["request_id"]

    def test_charge_requires_authentication(self, client):
        response = client.post("/api/billing/charge", json={"purpose": "subscription_create", "provider": "stripe"})
        assert response.status_code == 401

    def test_capture_unknown_order(self, client, repository):
        account = seed(repository)
        response = client.post(
            "/api/billing/paypal/capture", json={"order_id": "UNKNOWN"}, headers=auth_headers(account)
        )
        assert response.status_code == 400


class TestPendingSubscription:

    def test_abandoned_checkout_stops_showing_pending(self, client, repository):
        account = seed(repository, pending_subscription={
            "tier": "essentials",
            "provider": "stripe",
            "provider_reference": "sub_abandoned",
            "requested_at": datetime.now(timezone.utc) - timedelta(hours=25),
        })

        me = client.get("/api/auth/me", headers=auth_headers(account)).json()

        assert me["subscription_state"] == "confirmed"
        assert me["pending_subscription"] is None

    def test_recent_checkout_is_pending(self, client, repository):
        account = seed(repository, pending_subscription={
            "tier": "essentials",
            "provider": "stripe",
            "provider_reference": "sub_recent",
            "requested_at": datetime.now(timezone.utc) - timedelta(minutes=5),
        })
        me = client.get("/api/auth/me", headers=auth_headers(account)).json()
        assert me["subscription_state"] == "pending"

    @pytest.mark.asyncio
    async def test_confirmed_subscription_is_not_reopened(self, repository):
        # the activation webhook landed before the charge call returned
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.ESSENTIALS,
            max_essays=5,
            subscription_id="sub_routes",
            subscription_provider=PaymentProvider.STRIPE,
        )
        charge = ChargeResult(
            charge_id="CHG-1",
            provider=PaymentProvider.STRIPE,
            purpose=ChargePurpose.SUBSCRIPTION_CREATE,
            tier=SubscriptionTier.ESSENTIALS,
            provider_reference="sub_routes",
            client_secret="sub_secret",
        )

        updated = await AccountService(repository).mark_subscription_pending(account.account_id, charge)

        assert updated.pending_subscription is None
        assert repository.update_calls == 0


class TestStatus:

    def test_status_reports_usage_and_billing(self, client, repository):
        account = seed(repository, essays_used=1, essay_credits=2)
        repository.billing[account.account_id] = {
            "account_id": account.account_id,
            "stripe_customer_id": "cus_status",
            "last_payment_amount": 19.99,
            "last_payment_method": "stripe",
        }

        data = client.get("/api/billing/status", headers=auth_headers(account)).json()

        assert data["subscription_tier"] == "free"
        assert data["subscription_state"] == "confirmed"
        assert data["essays_used"] == 1
        assert data["essays_remaining"] == 3
        assert data["can_write_essay"] is True
        assert data["billing"]["stripe_customer_id"] == "cus_status"
        assert data["billing"]["last_payment_amount"] == 19.99

    def test_pro_has_unlimited_remaining(self, client, repository):
        account = seed(repository, subscription_tier=SubscriptionTier.PRO, max_essays=None, essays_used=30)
        data = client.get("/api/billing/status", headers=auth_headers(account)).json()
        assert data["essays_remaining"] is None
        assert data["max_essays"] is None


class TestCancel:

    def test_cancel_keeps_tier_until_period_end(self, client, repository):
        account = seed(
            repository,
            subscription_tier=SubscriptionTier.ESSENTIALS,
            max_essays=5,
            subscription_id="sub_cancel",
            subscription_provider=PaymentProvider.STRIPE,
        )
        with patch("stripe.Subscription.retrieve", MagicMock(return_value={"status": "active"})), \
                patch("stripe.Subscription.modify", MagicMock(return_value={"status": "active"})):
            response = client.post(
                "/api/billing/cancel",
                json={"subscription_id": "sub_cancel", "provider": "stripe"},
                headers=auth_headers(account),
            )

        assert response.status_code == 200
        assert "close of the current billing period" in response.json()["message"]
        status = client.get("/api/billing/status", headers=auth_headers(account)).json()
        assert status["subscription_tier"] == "essentials"
        assert status["cancellation_pending"] is True

    def test_cancel_invalid_provider(self, client, repository):
        account = seed(repository, subscription_id="sub_cancel", subscription_provider=PaymentProvider.STRIPE)
        response = client.post(
            "/api/billing/cancel",
            json={"subscription_id": "sub_cancel", "provider": "venmo"},
            headers=auth_headers(account),
        )
        assert response.status_code == 400
