"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# Skip heavy server startup (MongoDB) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient

from auth import hash_password, issue_session_token
from dependencies import (
    get_account_repository,
    get_essay_store,
    get_payment_ledger,
    get_saved_article_store,
)
from models import (
    Account,
    AccountBilling,
    ChargeRecord,
    Essay,
    PaymentEventStatus,
    PaymentProvider,
    ProviderEvent,
    SubscriptionTier,
)
from server import app
from services.account_repository import AccountRepository
from services.errors import AccountNotFound, ConcurrencyConflict, ValidationError
from services.essay_service import EssayStore
from services.journal_search_service import SavedArticleStore
from services.payment_ledger import TERMINAL_EVENT_STATUSES, PaymentLedger

TEST_PASSWORD = "Password123"


class InMemoryAccountRepository(AccountRepository):
    """Dict-backed AccountRepository with the same version and lock semantics as Mongo."""

    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.billing: Dict[str, Dict[str, Any]] = {}
        self.locks: Dict[str, Dict[str, Any]] = {}
        self.update_calls = 0

    def _find(self, **criteria) -> Optional[Account]:
        for doc in self.accounts.values():
            if all(doc.get(k) == v for k, v in criteria.items()):
                return Account(**doc)
        return None

    async def get(self, account_id):
        doc = self.accounts.get(account_id)
        return Account(**doc) if doc else None

    async def get_by_email(self, email):
        return self._find(email=email.lower())

    async def get_by_subscription(self, subscription_id):
        return self._find(subscription_id=subscription_id)

    async def get_by_verification_token(self, token_hash):
        return self._find(verification_token_hash=token_hash)

    async def get_by_stripe_customer(self, customer_id):
        for account_id, billing in self.billing.items():
            if billing.get("stripe_customer_id") == customer_id:
                return await self.get(account_id)
        return None

    async def insert(self, account):
        if self._find(email=account.email):
            raise ValidationError("Email already registered")
        self.accounts[account.account_id] = account.model_dump()
        return account

    async def update(
        self,
        account_id: str,
        expected_version: int,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
        unset_fields: Optional[Iterable[str]] = None,
    ):
        self.update_calls += 1
        doc = self.accounts.get(account_id)
        if doc is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if doc["version"] != expected_version:
            raise ConcurrencyConflict(f"Account {account_id} changed")
        new_email = (set_fields or {}).get("email")
        if new_email and any(
            other["email"] == new_email and other_id != account_id for other_id, other in self.accounts.items()
        ):
            raise ValidationError("Email already registered")
        doc.update(set_fields or {})
        for field, delta in (inc_fields or {}).items():
            doc[field] = (doc.get(field) or 0) + delta
        for field in unset_fields or []:
            doc[field] = None
        doc["version"] += 1
        doc["updated_at"] = datetime.now(timezone.utc)
        return Account(**doc)

    async def acquire_lock(self, account_id, owner, ttl_seconds):
        now = datetime.now(timezone.utc).timestamp()
        lock = self.locks.get(account_id)
        if lock and lock["until"] > now and lock["owner"] != owner:
            return False
        self.locks[account_id] = {"owner": owner, "until": now + ttl_seconds}
        return True

    async def release_lock(self, account_id, owner):
        lock = self.locks.get(account_id)
        if lock and lock["owner"] == owner:
            del self.locks[account_id]

    async def get_billing(self, account_id):
        doc = self.billing.get(account_id)
        return AccountBilling(**doc) if doc else AccountBilling(account_id=account_id)

    async def update_billing(self, account_id, set_fields=None, inc_fields=None):
        doc = self.billing.setdefault(account_id, {"account_id": account_id})
        doc.update(set_fields or {})
        for field, delta in (inc_fields or {}).items():
            doc[field] = (doc.get(field) or 0) + delta
        doc["updated_at"] = datetime.now(timezone.utc)
        return AccountBilling(**doc)


class InMemoryPaymentLedger(PaymentLedger):

    def __init__(self):
        self.events: Dict[tuple, Dict[str, Any]] = {}
        self.charges: Dict[str, ChargeRecord] = {}

    async def claim_event(self, event: ProviderEvent):
        key = (event.provider.value, event.event_id)
        existing = self.events.get(key)
        if existing and (
            existing["status"] in TERMINAL_EVENT_STATUSES
            or existing["status"] == PaymentEventStatus.PROCESSING.value
        ):
            return existing["status"]
        self.events[key] = {
            "status": PaymentEventStatus.PROCESSING.value,
            "subscription_id": event.subscription_id,
            "occurred_at": event.occurred_at,
            "event": event,
        }
        return None

    async def finish_event(self, provider, event_id, status, **fields):
        record = self.events[(provider.value, event_id)]
        record.update(fields)
        record["status"] = status.value

    async def deferred_events(self, provider, subscription_id):
        records = [
            r for (p, _), r in self.events.items()
            if p == provider.value
            and r["subscription_id"] == subscription_id
            and r["status"] == PaymentEventStatus.DEFERRED.value
        ]
        return [r["event"] for r in sorted(records, key=lambda r: r["occurred_at"])]

    async def subscription_seen(self, provider, subscription_id):
        return any(
            p == provider.value
            and r["subscription_id"] == subscription_id
            and r["status"] == PaymentEventStatus.PROCESSED.value
            for (p, _), r in self.events.items()
        )

    async def record_charge(self, charge):
        self.charges[charge.charge_id] = charge

    async def update_charge(self, charge_id, set_fields):
        charge = self.charges.get(charge_id)
        if charge:
            self.charges[charge_id] = charge.model_copy(update=set_fields)

    async def get_charge(self, charge_id):
        return self.charges.get(charge_id)

    async def get_charge_by_reference(self, provider, reference):
        for charge in self.charges.values():
            if charge.provider == provider and charge.provider_reference == reference:
                return charge
        return None

    def status_of(self, provider: PaymentProvider, event_id: str) -> Optional[str]:
        record = self.events.get((provider.value, event_id))
        return record["status"] if record else None


class InMemoryEssayStore(EssayStore):

    def __init__(self):
        self.essays: List[Essay] = []

    async def insert(self, essay):
        self.essays.append(essay)

    async def get(self, account_id, essay_id):
        for essay in self.essays:
            if essay.essay_id == essay_id and essay.account_id == account_id:
                return essay
        return None

    async def list_for_account(self, account_id, limit=50):
        mine = [e for e in self.essays if e.account_id == account_id]
        return sorted(mine, key=lambda e: e.created_at, reverse=True)[:limit]


class InMemorySavedArticleStore(SavedArticleStore):

    def __init__(self):
        self.saved: Dict[str, List[str]] = {}

    async def is_saved(self, account_id, article_id):
        return article_id in self.saved.get(account_id, [])

    async def save(self, account_id, article_id):
        self.saved.setdefault(account_id, []).append(article_id)

    async def remove(self, account_id, article_id):
        self.saved[account_id].remove(article_id)

    async def list_ids(self, account_id):
        return list(self.saved.get(account_id, []))


def make_account(**overrides) -> Account:
    fields = {
        "email": "student@university.edu",
        "full_name": "Test Student",
        "password_hash": "not-a-real-hash",
        "email_verified": True,
        "subscription_tier": SubscriptionTier.FREE,
        "essays_used": 0,
        "max_essays": 2,
    }
    fields.update(overrides)
    return Account(**fields)


def seed(repository: InMemoryAccountRepository, **overrides) -> Account:
    account = make_account(**overrides)
    repository.accounts[account.account_id] = account.model_dump()
    return account


def auth_headers(account: Account) -> Dict[str, str]:
    token = issue_session_token(account.account_id, account.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def repository():
    return InMemoryAccountRepository()


@pytest.fixture
def ledger():
    return InMemoryPaymentLedger()


@pytest.fixture
def essay_store():
    return InMemoryEssayStore()


@pytest.fixture
def saved_store():
    return InMemorySavedArticleStore()


@pytest.fixture
def password_hash():
    return hash_password(TEST_PASSWORD)


@pytest.fixture
def client(repository, ledger, essay_store, saved_store):
    """TestClient for server:app with in-memory storage behind every route."""
    app.dependency_overrides[get_account_repository] = lambda: repository
    app.dependency_overrides[get_payment_ledger] = lambda: ledger
    app.dependency_overrides[get_essay_store] = lambda: essay_store
    app.dependency_overrides[get_saved_article_store] = lambda: saved_store
    # unhandled errors must surface as HTTP 500, as in production
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
