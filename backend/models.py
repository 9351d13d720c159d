from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionTier(str, Enum):
    FREE = "free"
    ESSENTIALS = "essentials"  # tier-A: fixed monthly quota while active
    PRO = "pro"                # tier-B: unlimited

class PaymentProvider(str, Enum):
    STRIPE = "stripe"  # card network
    PAYPAL = "paypal"  # wallet network

class ChargePurpose(str, Enum):
    SUBSCRIPTION_CREATE = "subscription_create"
    ONE_TIME_ESSAY_CHARGE = "one_time_essay_charge"

class ChargeStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

class SubscriptionState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"

class EventKind(str, Enum):
    ONE_TIME_PAYMENT_SUCCEEDED = "one_time_payment_succeeded"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_PAID = "invoice_paid"
    UNHANDLED = "unhandled"

class PaymentEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    DEFERRED = "DEFERRED"
    STALE = "STALE"
    IGNORED = "IGNORED"
    FAILED = "FAILED"

class CitationStyle(str, Enum):
    APA = "APA"
    MLA = "MLA"
    CHICAGO = "Chicago"
    HARVARD = "Harvard"

class AcademicLevel(str, Enum):
    UNDERGRADUATE = "undergraduate"
    MASTERS = "masters"
    PHD = "phd"

class AuditAction(str, Enum):
    ACCOUNT_REGISTERED = "ACCOUNT_REGISTERED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    ESSAY_GENERATED = "ESSAY_GENERATED"
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"
    CHARGE_INITIATED = "CHARGE_INITIATED"
    CHARGE_FAILED = "CHARGE_FAILED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    ESSAY_CREDIT_GRANTED = "ESSAY_CREDIT_GRANTED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    WEBHOOK_REJECTED = "WEBHOOK_REJECTED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ACCOUNT
# ============================================================================

class Account(BaseModel):
    """Durable account record.

    Instances are immutable snapshots. Writes go through the account
    repository as explicit field-level updates guarded by ``version``.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    account_id: str = Field(default_factory=lambda: f"ACC-{uuid.uuid4().hex[:12].upper()}")
    email: EmailStr
    full_name: str
    password_hash: str

    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    verification_token_hash: Optional[str] = None

    # Subscription (authoritative, written by reconciliation only)
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_expiry: Optional[datetime] = None
    subscription_id: Optional[str] = None
    subscription_provider: Optional[PaymentProvider] = None
    subscription_event_at: Optional[datetime] = None
    cancellation_pending: bool = False

    # Usage
    essays_used: int = 0
    max_essays: Optional[int] = 2  # None = unlimited
    essay_credits: int = 0
    # provider:event_id keys of the payments that granted a credit, newest last
    credited_event_ids: List[str] = Field(default_factory=list)

    # Optimistic, non-authoritative view of an in-flight subscription charge
    pending_subscription: Optional[Dict[str, Any]] = None

    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


class AccountBilling(BaseModel):
    """Provider-specific billing metadata, stored apart from the account."""
    model_config = ConfigDict(extra="ignore")

    account_id: str
    stripe_customer_id: Optional[str] = None
    last_payment_amount: Optional[float] = None
    last_payment_method: Optional[PaymentProvider] = None
    last_payment_at: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    payment_failure_count: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


class AccountCreate(BaseModel):
    email: str  # syntax checked by AccountService, rejected as VALIDATION_ERROR
    password: str = Field(min_length=8)
    full_name: str = Field(min_length=1, max_length=120)

    model_config = {"extra": "ignore"}


class AccountLogin(BaseModel):
    email: EmailStr
    password: str

    model_config = {"extra": "ignore"}


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[str] = None

    model_config = {"extra": "ignore"}


class AccountResponse(BaseModel):
    """Safe account view (no password or token hashes)."""
    account_id: str
    email: str
    full_name: str
    email_verified: bool
    subscription_tier: SubscriptionTier
    subscription_expiry: Optional[datetime] = None
    subscription_id: Optional[str] = None
    subscription_provider: Optional[PaymentProvider] = None
    subscription_state: SubscriptionState
    pending_subscription: Optional[Dict[str, Any]] = None
    cancellation_pending: bool
    essays_used: int
    max_essays: Optional[int] = None
    essay_credits: int
    can_write_essay: bool
    essays_remaining: Optional[int] = None  # None = unlimited
    created_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse
    verification_token: Optional[str] = None


# ============================================================================
# BILLING
# ============================================================================

class ChargeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    charge_id: str = Field(default_factory=lambda: f"CHG-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    purpose: ChargePurpose
    provider: PaymentProvider
    amount: Optional[float] = None
    currency: str = "USD"
    tier: Optional[SubscriptionTier] = None
    word_count: Optional[int] = None
    provider_reference: Optional[str] = None
    status: ChargeStatus = ChargeStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ChargeResult(BaseModel):
    """What the caller needs to finish a charge on the provider side.

    Exactly one of ``client_secret`` (card network) or ``approval_url``
    (wallet network) is set.
    """
    charge_id: str
    provider: PaymentProvider
    purpose: ChargePurpose
    amount: Optional[float] = None
    currency: str = "USD"
    tier: Optional[SubscriptionTier] = None
    provider_reference: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    customer_id: Optional[str] = None


class ProviderEvent(BaseModel):
    """Provider webhook normalized into the fields reconciliation needs."""
    provider: PaymentProvider
    event_id: str
    event_type: str
    kind: EventKind
    occurred_at: datetime
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    tier: Optional[SubscriptionTier] = None
    status: Optional[str] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    amount: Optional[float] = None
    charge_id: Optional[str] = None
    provider_reference: Optional[str] = None
    customer_id: Optional[str] = None


# ============================================================================
# ESSAYS & JOURNALS
# ============================================================================

class EssayRequest(BaseModel):
    title: str = Field(min_length=10, max_length=300)
    description: str = Field(min_length=50, max_length=5000)
    word_count: int = Field(ge=500, le=10000)
    citation_style: CitationStyle = CitationStyle.APA
    citation_frequency: str = Field(default="2", pattern="^[123]$")
    academic_level: AcademicLevel = AcademicLevel.PHD

    model_config = {"extra": "ignore"}


class Essay(BaseModel):
    model_config = ConfigDict(extra="ignore")

    essay_id: str = Field(default_factory=lambda: f"ESY-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    title: str
    description: str
    word_count: int
    citation_style: CitationStyle
    citation_frequency: str
    academic_level: AcademicLevel
    source_requirements: Dict[str, Any]
    content: str
    entitlement_source: str
    created_at: datetime = Field(default_factory=_utcnow)


class JournalSearchRequest(BaseModel):
    query: str = Field(min_length=3, max_length=200)
    field: str = Field(default="all", pattern="^(all|title|abstract|keywords)$")
    sort_by: str = Field(default="relevance", pattern="^(relevance|date|citations)$")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=50)

    model_config = {"extra": "ignore"}


class JournalArticle(BaseModel):
    article_id: str
    title: str
    authors: List[str]
    journal: str
    year: int
    abstract: str
    doi: str
    citations: int
    keywords: List[str]
    url: str


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)
