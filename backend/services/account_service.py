"""Account Service

Registration, login, email verification and profile edits for PhD Writer Pro
accounts. All writes go through the AccountRepository as field-level,
version-checked updates.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
import hashlib
import logging
import os
import secrets

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from auth import (
    hash_password,
    issue_session_token,
    read_session_token,
    require_strong_password,
    verify_password,
)
from models import (
    Account,
    AccountCreate,
    AccountLogin,
    AccountResponse,
    AuditAction,
    ChargeResult,
    ProfileUpdate,
    SubscriptionState,
    SubscriptionTier,
)
from services.account_repository import AccountRepository
from services.entitlement_service import evaluate_entitlement, remaining_essays
from services.errors import AccountNotFound, AuthenticationFailed, ValidationError
from services.plan_registry import plan_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


def normalize_email(value: str) -> str:
    """Lowercased email address. Raises ValidationError for a malformed one."""
    try:
        return _email_adapter.validate_python(value.strip()).lower()
    except PydanticValidationError:
        raise ValidationError(f"Invalid email address: {value}")


def new_verification_token() -> Tuple[str, str]:
    """(token mailed to the user, sha256 hash stored on the account)."""
    token = secrets.token_urlsafe(32)
    return token, hash_verification_token(token)


def hash_verification_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def pending_subscription_ttl() -> timedelta:
    """How long an unconfirmed checkout is shown as pending."""
    return timedelta(hours=int(os.getenv("PENDING_SUBSCRIPTION_TTL_HOURS", "24")))


def live_pending_subscription(account: Account, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """The pending checkout, or None once it is older than the TTL (abandoned)."""
    pending = account.pending_subscription
    if not pending:
        return None
    requested_at = pending.get("requested_at")
    if isinstance(requested_at, datetime):
        if requested_at.tzinfo is None:
            requested_at = requested_at.replace(tzinfo=timezone.utc)
        if (now or datetime.now(timezone.utc)) - requested_at > pending_subscription_ttl():
            return None
    return pending


def to_response(account: Account, now: Optional[datetime] = None) -> AccountResponse:
    """Safe view of an account, including the pending/confirmed split."""
    pending = live_pending_subscription(account, now)
    return AccountResponse(
        account_id=account.account_id,
        email=account.email,
        full_name=account.full_name,
        email_verified=account.email_verified,
        subscription_tier=account.subscription_tier,
        subscription_expiry=account.subscription_expiry,
        subscription_id=account.subscription_id,
        subscription_provider=account.subscription_provider,
        subscription_state=SubscriptionState.PENDING if pending else SubscriptionState.CONFIRMED,
        pending_subscription=pending,
        cancellation_pending=account.cancellation_pending,
        essays_used=account.essays_used,
        max_essays=account.max_essays,
        essay_credits=account.essay_credits,
        can_write_essay=evaluate_entitlement(account, now).allowed,
        essays_remaining=remaining_essays(account, now),
        created_at=account.created_at,
    )


def issue_token(account: Account) -> str:
    return issue_session_token(account.account_id, account.email)


class AccountService:
    """Account lifecycle operations."""

    def __init__(self, repository: AccountRepository):
        self.repository = repository

    async def register(self, data: AccountCreate) -> Tuple[Account, str]:
        """Create a free, unverified account. Returns (account, verification_token)."""
        email = normalize_email(data.email)
        if await self.repository.get_by_email(email):
            raise ValidationError("Email already registered")

        require_strong_password(data.password)

        verification_token, token_hash = new_verification_token()
        account = Account(
            email=email,
            full_name=data.full_name.strip(),
            password_hash=hash_password(data.password),
            email_verified=False,
            verification_token_hash=token_hash,
            subscription_tier=SubscriptionTier.FREE,
            essays_used=0,
            max_essays=plan_registry.quota_for_tier(SubscriptionTier.FREE),
        )
        await self.repository.insert(account)

        await create_audit_log(
            action=AuditAction.ACCOUNT_REGISTERED,
            actor_id=account.account_id,
            account_id=account.account_id,
        )
        logger.info(f"New account registered: {account.account_id}")
        return account, verification_token

    async def login(self, data: AccountLogin) -> Account:
        account = await self.repository.get_by_email(data.email.lower())
        if not account or not verify_password(data.password, account.password_hash):
            await create_audit_log(
                action=AuditAction.LOGIN_FAILED,
                account_id=account.account_id if account else None,
                metadata={"reason": "invalid_credentials"},
            )
            raise AuthenticationFailed("Invalid email or password")

        account = await self.repository.apply(
            account.account_id, lambda a: {"set": {"last_login_at": datetime.now(timezone.utc)}}
        )
        await create_audit_log(
            action=AuditAction.LOGIN_SUCCESS,
            actor_id=account.account_id,
            account_id=account.account_id,
        )
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await self.repository.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    async def get_current_account(self, token: str) -> Optional[Account]:
        account_id = read_session_token(token)
        if account_id is None:
            return None
        return await self.repository.get(account_id)

    async def verify_email(self, token: str) -> Account:
        """Complete email verification. Verifying twice is a no-op."""
        if not token:
            raise ValidationError("Verification token is required")
        account = await self.repository.get_by_verification_token(hash_verification_token(token))
        if account is None:
            raise ValidationError("Invalid or expired verification token")

        if account.email_verified:
            return account

        def mutate(current: Account):
            if current.email_verified:
                return None
            return {"set": {"email_verified": True, "email_verified_at": datetime.now(timezone.utc)}}

        account = await self.repository.apply(account.account_id, mutate)
        await create_audit_log(
            action=AuditAction.EMAIL_VERIFIED,
            actor_id=account.account_id,
            account_id=account.account_id,
        )
        return account

    async def update_profile(self, account_id: str, data: ProfileUpdate) -> Account:
        """Update display name and/or email (field-level, version-checked)."""
        changes = {}
        if data.full_name is not None:
            changes["full_name"] = data.full_name.strip()
        if data.email is not None:
            email = normalize_email(data.email)
            existing = await self.repository.get_by_email(email)
            if existing and existing.account_id != account_id:
                raise ValidationError("Email already registered")
            changes["email"] = email
        if not changes:
            raise ValidationError("Nothing to update")

        def mutate(current: Account):
            fields = {k: v for k, v in changes.items() if getattr(current, k) != v}
            return {"set": fields} if fields else None

        account = await self.repository.apply(account_id, mutate)
        await create_audit_log(
            action=AuditAction.PROFILE_UPDATED,
            actor_id=account_id,
            account_id=account_id,
            metadata={"fields": sorted(changes)},
        )
        return account

    async def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        account = await self.get_account(account_id)
        if not verify_password(current_password, account.password_hash):
            raise ValidationError("Current password is incorrect")

        require_strong_password(new_password)

        new_hash = hash_password(new_password)
        await self.repository.apply(account_id, lambda a: {"set": {"password_hash": new_hash}})
        await create_audit_log(
            action=AuditAction.PASSWORD_CHANGED,
            actor_id=account_id,
            account_id=account_id,
        )

    async def mark_subscription_pending(self, account_id: str, charge: ChargeResult) -> Account:
        """Record the optimistic "pending" state after a subscription charge starts.

        Entitlement never reads this; reconciliation clears it when the
        provider confirms (or cancels) the subscription. An abandoned checkout
        stops showing as pending after PENDING_SUBSCRIPTION_TTL_HOURS.
        """
        pending = {
            "tier": charge.tier.value if charge.tier else None,
            "provider": charge.provider.value,
            "charge_id": charge.charge_id,
            "provider_reference": charge.provider_reference,
            "requested_at": datetime.now(timezone.utc),
        }

        def mutate(current: Account):
            # the webhook can land before this write; never re-open a confirmed subscription
            if charge.provider_reference and current.subscription_id == charge.provider_reference:
                return None
            return {"set": {"pending_subscription": pending}}

        return await self.repository.apply(account_id, mutate)
