"""Entitlement rules for metered actions (essay generation).

Pure functions over an Account snapshot: no I/O, no mutation. Safe to call
repeatedly and concurrently. Serialization of check + increment lives in
services.metering_service.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel

from models import Account, SubscriptionTier


class EntitlementSource(str, Enum):
    SUBSCRIPTION = "subscription"  # active paid period, not counted
    QUOTA = "quota"                # counted against essays_used < max_essays
    CREDIT = "credit"              # one purchased essay credit


class DenialReason(str, Enum):
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"


class EntitlementDecision(BaseModel):
    allowed: bool
    source: Optional[EntitlementSource] = None
    reason: Optional[DenialReason] = None
    essays_used: int
    max_essays: Optional[int] = None
    essay_credits: int = 0


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def is_paid_period_lapsed(account: Account, now: Optional[datetime] = None) -> bool:
    expiry = account.subscription_expiry
    return expiry is not None and _now(now) > expiry


def _within_quota(account: Account) -> bool:
    if account.max_essays is None:
        return True
    return account.essays_used < account.max_essays


def can_perform_metered_action(account: Account, now: Optional[datetime] = None) -> bool:
    """Tier rule for one more metered action.

    pro: always. essentials: always while the paid period is running, then
    ``essays_used < max_essays``. free: ``essays_used < max_essays``.
    An essentials account past expiry and at its ceiling is denied.
    """
    tier = account.subscription_tier
    if tier == SubscriptionTier.PRO:
        return True
    if tier == SubscriptionTier.ESSENTIALS:
        if is_paid_period_lapsed(account, now):
            return _within_quota(account)
        return True
    return _within_quota(account)


def evaluate_entitlement(account: Account, now: Optional[datetime] = None) -> EntitlementDecision:
    """Decide whether the account may run one metered action, and on what basis.

    Falls back to a purchased essay credit when the tier rule denies.
    """
    base = {
        "essays_used": account.essays_used,
        "max_essays": account.max_essays,
        "essay_credits": account.essay_credits,
    }
    if can_perform_metered_action(account, now):
        tier = account.subscription_tier
        if tier == SubscriptionTier.PRO or (
            tier == SubscriptionTier.ESSENTIALS and not is_paid_period_lapsed(account, now)
        ):
            return EntitlementDecision(allowed=True, source=EntitlementSource.SUBSCRIPTION, **base)
        return EntitlementDecision(allowed=True, source=EntitlementSource.QUOTA, **base)

    if account.essay_credits > 0:
        return EntitlementDecision(allowed=True, source=EntitlementSource.CREDIT, **base)

    reason = DenialReason.QUOTA_EXHAUSTED
    if account.subscription_tier != SubscriptionTier.FREE and is_paid_period_lapsed(account, now):
        reason = DenialReason.SUBSCRIPTION_EXPIRED
    return EntitlementDecision(allowed=False, reason=reason, **base)


def usage_increment(decision: EntitlementDecision) -> Dict[str, int]:
    """``$inc`` fields to record one successful metered action.

    Every quota-backed action is counted, whatever the tier, so a lapsed
    paid account runs down its ceiling like a free one. Actions covered by a
    running subscription are not counted. A consumed credit is decremented.
    """
    if decision.source == EntitlementSource.CREDIT:
        return {"essay_credits": -1}
    if decision.source == EntitlementSource.QUOTA:
        return {"essays_used": 1}
    return {}


def remaining_essays(account: Account, now: Optional[datetime] = None) -> Optional[int]:
    """Essays left before an upgrade is needed; None means unlimited."""
    tier = account.subscription_tier
    if tier == SubscriptionTier.PRO:
        return None
    if tier == SubscriptionTier.ESSENTIALS and not is_paid_period_lapsed(account, now):
        return None
    if account.max_essays is None:
        return None
    return max(account.max_essays - account.essays_used, 0) + account.essay_credits
