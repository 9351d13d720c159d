"""Plan Registry - single source of truth for tiers, quotas and prices.

Authoritative for:
- Essay quota per tier (the quota ceiling is a pure function of tier)
- Subscription display pricing
- Per-essay one-time pricing (used by BOTH the quote endpoint and the charge layer)
- Provider plan/price id mappings (Stripe price ids, PayPal plan ids) from env

Tier Structure:
- free: 2 essays lifetime
- essentials: 5 essays when the paid period has lapsed, unlimited while active ($29.99/mo)
- pro: unlimited ($49.99/mo)
"""
import os
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Any

from models import SubscriptionTier, PaymentProvider
from services.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


BILLING_PERIOD = timedelta(days=30)
CURRENCY = "USD"

MIN_ESSAY_WORDS = 500
MAX_ESSAY_WORDS = 10000


# ============================================================================
# TIER DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[SubscriptionTier, Dict[str, Any]] = {
    SubscriptionTier.FREE: {
        "tier": "free",
        "name": "Free",
        "monthly_price": 0.00,
        "annual_price": 0.00,
        "max_essays": 2,
        "features": [
            "2 free essays",
            "Basic journal search",
            "Standard citations",
        ],
    },
    SubscriptionTier.ESSENTIALS: {
        "tier": "essentials",
        "name": "Essentials",
        "monthly_price": 29.99,
        "annual_price": 299.99,
        "max_essays": 5,
        "features": [
            "Unlimited essays while subscribed",
            "Full journal article search",
            "All citation styles",
            "Priority generation",
        ],
    },
    SubscriptionTier.PRO: {
        "tier": "pro",
        "name": "Pro",
        "monthly_price": 49.99,
        "annual_price": 499.99,
        "max_essays": None,
        "features": [
            "Unlimited essays",
            "Full journal article search",
            "All citation styles",
            "Priority generation",
            "Premium support",
        ],
    },
}

# env var names for provider-side identifiers, keyed by (provider, tier)
PROVIDER_PLAN_ENV = {
    (PaymentProvider.STRIPE, SubscriptionTier.ESSENTIALS): "STRIPE_ESSENTIALS_PRICE_ID",
    (PaymentProvider.STRIPE, SubscriptionTier.PRO): "STRIPE_PRO_PRICE_ID",
    (PaymentProvider.PAYPAL, SubscriptionTier.ESSENTIALS): "PAYPAL_ESSENTIALS_PLAN_ID",
    (PaymentProvider.PAYPAL, SubscriptionTier.PRO): "PAYPAL_PRO_PLAN_ID",
}

# Per-essay price bands: (max words inclusive, price). Last band is open-ended.
ESSAY_PRICE_BANDS = [
    (1000, Decimal("19.99")),
    (2500, Decimal("29.99")),
    (5000, Decimal("39.99")),
    (None, Decimal("49.99")),
]


class PlanRegistry:
    """Lookups over PLAN_DEFINITIONS and provider configuration."""

    def get_plan(self, tier: SubscriptionTier) -> Dict[str, Any]:
        return PLAN_DEFINITIONS[tier]

    def get_all_plans(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in PLAN_DEFINITIONS.values()]

    def get_paid_tiers(self) -> List[SubscriptionTier]:
        return [t for t in SubscriptionTier if t != SubscriptionTier.FREE]

    def quota_for_tier(self, tier: SubscriptionTier) -> Optional[int]:
        """Quota ceiling for a tier; None means unlimited."""
        return PLAN_DEFINITIONS[tier]["max_essays"]

    def resolve_tier(self, value: Any) -> SubscriptionTier:
        if isinstance(value, SubscriptionTier):
            return value
        try:
            return SubscriptionTier(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown plan: {value}")

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def get_essay_price(self, word_count: int) -> Decimal:
        """Canonical one-time price for an essay of ``word_count`` words."""
        if not isinstance(word_count, int) or isinstance(word_count, bool):
            raise ValidationError("word_count must be an integer")
        if word_count < MIN_ESSAY_WORDS or word_count > MAX_ESSAY_WORDS:
            raise ValidationError(
                f"word_count must be between {MIN_ESSAY_WORDS} and {MAX_ESSAY_WORDS}"
            )
        for ceiling, price in ESSAY_PRICE_BANDS:
            if ceiling is None or word_count <= ceiling:
                return price
        raise AssertionError("unreachable")

    def quote_essay_price(self, word_count: int) -> Dict[str, Any]:
        price = self.get_essay_price(word_count)
        return {
            "word_count": word_count,
            "price": float(price),
            "amount_cents": to_minor_units(price),
            "currency": CURRENCY,
        }

    # ------------------------------------------------------------------
    # Provider identifiers
    # ------------------------------------------------------------------

    def get_provider_plan_id(self, provider: PaymentProvider, tier: SubscriptionTier) -> str:
        """Provider price/plan id for a paid tier. Raises ConfigurationError if unset."""
        env_name = PROVIDER_PLAN_ENV.get((provider, tier))
        if env_name is None:
            raise ValidationError(f"Tier {tier.value} cannot be purchased")
        plan_id = (os.getenv(env_name) or "").strip()
        if not plan_id:
            raise ConfigurationError(
                f"{provider.value} plan id not configured for tier {tier.value} (set {env_name})"
            )
        return plan_id

    def get_tier_from_provider_plan_id(
        self, provider: PaymentProvider, plan_id: Optional[str]
    ) -> Optional[SubscriptionTier]:
        if not plan_id:
            return None
        for (p, tier), env_name in PROVIDER_PLAN_ENV.items():
            if p == provider and (os.getenv(env_name) or "").strip() == plan_id:
                return tier
        return None

    def missing_provider_configuration(self) -> List[str]:
        """Env var names for plan ids that are not set."""
        return [name for name in PROVIDER_PLAN_ENV.values() if not (os.getenv(name) or "").strip()]


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


plan_registry = PlanRegistry()
