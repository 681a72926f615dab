"""
Tier Catalog

Static mapping from subscription tier to price, quotas and feature list.
Subscriptions copy these values at creation time; the catalog itself is
never mutated at runtime.
"""

from typing import Optional, Union
from pydantic import BaseModel, ConfigDict

from billing.domain.subscription import BillingInterval, SubscriptionTier
from billing.infrastructure.exceptions import UnknownTierError


class TierPrice(BaseModel):
    """Price per billing interval, in major currency units."""
    model_config = ConfigDict(frozen=True)

    monthly: float
    yearly: float


class TierQuotas(BaseModel):
    """Usage limits for a tier. None means unlimited."""
    model_config = ConfigDict(frozen=True)

    projects: Optional[int]
    storage_mb: int
    api_calls_per_day: Optional[int]
    team_members: Optional[int]
    support: str


class TierDetails(BaseModel):
    """Full catalog entry for a tier."""
    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    name: str
    price: TierPrice
    quotas: TierQuotas
    features: tuple[str, ...]

    def price_for(self, interval: BillingInterval) -> float:
        if interval == BillingInterval.YEARLY:
            return self.price.yearly
        return self.price.monthly


# =============================================================================
# Tier Configuration (Business Logic)
# =============================================================================

TIER_CATALOG: dict[SubscriptionTier, TierDetails] = {
    SubscriptionTier.FREE: TierDetails(
        tier=SubscriptionTier.FREE,
        name="Free",
        price=TierPrice(monthly=0, yearly=0),
        quotas=TierQuotas(
            projects=1,
            storage_mb=100,
            api_calls_per_day=100,
            team_members=0,
            support="community",
        ),
        features=(
            "Basic features",
            "Community support",
            "Single project",
        ),
    ),
    SubscriptionTier.STARTER: TierDetails(
        tier=SubscriptionTier.STARTER,
        name="Starter",
        price=TierPrice(monthly=9.99, yearly=99.99),
        quotas=TierQuotas(
            projects=3,
            storage_mb=1_000,
            api_calls_per_day=1_000,
            team_members=2,
            support="email",
        ),
        features=(
            "All FREE features",
            "Email support",
            "Up to 3 projects",
            "2 team members",
            "1GB storage",
        ),
    ),
    SubscriptionTier.PROFESSIONAL: TierDetails(
        tier=SubscriptionTier.PROFESSIONAL,
        name="Professional",
        price=TierPrice(monthly=29.99, yearly=299.99),
        quotas=TierQuotas(
            projects=10,
            storage_mb=10_000,
            api_calls_per_day=10_000,
            team_members=5,
            support="priority",
        ),
        features=(
            "All STARTER features",
            "Priority support",
            "Up to 10 projects",
            "5 team members",
            "10GB storage",
            "Advanced analytics",
        ),
    ),
    SubscriptionTier.ENTERPRISE: TierDetails(
        tier=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        price=TierPrice(monthly=99.99, yearly=999.99),
        quotas=TierQuotas(
            projects=None,
            storage_mb=100_000,
            api_calls_per_day=None,
            team_members=None,
            support="dedicated",
        ),
        features=(
            "All PROFESSIONAL features",
            "Dedicated support",
            "Unlimited projects",
            "Unlimited team members",
            "100GB storage",
            "Custom integrations",
            "SLA guarantees",
        ),
    ),
}


def parse_tier(value: Union[str, SubscriptionTier, None]) -> SubscriptionTier:
    """Coerce a raw tier value, raising UnknownTierError for anything outside the enumeration."""
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier(value)
    except ValueError:
        raise UnknownTierError(value)


def tier_details(tier: Union[str, SubscriptionTier]) -> TierDetails:
    """Look up the catalog entry for a tier."""
    details = TIER_CATALOG.get(parse_tier(tier))
    if details is None:
        raise UnknownTierError(tier)
    return details


def feature_snapshot(tier: Union[str, SubscriptionTier]) -> list[str]:
    """Copy of the tier's feature list, detached from the catalog."""
    return list(tier_details(tier).features)


def list_tiers() -> list[TierDetails]:
    """All catalog entries in enumeration order."""
    return [TIER_CATALOG[tier] for tier in SubscriptionTier]
