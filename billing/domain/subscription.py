"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the subscription bounded context.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class SubscriptionTier(str, Enum):
    """Subscription tier levels."""
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class BillingInterval(str, Enum):
    """Billing interval for paid tiers."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UserRole(str, Enum):
    """Roles carried by the caller's token."""
    USER = "user"
    ADMIN = "admin"


# No transition leaves these.
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})

# Statuses that grant the subscribed tier to the user.
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


# Provider (Stripe) subscription status -> internal status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "incomplete": SubscriptionStatus.PENDING,
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Map a provider status string onto the internal vocabulary."""
    return PROVIDER_STATUS_MAP.get(provider_status or "", SubscriptionStatus.PENDING)


def is_terminal(status: SubscriptionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_entitled(status: SubscriptionStatus) -> bool:
    return status in ENTITLED_STATUSES


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Core subscription domain entity."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    billing_interval: Optional[BillingInterval] = None
    start_date: datetime
    end_date: datetime
    auto_renew: bool = False
    canceled_at: Optional[datetime] = None
    external_id: Optional[str] = None
    price: float = 0.0
    currency: str = "usd"
    features: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionPatch(BaseModel):
    """
    Partial update for a subscription.
    
    Only fields explicitly set are written (model_dump(exclude_unset=True)).
    """
    tier: Optional[SubscriptionTier] = None
    status: Optional[SubscriptionStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    auto_renew: Optional[bool] = None
    canceled_at: Optional[datetime] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    features: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None


class User(BaseModel):
    """Projection of the user directory record this engine touches."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: UserRole = UserRole.USER
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE


# =============================================================================
# Command Results
# =============================================================================

class CheckoutResult(BaseModel):
    """Outcome of a start-subscription command."""
    is_free: bool = False
    subscription: Optional[Subscription] = None
    session_id: Optional[str] = None
    url: Optional[str] = None


class CancelResult(BaseModel):
    """Outcome of a cancel command."""
    canceled: bool
    canceled_at_period_end: bool = False


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateCheckoutRequest(BaseModel):
    """Request DTO for starting a subscription."""
    user_id: Optional[str] = Field(
        default=None,
        description="Target user; defaults to the caller. Admins may act for others."
    )
    tier: SubscriptionTier = Field(..., description="Subscription tier to purchase")
    billing_interval: BillingInterval = Field(
        default=BillingInterval.MONTHLY,
        description="Billing interval (monthly or yearly)"
    )
    success_url: Optional[str] = Field(default=None, description="Redirect URL after successful payment")
    cancel_url: Optional[str] = Field(default=None, description="Redirect URL after cancelled payment")


class PortalSessionRequest(BaseModel):
    """Request DTO for creating a billing portal session."""
    user_id: Optional[str] = Field(
        default=None,
        description="Target user; defaults to the caller. Admins may act for others."
    )
    return_url: Optional[str] = Field(default=None, description="URL to return to after portal session")


class CheckoutResponse(BaseModel):
    """Response DTO for a start-subscription command."""
    is_free: bool = False
    subscription: Optional[Subscription] = None
    session_id: Optional[str] = None
    url: Optional[str] = None


class CancelResponse(BaseModel):
    """Response DTO for a cancel command."""
    canceled: bool
    canceled_at_period_end: bool


class PortalResponse(BaseModel):
    """Response DTO for portal session creation."""
    url: str
