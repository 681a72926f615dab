"""
Subscription API Routes

REST API endpoints for starting, canceling and inspecting subscriptions.
Domain errors propagate to the exception handlers registered in main.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from billing.api.dependencies import Principal, get_current_user, get_engine, require_admin
from billing.domain.reconciliation import ReconciliationEngine
from billing.domain.subscription import (
    CancelResponse,
    CheckoutResponse,
    CreateCheckoutRequest,
    PortalResponse,
    PortalSessionRequest,
    Subscription,
    SubscriptionTier,
)
from billing.domain.tiers import TierDetails, list_tiers, tier_details


logger = logging.getLogger(__name__)

router = APIRouter()


class MySubscriptionsResponse(BaseModel):
    """Current subscription, its tier terms and history for the caller."""
    active: Optional[Subscription] = None
    tier: SubscriptionTier = SubscriptionTier.FREE
    tier_details: TierDetails
    subscriptions: list[Subscription] = []


def _ensure_can_act_for(principal: Principal, user_id: str) -> None:
    if not principal.can_act_for(user_id):
        logger.warning(f"User {principal.user_id} attempted to act for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to manage another user's subscription",
        )


# =============================================================================
# Catalog & Status Endpoints
# =============================================================================

@router.get("/subscriptions/tiers", response_model=list[TierDetails])
async def get_tiers():
    """List every tier with pricing, quotas and features."""
    return list_tiers()


@router.get("/subscriptions/me", response_model=MySubscriptionsResponse)
async def get_my_subscriptions(
    principal: Principal = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Get the caller's active subscription, tier limits and subscription history."""
    active = await engine.active_subscription(principal.user_id)
    tier = active.tier if active else SubscriptionTier.FREE
    return MySubscriptionsResponse(
        active=active,
        tier=tier,
        tier_details=tier_details(tier),
        subscriptions=await engine.list_subscriptions(principal.user_id),
    )


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
async def get_subscription(
    subscription_id: str,
    principal: Principal = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Get one subscription owned by the caller."""
    subscription = await engine.get_subscription(subscription_id)
    _ensure_can_act_for(principal, subscription.user_id)
    return subscription


# =============================================================================
# Command Endpoints
# =============================================================================

@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    principal: Principal = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Start a subscription.
    
    Free tier activates immediately. Paid tiers return a checkout URL;
    the subscription appears once the payment provider confirms payment.
    """
    user_id = request.user_id or principal.user_id
    _ensure_can_act_for(principal, user_id)
    
    result = await engine.start_subscription(
        user_id,
        request.tier,
        request.billing_interval,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return CheckoutResponse(**result.model_dump())


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CancelResponse)
async def cancel_subscription(
    subscription_id: str,
    at_period_end: bool = Query(default=True, description="Stop renewal instead of canceling now"),
    principal: Principal = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Cancel a subscription now or at the end of the paid period."""
    subscription = await engine.get_subscription(subscription_id)
    _ensure_can_act_for(principal, subscription.user_id)
    
    result = await engine.cancel(subscription_id, at_period_end=at_period_end)
    return CancelResponse(**result.model_dump())


@router.post("/subscriptions/portal", response_model=PortalResponse)
async def create_portal_session(
    request: Optional[PortalSessionRequest] = None,
    principal: Principal = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Create a billing portal session for self-service management."""
    user_id = (request.user_id if request else None) or principal.user_id
    _ensure_can_act_for(principal, user_id)
    
    url = await engine.create_portal_session(
        user_id,
        return_url=request.return_url if request else None,
    )
    return PortalResponse(url=url)


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: str,
    principal: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Hard-delete a subscription record (administrators only)."""
    await engine.delete_subscription(subscription_id)
    logger.info(f"Admin {principal.user_id} deleted subscription {subscription_id}")
