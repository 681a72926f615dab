"""
User Tier Projector

Copies the authoritative subscription tier onto the user's denormalized
subscription_tier field. Best effort: the subscription row is already
committed when this runs, so failures are logged and swallowed.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from billing.domain.subscription import ENTITLED_STATUSES, SubscriptionTier
from billing.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from billing.infrastructure.db.repositories.user_repository import UserRepository
from billing.infrastructure.exceptions import BillingError


logger = logging.getLogger(__name__)


class UserTierProjector:
    """Propagates subscription tiers onto user profiles."""
    
    def __init__(self, users: UserRepository, subscriptions: SubscriptionRepository):
        self._users = users
        self._subscriptions = subscriptions
    
    async def project(self, user_id: str, tier: SubscriptionTier) -> bool:
        """
        Push a tier onto the user profile.
        
        Returns:
            True if the write landed, False if it failed (already logged)
        """
        try:
            await self._users.update_tier(user_id, tier)
            return True
        except (BillingError, SQLAlchemyError) as e:
            logger.warning(
                f"Could not project tier {tier.value} onto user {user_id}: {e}"
            )
            return False
    
    async def resync(self, user_id: str) -> bool:
        """
        Derive the tier from the user's active or trialing subscription
        (FREE if none) and project it.
        """
        try:
            active = await self._subscriptions.get_active_for_user(
                user_id, statuses=ENTITLED_STATUSES
            )
        except (BillingError, SQLAlchemyError) as e:
            logger.warning(f"Could not resolve active subscription for user {user_id}: {e}")
            return False
        
        tier = active.tier if active else SubscriptionTier.FREE
        return await self.project(user_id, tier)
