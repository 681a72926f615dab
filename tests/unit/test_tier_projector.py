"""
Unit tests for UserTierProjector.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.exc import OperationalError

from billing.domain.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from billing.domain.tier_projector import UserTierProjector
from billing.infrastructure.exceptions import NotFoundError


class TestUserTierProjector:
    
    async def test_project_writes_tier(self, projector, user_repo, user_id):
        assert await projector.project(user_id, SubscriptionTier.STARTER) is True
        
        user = await user_repo.find_by_id(user_id)
        assert user.subscription_tier == SubscriptionTier.STARTER
    
    async def test_project_missing_user_is_swallowed(self, projector):
        assert await projector.project(
            "00000000-0000-0000-0000-00000000beef", SubscriptionTier.STARTER
        ) is False
    
    async def test_project_database_failure_is_swallowed(self):
        users = MagicMock()
        users.update_tier = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))
        projector = UserTierProjector(users, MagicMock())
        
        assert await projector.project("user-1", SubscriptionTier.FREE) is False
    
    async def test_resync_uses_active_subscription(
        self, projector, subscription_repo, user_repo, user_id,
    ):
        now = datetime.now(timezone.utc)
        await subscription_repo.create(
            Subscription(
                user_id=user_id,
                tier=SubscriptionTier.ENTERPRISE,
                status=SubscriptionStatus.ACTIVE,
                start_date=now,
                end_date=now + timedelta(days=30),
            )
        )
        
        assert await projector.resync(user_id) is True
        
        user = await user_repo.find_by_id(user_id)
        assert user.subscription_tier == SubscriptionTier.ENTERPRISE
    
    async def test_resync_without_subscription_falls_back_to_free(
        self, projector, user_repo, user_id,
    ):
        await projector.project(user_id, SubscriptionTier.PROFESSIONAL)
        
        await projector.resync(user_id)
        
        user = await user_repo.find_by_id(user_id)
        assert user.subscription_tier == SubscriptionTier.FREE
    
    async def test_resync_lookup_failure_is_swallowed(self):
        subscriptions = MagicMock()
        subscriptions.get_active_for_user = AsyncMock(side_effect=NotFoundError("gone"))
        users = MagicMock()
        users.update_tier = AsyncMock()
        projector = UserTierProjector(users, subscriptions)
        
        assert await projector.resync("user-1") is False
        users.update_tier.assert_not_called()
