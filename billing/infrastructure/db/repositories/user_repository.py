"""
User Repository

Read access to the user directory plus the single write the billing
engine performs on it: the denormalized subscription tier.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.domain.subscription import SubscriptionTier, User, UserRole
from billing.infrastructure.db.database import get_session_context
from billing.infrastructure.db.models.user import UserModel
from billing.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


class UserRepository:
    """Repository for the user directory collaborator."""
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
    
    async def find_by_id(self, user_id: str) -> Optional[User]:
        """
        Get a user by ID.
        
        Returns:
            User or None if not found (including malformed IDs)
        """
        try:
            user_uuid = UUID(str(user_id))
        except ValueError:
            return None
        
        async with get_session_context(self._session_factory) as session:
            model = await session.get(UserModel, user_uuid)
            if model is None:
                return None
            return User(
                id=str(model.id),
                email=model.email,
                role=UserRole(model.role),
                subscription_tier=SubscriptionTier(model.subscription_tier),
            )
    
    async def update_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        """
        Write the user's denormalized subscription tier.
        
        Raises:
            NotFoundError: if the user does not exist
        """
        try:
            user_uuid = UUID(str(user_id))
        except ValueError:
            user_uuid = None
        
        async with get_session_context(self._session_factory) as session:
            rowcount = 0
            if user_uuid is not None:
                result = await session.execute(
                    update(UserModel)
                    .where(UserModel.id == user_uuid)
                    .values(subscription_tier=tier.value)
                    .execution_options(synchronize_session=False)
                )
                rowcount = result.rowcount
        
        if not rowcount:
            raise NotFoundError(
                f"User with ID {user_id} not found",
                operation="update_tier",
                table="users",
            )
        logger.info(f"Set subscription tier {tier.value} on user {user_id}")


_user_repo_instance: Optional[UserRepository] = None


def get_user_repository() -> UserRepository:
    """Get or create user repository singleton."""
    global _user_repo_instance
    
    if _user_repo_instance is None:
        _user_repo_instance = UserRepository()
    
    return _user_repo_instance
