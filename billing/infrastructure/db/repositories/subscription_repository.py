"""
Subscription Repository

Data access layer for subscription persistence.

Every mutating method is a single UPDATE/INSERT statement run in its own
transaction, so a webhook-driven update and a user-driven cancel racing
on the same record never lose each other's writes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.domain.subscription import (
    BillingInterval,
    Subscription,
    SubscriptionPatch,
    SubscriptionStatus,
    SubscriptionTier,
    TERMINAL_STATUSES,
    utcnow,
)
from billing.infrastructure.db.database import get_session_context
from billing.infrastructure.db.models.subscription import SubscriptionModel
from billing.infrastructure.db.models.user import UserModel
from billing.infrastructure.exceptions import (
    DuplicateError,
    InvalidReferenceError,
    NotFoundError,
)


logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


def _as_uuid(value: str, label: str = "id") -> Optional[UUID]:
    """Parse an id, returning None for malformed input."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        logger.debug(f"Malformed {label}: {value!r}")
        return None


class SubscriptionRepository:
    """
    Repository for subscription data access.
    
    Implements the SubscriptionStore contract with domain model mapping.
    
    Args:
        session_factory: Optional session factory (tests inject an
            in-memory engine); defaults to the process-wide pool.
    """
    
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
    
    def _session(self):
        return get_session_context(self._session_factory)
    
    # =========================================================================
    # Query Methods
    # =========================================================================
    
    async def get(self, subscription_id: str) -> Subscription:
        """
        Get subscription by ID.
        
        Raises:
            NotFoundError: if no such subscription exists
        """
        subscription = await self._find(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription with ID {subscription_id} not found",
                operation="get",
                table="subscriptions",
            )
        return subscription
    
    async def get_by_external_id(self, external_id: str) -> Optional[Subscription]:
        """
        Get subscription by provider subscription ID.
        
        Args:
            external_id: Provider-side subscription identifier
            
        Returns:
            Subscription domain model or None
        """
        async with self._session() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.external_id == external_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def get_active_for_user(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        statuses=(SubscriptionStatus.ACTIVE,),
    ) -> Optional[Subscription]:
        """
        Get the user's active subscription (status=active, end_date >= now).
        
        Args:
            statuses: statuses counted as current; widen to ENTITLED_STATUSES
                to include trials
        
        Returns:
            Subscription domain model or None
        """
        user_uuid = _as_uuid(user_id, "user_id")
        if user_uuid is None:
            return None
        
        async with self._session() as session:
            statement = (
                select(SubscriptionModel)
                .where(
                    SubscriptionModel.user_id == user_uuid,
                    SubscriptionModel.status.in_([status.value for status in statuses]),
                    SubscriptionModel.end_date >= (now or utcnow()),
                )
                .order_by(SubscriptionModel.end_date.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def list_for_user(self, user_id: str) -> list[Subscription]:
        """All subscriptions of a user, newest first."""
        user_uuid = _as_uuid(user_id, "user_id")
        if user_uuid is None:
            return []
        
        async with self._session() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.user_id == user_uuid)
                .order_by(SubscriptionModel.created_at.desc())
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]
    
    # =========================================================================
    # Command Methods
    # =========================================================================
    
    async def create(self, subscription: Subscription) -> Subscription:
        """
        Create a new subscription.
        
        Args:
            subscription: Subscription domain model (id is ignored)
            
        Returns:
            Created subscription with ID
            
        Raises:
            InvalidReferenceError: user_id does not resolve to a user
            DuplicateError: external_id already backs another subscription
        """
        user_uuid = _as_uuid(subscription.user_id, "user_id")
        
        async with self._session() as session:
            if user_uuid is None or await session.get(UserModel, user_uuid) is None:
                raise InvalidReferenceError(
                    f"User with ID {subscription.user_id} not found",
                    operation="create",
                    table="users",
                )
            
            model = self._to_model(subscription, user_uuid)
            session.add(model)
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateError(
                    f"Subscription with external ID {subscription.external_id} already exists",
                    operation="create",
                    table="subscriptions",
                    original_error=e,
                )
            
            logger.info(
                f"Created {model.tier} subscription {model.id} for user {model.user_id}"
            )
            return self._to_domain(model)
    
    async def update(self, subscription_id: str, patch: SubscriptionPatch) -> Subscription:
        """
        Apply a partial update in a single statement.
        
        Raises:
            NotFoundError: if no such subscription exists
        """
        updated = await self._conditional_update(
            subscription_id,
            self._patch_values(patch),
            operation="update",
        )
        logger.debug(f"Updated subscription {subscription_id}")
        return updated
    
    async def apply_provider_snapshot(
        self,
        subscription_id: str,
        patch: SubscriptionPatch,
        observed_at: datetime,
    ) -> Optional[Subscription]:
        """
        Overwrite the record with a provider snapshot.
        
        Skipped (returns None) when the record is already terminal or has
        absorbed a snapshot newer than observed_at.
        
        Raises:
            NotFoundError: if no such subscription exists
        """
        values = self._patch_values(patch)
        values["provider_synced_at"] = observed_at
        
        return await self._conditional_update(
            subscription_id,
            values,
            operation="apply_provider_snapshot",
            guard=and_(
                SubscriptionModel.status.not_in(_TERMINAL_VALUES),
                or_(
                    SubscriptionModel.provider_synced_at.is_(None),
                    SubscriptionModel.provider_synced_at <= observed_at,
                ),
            ),
        )
    
    async def mark_canceled(
        self,
        subscription_id: str,
        canceled_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Cancel a subscription atomically.
        
        Sets status=canceled, auto_renew=False and canceled_at (first
        writer wins). Repeat calls on a terminal record change nothing.
        
        Raises:
            NotFoundError: if no such subscription exists
        """
        moment = canceled_at or utcnow()
        values = {
            "status": SubscriptionStatus.CANCELED.value,
            "auto_renew": False,
            "canceled_at": func.coalesce(SubscriptionModel.canceled_at, moment),
        }
        
        updated = await self._conditional_update(
            subscription_id,
            values,
            operation="mark_canceled",
            guard=SubscriptionModel.status.not_in(_TERMINAL_VALUES),
        )
        if updated is None:
            return await self.get(subscription_id)
        
        logger.info(f"Marked subscription {subscription_id} as canceled")
        return updated
    
    async def expire_lapsed(self, now: Optional[datetime] = None) -> list[Subscription]:
        """
        Move non-renewing subscriptions past their end date to expired.
        
        Returns:
            The subscriptions that transitioned in this call
        """
        moment = now or utcnow()
        lapsed = and_(
            SubscriptionModel.status.not_in(_TERMINAL_VALUES),
            SubscriptionModel.auto_renew.is_(False),
            SubscriptionModel.end_date < moment,
        )
        
        async with self._session() as session:
            result = await session.execute(select(SubscriptionModel.id).where(lapsed))
            candidate_ids = list(result.scalars().all())
            if not candidate_ids:
                return []
            
            expired_ids = []
            for candidate_id in candidate_ids:
                # Re-check the guard per row so a concurrent cancel wins.
                stmt = (
                    update(SubscriptionModel)
                    .where(SubscriptionModel.id == candidate_id, lapsed)
                    .values(status=SubscriptionStatus.EXPIRED.value, updated_at=moment)
                    .execution_options(synchronize_session=False)
                )
                if (await session.execute(stmt)).rowcount:
                    expired_ids.append(candidate_id)
            
            if not expired_ids:
                return []
            
            result = await session.execute(
                select(SubscriptionModel).where(SubscriptionModel.id.in_(expired_ids))
            )
            expired = [self._to_domain(model) for model in result.scalars().all()]
        
        logger.info(f"Expired {len(expired)} lapsed subscriptions")
        return expired
    
    async def delete(self, subscription_id: str) -> bool:
        """
        Hard-delete a subscription (administrative only).
        
        Returns:
            True if deleted, False if not found
        """
        sub_uuid = _as_uuid(subscription_id)
        if sub_uuid is None:
            return False
        
        async with self._session() as session:
            result = await session.execute(
                delete(SubscriptionModel)
                .where(SubscriptionModel.id == sub_uuid)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount > 0
        
        if deleted:
            logger.warning(f"Deleted subscription {subscription_id}")
        return deleted
    
    # =========================================================================
    # Internals
    # =========================================================================
    
    async def _find(self, subscription_id: str) -> Optional[Subscription]:
        sub_uuid = _as_uuid(subscription_id)
        if sub_uuid is None:
            return None
        
        async with self._session() as session:
            model = await session.get(SubscriptionModel, sub_uuid)
            return self._to_domain(model) if model else None
    
    async def _conditional_update(
        self,
        subscription_id: str,
        values: dict,
        operation: str,
        guard=None,
    ) -> Optional[Subscription]:
        """
        Run one UPDATE ... WHERE id = :id [AND guard].
        
        Returns the fresh record, or None when the guard rejected the
        write. Raises NotFoundError when the id does not exist.
        """
        sub_uuid = _as_uuid(subscription_id)
        if sub_uuid is None:
            raise NotFoundError(
                f"Subscription with ID {subscription_id} not found",
                operation=operation,
                table="subscriptions",
            )
        
        conditions = [SubscriptionModel.id == sub_uuid]
        if guard is not None:
            conditions.append(guard)
        values = {**values, "updated_at": utcnow()}
        
        async with self._session() as session:
            stmt = (
                update(SubscriptionModel)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            
            model = await session.get(SubscriptionModel, sub_uuid)
            if model is None:
                raise NotFoundError(
                    f"Subscription with ID {subscription_id} not found",
                    operation=operation,
                    table="subscriptions",
                )
            if result.rowcount == 0:
                return None
            return self._to_domain(model)
    
    @staticmethod
    def _patch_values(patch: SubscriptionPatch) -> dict:
        """Column values for the fields explicitly set on a patch."""
        data = patch.model_dump(exclude_unset=True)
        values = {}
        for field, value in data.items():
            if field == "metadata":
                values["extra_metadata"] = value or {}
            elif field == "canceled_at":
                # Set once, never cleared.
                if value is not None:
                    values["canceled_at"] = func.coalesce(SubscriptionModel.canceled_at, value)
            elif field == "auto_renew" and value:
                # A recorded cancellation keeps renewal off.
                if data.get("canceled_at") is not None:
                    values["auto_renew"] = False
                else:
                    values["auto_renew"] = case(
                        (SubscriptionModel.canceled_at.is_(None), True),
                        else_=False,
                    )
            elif isinstance(value, (SubscriptionTier, SubscriptionStatus)):
                values[field] = value.value
            else:
                values[field] = value
        return values
    
    # =========================================================================
    # Mapping Methods
    # =========================================================================
    
    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            user_id=str(model.user_id),
            tier=SubscriptionTier(model.tier),
            status=SubscriptionStatus(model.status),
            billing_interval=BillingInterval(model.billing_interval) if model.billing_interval else None,
            start_date=_aware(model.start_date),
            end_date=_aware(model.end_date),
            auto_renew=bool(model.auto_renew),
            canceled_at=_aware(model.canceled_at),
            external_id=model.external_id,
            price=model.price or 0.0,
            currency=model.currency,
            features=list(model.features or []),
            metadata=dict(model.extra_metadata or {}),
            provider_synced_at=_aware(model.provider_synced_at),
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
        )
    
    def _to_model(self, domain: Subscription, user_uuid: UUID) -> SubscriptionModel:
        """Convert domain entity to database model."""
        auto_renew = domain.auto_renew and domain.canceled_at is None
        return SubscriptionModel(
            user_id=user_uuid,
            tier=domain.tier.value,
            status=domain.status.value,
            billing_interval=domain.billing_interval.value if domain.billing_interval else None,
            start_date=domain.start_date,
            end_date=domain.end_date,
            auto_renew=auto_renew,
            canceled_at=domain.canceled_at,
            external_id=domain.external_id,
            provider_synced_at=domain.provider_synced_at,
            price=domain.price,
            currency=domain.currency,
            features=list(domain.features),
            extra_metadata=dict(domain.metadata),
        )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# Singleton Instance
# =============================================================================

_subscription_repo_instance: Optional[SubscriptionRepository] = None


def get_subscription_repository() -> SubscriptionRepository:
    """Get or create subscription repository singleton."""
    global _subscription_repo_instance
    
    if _subscription_repo_instance is None:
        _subscription_repo_instance = SubscriptionRepository()
    
    return _subscription_repo_instance
