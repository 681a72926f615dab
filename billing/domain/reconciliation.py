"""
Subscription Reconciliation Engine

Keeps local subscription records consistent with the payment provider's
asynchronous, at-least-once, out-of-order webhook stream, and runs the
user-initiated commands (start, cancel, billing portal).

Webhook application below the signature check never raises: every
failure is logged and acknowledged, because an unacknowledged event is
redelivered indefinitely without making progress.

Handled events:
- checkout.session.completed / async_payment_succeeded: materialize the subscription
- customer.subscription.created / updated: apply the provider snapshot
- customer.subscription.deleted: finalize cancellation
- payment_intent.* / invoice.*: logged only, never transition status
"""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from billing.config.settings import Settings, get_settings
from billing.domain.subscription import (
    ENTITLED_STATUSES,
    BillingInterval,
    CancelResult,
    CheckoutResult,
    Subscription,
    SubscriptionPatch,
    SubscriptionStatus,
    SubscriptionTier,
    is_entitled,
    is_terminal,
    map_provider_status,
    utcnow,
)
from billing.domain.tier_projector import UserTierProjector
from billing.domain.tiers import feature_snapshot, parse_tier, tier_details
from billing.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from billing.infrastructure.db.repositories.user_repository import (
    UserRepository,
    get_user_repository,
)
from billing.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
    get_webhook_event_repository,
)
from billing.infrastructure.exceptions import (
    DuplicateError,
    InvalidReferenceError,
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentProviderError,
    SubscriptionConflictError,
    UnknownTierError,
    ValidationError,
)
from billing.infrastructure.payments.stripe_service import (
    ProviderEvent,
    ProviderSubscription,
    StripeService,
    get_stripe_service,
)


logger = logging.getLogger(__name__)


class EventOutcome(str, Enum):
    """Result of applying one provider event. Always acknowledged."""
    PROCESSED = "success"
    IGNORED = "ignored"
    DEFERRED = "deferred"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "error"


# Outcomes recorded in the idempotency ledger. Deferred and failed events
# stay unrecorded so a redelivery is applied again.
FINAL_OUTCOMES = frozenset({
    EventOutcome.PROCESSED,
    EventOutcome.IGNORED,
    EventOutcome.ALREADY_PROCESSED,
})

CHECKOUT_COMPLETED_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})
SUBSCRIPTION_CHANGED_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
})
SUBSCRIPTION_DELETED_EVENT = "customer.subscription.deleted"
CHARGE_SUCCEEDED_EVENTS = frozenset({
    "payment_intent.succeeded",
    "invoice.payment_succeeded",
    "invoice.paid",
})
CHARGE_FAILED_EVENTS = frozenset({
    "payment_intent.payment_failed",
    "invoice.payment_failed",
})

_INTERVAL_LENGTH = {
    BillingInterval.MONTHLY: timedelta(days=30),
    BillingInterval.YEARLY: timedelta(days=365),
}


def _coerce_interval(value: Union[str, BillingInterval, None]) -> BillingInterval:
    if isinstance(value, BillingInterval):
        return value
    try:
        return BillingInterval(value)
    except ValueError:
        raise ValidationError(
            f"Unknown billing interval {value!r}",
            details={"billing_interval": str(value)},
        )


def _object_id(value) -> Optional[str]:
    """Provider references may arrive as ids or as expanded objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class ReconciliationEngine:
    """
    Subscription state machine.
    
    pending -> active -> {past_due, canceled, expired}; trialing is an
    initial provider state. canceled and expired are terminal.
    
    Args:
        subscriptions: SubscriptionStore
        gateway: ProviderGateway
        projector: UserTierProjector
        users: User directory
        events: Webhook idempotency ledger
        settings: Application settings
    """
    
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        gateway: StripeService,
        projector: UserTierProjector,
        users: UserRepository,
        events: WebhookEventRepository,
        settings: Optional[Settings] = None,
    ):
        self._subscriptions = subscriptions
        self._gateway = gateway
        self._projector = projector
        self._users = users
        self._events = events
        self._settings = settings or get_settings()
        # Serializes per-user decisions that must not create two active records.
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._handlers = {
            **{name: self._on_checkout_completed for name in CHECKOUT_COMPLETED_EVENTS},
            **{name: self._on_subscription_changed for name in SUBSCRIPTION_CHANGED_EVENTS},
            SUBSCRIPTION_DELETED_EVENT: self._on_subscription_deleted,
            **{name: self._on_charge_succeeded for name in CHARGE_SUCCEEDED_EVENTS},
            **{name: self._on_charge_failed for name in CHARGE_FAILED_EVENTS},
        }
    
    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock
    
    # =========================================================================
    # Webhooks
    # =========================================================================
    
    async def handle_webhook(self, payload: bytes, signature: str) -> EventOutcome:
        """
        Verify, deduplicate and apply one webhook delivery.
        
        Raises:
            InvalidSignatureError: the only failure that escapes; nothing
                is read or written before verification succeeds
        """
        event = self._gateway.verify_event(payload, signature)
        logger.info(f"Webhook event received: {event.type} ({event.id})")
        
        if event.id and await self._already_processed(event.id):
            logger.info(f"Event {event.id} already processed, skipping")
            return EventOutcome.ALREADY_PROCESSED
        
        outcome = await self.apply_event(event)
        
        if event.id and outcome in FINAL_OUTCOMES:
            try:
                await self._events.mark_processed(event.id, event.type)
            except SQLAlchemyError as e:
                logger.warning(f"Could not record event {event.id} as processed: {e}")
        
        return outcome
    
    async def _already_processed(self, event_id: str) -> bool:
        try:
            return await self._events.is_processed(event_id)
        except SQLAlchemyError as e:
            # Application is idempotent, so carry on without the ledger.
            logger.warning(f"Idempotency ledger unavailable for event {event_id}: {e}")
            return False
    
    async def apply_event(self, event: ProviderEvent) -> EventOutcome:
        """Apply a verified event. Never raises."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.type}")
            return EventOutcome.IGNORED
        
        try:
            return await handler(event)
        except Exception:
            logger.exception(f"Error handling webhook event {event.type} ({event.id})")
            return EventOutcome.FAILED
    
    async def _on_checkout_completed(self, event: ProviderEvent) -> EventOutcome:
        """Materialize the subscription once the checkout is paid."""
        session = event.data
        session_id = session.get("id")
        
        if session.get("payment_status") != "paid":
            logger.info(f"Checkout session {session_id} not yet paid")
            return EventOutcome.DEFERRED
        
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        tier_value = metadata.get("tier")
        if not user_id or not tier_value:
            logger.error(f"Missing metadata in checkout session {session_id}")
            return EventOutcome.IGNORED
        
        try:
            tier = parse_tier(tier_value)
        except UnknownTierError:
            logger.error(f"Unknown tier {tier_value!r} in checkout session {session_id}")
            return EventOutcome.IGNORED
        
        external_id = _object_id(session.get("subscription"))
        if not external_id:
            logger.error(f"Checkout session {session_id} carries no subscription")
            return EventOutcome.IGNORED
        
        try:
            interval = _coerce_interval(metadata.get("billing_interval") or BillingInterval.MONTHLY)
        except ValidationError:
            interval = BillingInterval.MONTHLY
        
        if await self._subscriptions.get_by_external_id(external_id):
            logger.info(f"Subscription {external_id} already materialized")
            return EventOutcome.ALREADY_PROCESSED
        
        provider_subscription = await self._gateway.retrieve_subscription(external_id)
        subscription = self._materialize(
            user_id, tier, interval, provider_subscription, event, session_id
        )
        
        async with self._lock_for(user_id):
            previous = await self._subscriptions.get_active_for_user(
                user_id, statuses=ENTITLED_STATUSES
            )
            try:
                created = await self._subscriptions.create(subscription)
            except DuplicateError:
                logger.info(f"Subscription {external_id} created concurrently, skipping")
                return EventOutcome.ALREADY_PROCESSED
            except InvalidReferenceError:
                logger.error(f"Checkout session {session_id} references unknown user {user_id}")
                return EventOutcome.IGNORED
        
        if previous is not None and previous.external_id != external_id:
            await self._supersede(previous, created)
        
        if is_entitled(created.status):
            await self._projector.project(user_id, created.tier)
        else:
            await self._projector.resync(user_id)
        
        logger.info(f"Subscription created for user {user_id}: {created.id} ({created.status.value})")
        return EventOutcome.PROCESSED
    
    def _materialize(
        self,
        user_id: str,
        tier: SubscriptionTier,
        interval: BillingInterval,
        provider_subscription: ProviderSubscription,
        event: ProviderEvent,
        session_id: Optional[str],
    ) -> Subscription:
        """Build a new record from the fetched provider subscription."""
        details = tier_details(tier)
        status = map_provider_status(provider_subscription.status)
        start = provider_subscription.current_period_start or event.created
        end = provider_subscription.current_period_end or start + _INTERVAL_LENGTH[interval]
        canceled_at = provider_subscription.canceled_at
        if status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = event.created
        
        return Subscription(
            user_id=user_id,
            tier=tier,
            status=status,
            billing_interval=interval,
            start_date=start,
            end_date=end,
            auto_renew=(
                not provider_subscription.cancel_at_period_end
                and canceled_at is None
                and not is_terminal(status)
            ),
            canceled_at=canceled_at,
            external_id=provider_subscription.id,
            price=(
                provider_subscription.unit_amount
                if provider_subscription.unit_amount is not None
                else details.price_for(interval)
            ),
            currency=provider_subscription.currency or self._gateway.currency,
            features=feature_snapshot(tier),
            metadata={"checkout_session_id": session_id} if session_id else {},
            provider_synced_at=event.created,
        )
    
    async def _supersede(self, previous: Subscription, replacement: Subscription) -> None:
        """
        Cancel the user's older active record so only one stays active.
        
        A provider-backed record is also canceled at the provider
        immediately; a provider failure is logged only.
        """
        await self._subscriptions.mark_canceled(previous.id)
        logger.info(f"Subscription {previous.id} superseded by {replacement.id}")
        
        if not previous.external_id:
            return
        
        logger.warning(
            f"User {previous.user_id} already had provider subscription "
            f"{previous.external_id}; canceling it at the provider"
        )
        try:
            await self._gateway.cancel_subscription(previous.external_id, at_period_end=False)
        except (NotFoundError, PaymentProviderError) as e:
            logger.error(
                f"Could not cancel superseded provider subscription {previous.external_id}: {e}"
            )
    
    async def _on_subscription_changed(self, event: ProviderEvent) -> EventOutcome:
        """Apply a provider subscription snapshot wholesale."""
        provider_subscription = ProviderSubscription.from_payload(event.data)
        if not provider_subscription.id:
            logger.error(f"Event {event.id} carries no subscription id")
            return EventOutcome.IGNORED
        
        existing = await self._subscriptions.get_by_external_id(provider_subscription.id)
        if existing is None:
            # May have raced ahead of checkout completion; a later event converges.
            logger.info(f"Subscription {provider_subscription.id} not found yet, deferring")
            return EventOutcome.DEFERRED
        
        if is_terminal(existing.status):
            logger.info(
                f"Subscription {existing.id} is {existing.status.value}, ignoring {event.type}"
            )
            return EventOutcome.IGNORED
        
        patch = self._snapshot_patch(existing, provider_subscription, event.created)
        updated = await self._subscriptions.apply_provider_snapshot(
            existing.id, patch, event.created
        )
        if updated is None:
            logger.info(f"Stale snapshot for subscription {existing.id} from event {event.id}")
            return EventOutcome.IGNORED
        
        if is_terminal(updated.status):
            await self._projector.resync(updated.user_id)
        elif is_entitled(updated.status) and (
            updated.tier != existing.tier or not is_entitled(existing.status)
        ):
            await self._projector.project(updated.user_id, updated.tier)
        
        logger.info(f"Subscription {existing.id} updated to status: {updated.status.value}")
        return EventOutcome.PROCESSED
    
    def _snapshot_patch(
        self,
        existing: Subscription,
        provider_subscription: ProviderSubscription,
        observed_at: datetime,
    ) -> SubscriptionPatch:
        """Translate a provider snapshot into a full-overwrite patch."""
        status = map_provider_status(provider_subscription.status)
        canceled_at = provider_subscription.canceled_at
        if status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = observed_at
        
        # canceled_at is set once; a reverted cancellation leaves it on record.
        fields = {
            "status": status,
            "auto_renew": (
                not provider_subscription.cancel_at_period_end
                and canceled_at is None
                and existing.canceled_at is None
                and not is_terminal(status)
            ),
        }
        if provider_subscription.current_period_start:
            fields["start_date"] = provider_subscription.current_period_start
        if provider_subscription.current_period_end:
            fields["end_date"] = provider_subscription.current_period_end
        if canceled_at is not None:
            fields["canceled_at"] = canceled_at
        
        tier_value = provider_subscription.metadata.get("tier")
        if tier_value:
            try:
                tier = parse_tier(tier_value)
            except UnknownTierError:
                logger.warning(f"Ignoring unknown tier {tier_value!r} on {provider_subscription.id}")
                tier = existing.tier
            
            if tier != existing.tier:
                details = tier_details(tier)
                interval = existing.billing_interval or BillingInterval.MONTHLY
                fields["tier"] = tier
                fields["features"] = feature_snapshot(tier)
                fields["price"] = (
                    provider_subscription.unit_amount
                    if provider_subscription.unit_amount is not None
                    else details.price_for(interval)
                )
        
        return SubscriptionPatch(**fields)
    
    async def _on_subscription_deleted(self, event: ProviderEvent) -> EventOutcome:
        """Finalize a provider-side cancellation."""
        provider_subscription = ProviderSubscription.from_payload(event.data)
        existing = (
            await self._subscriptions.get_by_external_id(provider_subscription.id)
            if provider_subscription.id
            else None
        )
        if existing is None:
            logger.info(f"Subscription {provider_subscription.id} not found, nothing to cancel")
            return EventOutcome.IGNORED
        
        if is_terminal(existing.status):
            logger.info(f"Subscription {existing.id} already {existing.status.value}")
            return EventOutcome.ALREADY_PROCESSED
        
        await self._subscriptions.mark_canceled(
            existing.id,
            canceled_at=provider_subscription.canceled_at or event.created,
        )
        await self._projector.resync(existing.user_id)
        
        logger.info(f"Subscription {existing.id} marked as canceled")
        return EventOutcome.PROCESSED
    
    async def _on_charge_succeeded(self, event: ProviderEvent) -> EventOutcome:
        charge = event.data
        logger.info(
            f"Payment succeeded: {charge.get('id')} "
            f"(customer={_object_id(charge.get('customer'))}, "
            f"subscription={_object_id(charge.get('subscription'))})"
        )
        return EventOutcome.PROCESSED
    
    async def _on_charge_failed(self, event: ProviderEvent) -> EventOutcome:
        charge = event.data
        logger.warning(
            f"Payment failed: {charge.get('id')} "
            f"(customer={_object_id(charge.get('customer'))}, "
            f"subscription={_object_id(charge.get('subscription'))})"
        )
        return EventOutcome.PROCESSED
    
    # =========================================================================
    # Commands
    # =========================================================================
    
    async def start_subscription(
        self,
        user_id: str,
        tier: Union[str, SubscriptionTier],
        billing_interval: Union[str, BillingInterval] = BillingInterval.MONTHLY,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Start a subscription.
        
        Free tier is activated synchronously for a fixed window with no
        provider round-trip. Paid tiers only get a checkout session; the
        local record appears when the checkout-completed event arrives.
        
        Raises:
            UnknownTierError, ValidationError: bad tier or interval
            InvalidReferenceError: user does not exist
            SubscriptionConflictError: user already has a conflicting active subscription
            ProviderUnavailableError: provider timed out (retryable)
        """
        tier = parse_tier(tier)
        interval = _coerce_interval(billing_interval)
        details = tier_details(tier)
        
        user = await self._users.find_by_id(user_id)
        if user is None:
            raise InvalidReferenceError(
                f"User with ID {user_id} not found",
                operation="start_subscription",
                table="users",
            )
        
        if tier == SubscriptionTier.FREE:
            return await self._start_free(user.id)
        
        active = await self._subscriptions.get_active_for_user(user.id, statuses=ENTITLED_STATUSES)
        if active is not None and (active.external_id or active.tier != SubscriptionTier.FREE):
            raise SubscriptionConflictError(
                "User already has an active paid subscription; use the billing portal to change plans",
                details={"subscription_id": active.id},
            )
        
        session = await self._gateway.create_checkout_session(
            user,
            details,
            interval,
            success_url=success_url or self._settings.stripe_payment_success_url,
            cancel_url=cancel_url or self._settings.stripe_payment_cancel_url,
        )
        return CheckoutResult(session_id=session.id, url=session.url)
    
    async def _start_free(self, user_id: str) -> CheckoutResult:
        async with self._lock_for(user_id):
            active = await self._subscriptions.get_active_for_user(
                user_id, statuses=ENTITLED_STATUSES
            )
            if active is not None:
                if active.tier == SubscriptionTier.FREE and not active.external_id:
                    return CheckoutResult(is_free=True, subscription=active)
                raise SubscriptionConflictError(
                    "User already has an active paid subscription",
                    details={"subscription_id": active.id},
                )
            
            start = utcnow()
            created = await self._subscriptions.create(
                Subscription(
                    user_id=user_id,
                    tier=SubscriptionTier.FREE,
                    status=SubscriptionStatus.ACTIVE,
                    start_date=start,
                    end_date=start + timedelta(days=self._settings.free_tier_duration_days),
                    auto_renew=False,
                    price=0.0,
                    currency=self._gateway.currency,
                    features=feature_snapshot(SubscriptionTier.FREE),
                )
            )
        
        await self._projector.project(user_id, SubscriptionTier.FREE)
        logger.info(f"Free tier activated for user {user_id}")
        return CheckoutResult(is_free=True, subscription=created)
    
    async def cancel(self, subscription_id: str, at_period_end: bool = True) -> CancelResult:
        """
        Cancel a subscription.
        
        Local-only records are canceled immediately. Provider-backed ones
        are canceled at the provider first; at_period_end only stops
        renewal locally and the deleted event finalizes the status later.
        
        Raises:
            NotFoundError: no such subscription
            PaymentProviderError / ProviderUnavailableError: provider call failed
        """
        subscription = await self._subscriptions.get(subscription_id)
        
        if is_terminal(subscription.status):
            logger.info(f"Subscription {subscription_id} already {subscription.status.value}")
            return CancelResult(canceled=True, canceled_at_period_end=False)
        
        if not subscription.external_id:
            await self._subscriptions.mark_canceled(subscription_id)
            await self._projector.resync(subscription.user_id)
            return CancelResult(canceled=True, canceled_at_period_end=False)
        
        await self._gateway.cancel_subscription(subscription.external_id, at_period_end=at_period_end)
        
        if not at_period_end:
            await self._subscriptions.mark_canceled(subscription_id)
            await self._projector.resync(subscription.user_id)
            return CancelResult(canceled=True, canceled_at_period_end=False)
        
        await self._subscriptions.update(subscription_id, SubscriptionPatch(auto_renew=False))
        logger.info(f"Subscription {subscription_id} will not renew")
        return CancelResult(canceled=False, canceled_at_period_end=True)
    
    async def create_portal_session(self, user_id: str, return_url: Optional[str] = None) -> str:
        """
        Create a billing portal session for the user's active subscription.
        
        Raises:
            NotFoundError: user does not exist
            NoActiveSubscriptionError: no active provider-backed subscription
        """
        user = await self._users.find_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User with ID {user_id} not found", table="users")
        
        active = await self._subscriptions.get_active_for_user(user.id)
        if active is None or not active.external_id:
            raise NoActiveSubscriptionError("No active subscription found for this user")
        
        provider_subscription = await self._gateway.retrieve_subscription(active.external_id)
        if not provider_subscription.customer_id:
            raise NoActiveSubscriptionError("No customer found for this subscription")
        
        return await self._gateway.create_portal_session(
            provider_subscription.customer_id,
            return_url or self._settings.stripe_payment_success_url,
        )
    
    # =========================================================================
    # Queries & Maintenance
    # =========================================================================
    
    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self._subscriptions.get(subscription_id)
    
    async def active_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._subscriptions.get_active_for_user(user_id)
    
    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self._subscriptions.list_for_user(user_id)
    
    async def delete_subscription(self, subscription_id: str) -> None:
        """Administrative hard delete; distinct from cancellation."""
        subscription = await self._subscriptions.get(subscription_id)
        if not await self._subscriptions.delete(subscription_id):
            raise NotFoundError(f"Subscription with ID {subscription_id} not found")
        await self._projector.resync(subscription.user_id)
    
    async def expire_lapsed(self, now: Optional[datetime] = None) -> list[Subscription]:
        """Expire non-renewing subscriptions past their end date and resync their users."""
        expired = await self._subscriptions.expire_lapsed(now)
        for user_id in sorted({subscription.user_id for subscription in expired}):
            await self._projector.resync(user_id)
        return expired


# =============================================================================
# Singleton Instance
# =============================================================================

_engine_instance: Optional[ReconciliationEngine] = None


def get_reconciliation_engine() -> ReconciliationEngine:
    """Get or create the reconciliation engine singleton."""
    global _engine_instance
    
    if _engine_instance is None:
        subscriptions = get_subscription_repository()
        users = get_user_repository()
        _engine_instance = ReconciliationEngine(
            subscriptions=subscriptions,
            gateway=get_stripe_service(),
            projector=UserTierProjector(users, subscriptions),
            users=users,
            events=get_webhook_event_repository(),
        )
    
    return _engine_instance
