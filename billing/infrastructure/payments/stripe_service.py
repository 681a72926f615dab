"""
Stripe Payment Service

Infrastructure gateway to the Stripe API. Nothing else in the codebase
imports stripe directly.

- Hosted Checkout for minimal PCI burden
- Customer Portal for self-service management
- Webhook signature verification over the raw request body
- Bounded timeouts on every call; backoff retries only for idempotent calls
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import stripe
from stripe import StripeError

from billing.config.settings import Settings, get_settings
from billing.domain.subscription import BillingInterval, User
from billing.domain.tiers import TierDetails
from billing.infrastructure.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    NotFoundError,
    PaymentProviderError,
    ProviderUnavailableError,
)


logger = logging.getLogger(__name__)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


# =============================================================================
# Provider Objects
# =============================================================================

@dataclass(frozen=True)
class ProviderEvent:
    """A verified webhook event."""
    id: str
    type: str
    created: datetime
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout reference handed back to the user."""
    id: str
    url: str


@dataclass(frozen=True)
class ProviderSubscription:
    """Authoritative provider-side view of a subscription."""
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    unit_amount: Optional[float] = None
    currency: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderSubscription":
        """
        Build from a subscription object (retrieved or embedded in an event).
        
        Newer API versions moved the period bounds onto the subscription
        items, so the first item is used as a fallback.
        """
        items = (payload.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        
        period_start = payload.get("current_period_start") or first_item.get("current_period_start")
        period_end = payload.get("current_period_end") or first_item.get("current_period_end")
        unit_amount = price.get("unit_amount")
        
        customer = payload.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")
        
        return cls(
            id=payload.get("id"),
            status=payload.get("status") or "",
            customer_id=customer,
            current_period_start=_from_timestamp(period_start),
            current_period_end=_from_timestamp(period_end),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            canceled_at=_from_timestamp(payload.get("canceled_at")),
            unit_amount=unit_amount / 100 if unit_amount is not None else None,
            currency=price.get("currency") or payload.get("currency"),
            metadata=dict(payload.get("metadata") or {}),
        )


class StripeService:
    """
    Stripe payment processing gateway.
    
    Constructed once per process and injected where needed.
    """
    
    def __init__(self, settings: Optional[Settings] = None):
        """Initialize Stripe with API key from settings."""
        settings = settings or get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._currency = settings.stripe_currency
        self._timeout = settings.stripe_request_timeout_seconds
        self._tolerance = settings.stripe_webhook_tolerance_seconds
        self._max_retries = max(1, settings.max_retries)
        self._base_delay = settings.retry_base_delay
        self._max_delay = settings.retry_max_delay
        
        if self._api_key:
            stripe.api_key = self._api_key
        else:
            logger.warning("Stripe secret key not found, payment functionality will be limited")
        
        # Retries are decided here, per call, not inside the SDK.
        stripe.max_network_retries = 0
    
    @property
    def currency(self) -> str:
        return self._currency
    
    async def _call(
        self,
        operation_name: str,
        operation: Callable[..., Any],
        *args,
        retry: bool = True,
        **kwargs,
    ) -> Any:
        """
        Run a blocking SDK call off the event loop with a bounded timeout.
        
        Connection failures, rate limits and timeouts are retried with
        exponential backoff when retry=True; otherwise they surface
        immediately as ProviderUnavailableError.
        """
        attempts = self._max_retries if retry else 1
        last_exception: Optional[Exception] = None
        
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(operation, *args, **kwargs),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                last_exception = e
                logger.warning(
                    f"{operation_name} timed out after {self._timeout:.1f}s "
                    f"(attempt {attempt + 1}/{attempts})"
                )
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                last_exception = e
                logger.warning(
                    f"{operation_name} transient error (attempt {attempt + 1}/{attempts}): {e}"
                )
            except stripe.InvalidRequestError as e:
                if e.http_status == 404:
                    raise NotFoundError(
                        f"{operation_name}: resource not found at provider",
                        operation=operation_name,
                        original_error=e,
                    )
                logger.error(f"{operation_name} rejected by Stripe: {e}")
                raise PaymentProviderError(
                    f"{operation_name} failed: {e.user_message or e}",
                    operation=operation_name,
                    original_error=e,
                )
            except StripeError as e:
                logger.error(f"{operation_name} failed: {e}")
                raise PaymentProviderError(
                    f"{operation_name} failed: {e.user_message or e}",
                    operation=operation_name,
                    original_error=e,
                )
            
            if attempt + 1 < attempts:
                delay = min(self._base_delay * (2 ** attempt), self._max_delay)
                await asyncio.sleep(delay)
        
        raise ProviderUnavailableError(
            f"{operation_name} failed: payment provider unavailable",
            operation=operation_name,
            original_error=last_exception,
        )
    
    # =========================================================================
    # Checkout Session
    # =========================================================================
    
    async def create_checkout_session(
        self,
        user: User,
        details: TierDetails,
        billing_interval: BillingInterval,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a Stripe Checkout Session for a subscription.
        
        Never retried: a second attempt after an ambiguous failure would
        hand the user a duplicate purchase page. A timeout surfaces as a
        retryable ProviderUnavailableError for the caller to decide.
        
        Args:
            user: Purchasing user
            details: Catalog entry for the tier being bought
            billing_interval: Monthly or yearly billing
            success_url: Redirect after successful payment
            cancel_url: Redirect after cancelled payment
            
        Returns:
            CheckoutSession with the hosted checkout URL
        """
        yearly = billing_interval == BillingInterval.YEARLY
        metadata = {
            "user_id": user.id,
            "tier": details.tier.value,
            "billing_interval": billing_interval.value,
        }
        
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            retry=False,
            payment_method_types=["card"],
            mode="subscription",
            line_items=[
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": f"{details.name} Plan - {'Yearly' if yearly else 'Monthly'}",
                            "description": ", ".join(details.features),
                        },
                        "unit_amount": round(details.price_for(billing_interval) * 100),
                        "recurring": {"interval": "year" if yearly else "month"},
                    },
                    "quantity": 1,
                }
            ],
            client_reference_id=user.id,
            customer_email=user.email,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        
        logger.info(
            f"Created checkout session {session['id']} for user {user.id}, "
            f"tier={details.tier.value}, interval={billing_interval.value}"
        )
        return CheckoutSession(id=session["id"], url=session["url"])
    
    # =========================================================================
    # Customer Portal
    # =========================================================================
    
    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Billing Portal session for self-service management.
        
        Returns:
            Portal URL
        """
        session = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        logger.info(f"Created portal session for customer {customer_id}")
        return session["url"]
    
    # =========================================================================
    # Subscription Operations
    # =========================================================================
    
    async def retrieve_subscription(self, external_id: str) -> ProviderSubscription:
        """
        Fetch the authoritative provider subscription.
        
        Raises:
            NotFoundError: the provider has no such subscription
        """
        payload = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            external_id,
        )
        return ProviderSubscription.from_payload(payload)
    
    async def cancel_subscription(
        self,
        external_id: str,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        """
        Cancel a subscription.
        
        Args:
            external_id: Stripe subscription ID
            at_period_end: If True, stop renewal and let the period run out
            
        Returns:
            Updated provider subscription
        """
        if at_period_end:
            payload = await self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                external_id,
                cancel_at_period_end=True,
            )
        else:
            payload = await self._call(
                "cancel_subscription",
                stripe.Subscription.cancel,
                external_id,
                idempotency_key=f"cancel-{external_id}",
            )
        
        logger.info(
            f"Cancelled subscription {external_id}, at_period_end={at_period_end}"
        )
        return ProviderSubscription.from_payload(payload)
    
    async def modify_subscription(self, external_id: str, **params: Any) -> ProviderSubscription:
        """Apply arbitrary modifications to a provider subscription."""
        payload = await self._call(
            "modify_subscription",
            stripe.Subscription.modify,
            external_id,
            **params,
        )
        return ProviderSubscription.from_payload(payload)
    
    # =========================================================================
    # Webhook Verification
    # =========================================================================
    
    def verify_event(self, payload: bytes, signature: str) -> ProviderEvent:
        """
        Verify a webhook signature over the raw body, then parse it.
        
        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header
            
        Returns:
            ProviderEvent if valid
            
        Raises:
            InvalidSignatureError: payload or signature rejected
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )
        if not signature:
            raise InvalidSignatureError("Missing Stripe signature")
        
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                self._tolerance,
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError(f"Invalid signature: {e}", original_error=e)
        except ValueError as e:
            raise InvalidSignatureError(f"Invalid payload: {e}", original_error=e)
        
        if not isinstance(event, dict):
            raise InvalidSignatureError("Invalid payload: event is not an object")
        
        return ProviderEvent(
            id=event.get("id") or "",
            type=event.get("type") or "",
            created=_from_timestamp(event.get("created")) or datetime.now(timezone.utc),
            data=(event.get("data") or {}).get("object") or {},
        )


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance
    
    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()
    
    return _stripe_service_instance
