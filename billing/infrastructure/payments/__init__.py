"""
Payments Infrastructure Module

Stripe gateway for checkout, portal, subscription and webhook operations.
"""

from billing.infrastructure.payments.stripe_service import (
    CheckoutSession,
    ProviderEvent,
    ProviderSubscription,
    StripeService,
    get_stripe_service,
)

__all__ = [
    "CheckoutSession",
    "ProviderEvent",
    "ProviderSubscription",
    "StripeService",
    "get_stripe_service",
]
