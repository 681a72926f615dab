"""
Repository Layer for the Billing Backend

Exports all repository classes for dependency injection.
"""

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


__all__ = [
    "SubscriptionRepository",
    "UserRepository",
    "WebhookEventRepository",
    "get_subscription_repository",
    "get_user_repository",
    "get_webhook_event_repository",
]
