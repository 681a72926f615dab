# API Routes Module
from billing.api.routes import (
    payments,
    subscriptions,
    webhooks,
)

__all__ = [
    "payments",
    "subscriptions",
    "webhooks",
]
