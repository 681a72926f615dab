"""
SQLModel ORM Models for the Billing Backend

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from billing.infrastructure.db.models.base import (
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from billing.infrastructure.db.models.user import UserModel
from billing.infrastructure.db.models.subscription import SubscriptionModel
from billing.infrastructure.db.models.webhook_event import ProcessedWebhookEvent


__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    # Tables
    "UserModel",
    "SubscriptionModel",
    "ProcessedWebhookEvent",
]
