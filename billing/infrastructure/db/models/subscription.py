"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field

from billing.infrastructure.db.models.base import BaseModel


class SubscriptionModel(BaseModel, table=True):
    """
    Subscription table for storing billing relationships.
    
    Maps to the 'subscriptions' table. external_id is unique so a provider
    subscription can back at most one local record.
    """
    
    __tablename__ = "subscriptions"
    
    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)
    
    # Subscription details
    tier: str = Field(default="free", index=True)
    status: str = Field(default="pending", index=True)
    billing_interval: Optional[str] = Field(default=None)
    
    # Billing period dates
    start_date: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    end_date: datetime = Field(sa_type=DateTime(timezone=True), nullable=False, index=True)
    auto_renew: bool = Field(default=False)
    canceled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    
    # Provider linkage
    external_id: Optional[str] = Field(default=None, unique=True, index=True)
    provider_synced_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    
    # Terms snapshot
    price: float = Field(default=0.0)
    currency: str = Field(default="usd")
    features: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    
    # "metadata" is reserved on declarative classes
    extra_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
    )
