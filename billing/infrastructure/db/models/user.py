"""
User Database Model

Minimal user directory table: the billing engine only reads identity and
writes the denormalized subscription tier.
"""

from sqlmodel import Field

from billing.infrastructure.db.models.base import BaseModel


class UserModel(BaseModel, table=True):
    """Maps to the 'users' table."""
    
    __tablename__ = "users"
    
    email: str = Field(unique=True, index=True, nullable=False)
    role: str = Field(default="user")
    subscription_tier: str = Field(default="free")
