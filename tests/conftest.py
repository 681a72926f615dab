"""
Test configuration and fixtures for the billing service.

Provides shared fixtures for unit and integration tests: an in-memory
SQLite database, real repositories bound to it, and a mocked Stripe
gateway.
"""

import os

# Settings are read at import time; pin them before any billing import.
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import MagicMock, AsyncMock

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from billing.config.settings import get_settings
from billing.domain.reconciliation import ReconciliationEngine
from billing.domain.tier_projector import UserTierProjector
from billing.infrastructure.db.models import UserModel
from billing.infrastructure.db.repositories import (
    SubscriptionRepository,
    UserRepository,
    WebhookEventRepository,
)
from billing.infrastructure.payments.stripe_service import (
    CheckoutSession,
    ProviderEvent,
    ProviderSubscription,
)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    
    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    
    await engine.dispose()


@pytest.fixture
def subscription_repo(session_factory):
    return SubscriptionRepository(session_factory)


@pytest.fixture
def user_repo(session_factory):
    return UserRepository(session_factory)


@pytest.fixture
def webhook_events(session_factory):
    return WebhookEventRepository(session_factory)


@pytest.fixture
def create_user(session_factory):
    """Factory inserting a user row and returning its id."""
    async def _create(email: str = None, role: str = "user") -> str:
        model = UserModel(email=email or f"{uuid.uuid4().hex[:8]}@example.com", role=role)
        async with session_factory() as session:
            session.add(model)
            await session.commit()
        return str(model.id)
    return _create


@pytest.fixture
async def user_id(create_user) -> str:
    return await create_user("student@example.com")


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_gateway():
    """Mock for StripeService."""
    mock = MagicMock()
    mock.currency = "usd"
    mock.verify_event = MagicMock()
    mock.retrieve_subscription = AsyncMock()
    mock.create_checkout_session = AsyncMock(
        return_value=CheckoutSession(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")
    )
    mock.create_portal_session = AsyncMock(return_value="https://billing.stripe.test/p/session_123")
    mock.cancel_subscription = AsyncMock()
    return mock


@pytest.fixture
def projector(user_repo, subscription_repo):
    return UserTierProjector(user_repo, subscription_repo)


@pytest.fixture
def engine(subscription_repo, mock_gateway, projector, user_repo, webhook_events):
    """Reconciliation engine over the in-memory store and mocked gateway."""
    return ReconciliationEngine(
        subscriptions=subscription_repo,
        gateway=mock_gateway,
        projector=projector,
        users=user_repo,
        events=webhook_events,
        settings=get_settings(),
    )


# =============================================================================
# Provider Data Fixtures
# =============================================================================

@pytest.fixture
def make_event():
    """Factory for verified provider events."""
    def _make(event_type: str, obj: dict, event_id: str = None, created: datetime = None) -> ProviderEvent:
        return ProviderEvent(
            id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
            type=event_type,
            created=created or datetime.now(timezone.utc),
            data=obj,
        )
    return _make


@pytest.fixture
def make_provider_subscription():
    """Factory for provider subscription snapshots."""
    def _make(
        external_id: str = "sub_test_123",
        status: str = "active",
        customer_id: str = "cus_test_123",
        cancel_at_period_end: bool = False,
        canceled_at: datetime = None,
        unit_amount: float = 29.99,
        metadata: dict = None,
    ) -> ProviderSubscription:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        return ProviderSubscription(
            id=external_id,
            status=status,
            customer_id=customer_id,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            cancel_at_period_end=cancel_at_period_end,
            canceled_at=canceled_at,
            unit_amount=unit_amount,
            currency="usd",
            metadata=metadata or {},
        )
    return _make


@pytest.fixture
def checkout_session_payload():
    """Factory for checkout.session.completed objects."""
    def _make(user_id: str, tier: str = "professional", payment_status: str = "paid",
              external_id: str = "sub_test_123", interval: str = "monthly") -> dict:
        return {
            "id": "cs_test_123",
            "object": "checkout.session",
            "mode": "subscription",
            "payment_status": payment_status,
            "customer": "cus_test_123",
            "subscription": external_id,
            "client_reference_id": user_id,
            "metadata": {
                "user_id": user_id,
                "tier": tier,
                "billing_interval": interval,
            },
        }
    return _make


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from billing.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
def make_token():
    """Factory for signed bearer tokens."""
    def _make(sub: str, role: str = None, expires_in: int = 3600) -> str:
        settings = get_settings()
        payload = {
            "sub": sub,
            "aud": settings.jwt_audience,
            "exp": int(time.time()) + expires_in,
        }
        if role:
            payload["role"] = role
        return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return _make
