"""
Payments API Routes

Public Stripe configuration for the frontend checkout integration.
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from billing.config.settings import get_settings
from billing.infrastructure.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentsConfigResponse(BaseModel):
    """Publishable Stripe settings safe to expose to browsers."""
    publishable_key: str
    currency: str


@router.get("/payments/config", response_model=PaymentsConfigResponse)
async def get_payments_config():
    """Get the Stripe publishable key and checkout currency."""
    settings = get_settings()
    if not settings.stripe_publishable_key:
        logger.error("Stripe publishable key requested but not configured")
        raise ConfigurationError(
            "Stripe publishable key is not configured",
            missing_keys=["STRIPE_PUBLISHABLE_KEY"],
        )

    return PaymentsConfigResponse(
        publishable_key=settings.stripe_publishable_key,
        currency=settings.stripe_currency,
    )
