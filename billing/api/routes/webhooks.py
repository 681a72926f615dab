"""
Stripe Webhook Handler

Receives Stripe webhook deliveries and hands them to the reconciliation
engine. The raw body is passed through untouched because the signature
covers the exact bytes received.

Any verified event is acknowledged with 200, whatever its outcome;
only a missing or invalid signature is rejected.
"""

import logging

from fastapi import APIRouter, Depends, Request, HTTPException, status

from billing.api.dependencies import get_engine
from billing.domain.reconciliation import ReconciliationEngine
from billing.infrastructure.exceptions import InvalidSignatureError


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Handle Stripe webhook events.
    
    Returns:
        {"status": outcome} where outcome is one of success, ignored,
        deferred, already_processed or error
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )
    
    try:
        outcome = await engine.handle_webhook(payload, signature)
    except InvalidSignatureError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )
    
    return {"status": outcome.value}
