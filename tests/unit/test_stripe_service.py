"""
Unit tests for StripeService.

The Stripe SDK is patched at the resource classes; webhook signatures
are computed for real with the test secret.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from billing.config.settings import Settings
from billing.domain.subscription import BillingInterval, User
from billing.domain.tiers import tier_details
from billing.infrastructure.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    NotFoundError,
    PaymentProviderError,
    ProviderUnavailableError,
)
from billing.infrastructure.payments.stripe_service import ProviderSubscription, StripeService


WEBHOOK_SECRET = "whsec_unit_test"


def _settings(**overrides) -> Settings:
    values = dict(
        stripe_secret_key="sk_test_unit",
        stripe_webhook_secret=WEBHOOK_SECRET,
        retry_base_delay=0,
        retry_max_delay=0,
        max_retries=3,
    )
    values.update(overrides)
    return Settings(**values)


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def _subscription_payload(**overrides):
    payload = {
        "id": "sub_123",
        "object": "subscription",
        "status": "active",
        "customer": "cus_123",
        "cancel_at_period_end": False,
        "canceled_at": None,
        "metadata": {"tier": "starter"},
        "items": {
            "data": [
                {
                    "current_period_start": 1767225600,
                    "current_period_end": 1769904000,
                    "price": {"unit_amount": 999, "currency": "usd"},
                }
            ]
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def service():
    return StripeService(_settings())


@pytest.fixture
def user():
    return User(id="00000000-0000-0000-0000-000000000001", email="student@example.com")


# =============================================================================
# Webhook Verification
# =============================================================================

class TestVerifyEvent:
    
    def test_valid_signature_parses_event(self, service):
        body = json.dumps({
            "id": "evt_1",
            "type": "customer.subscription.updated",
            "created": 1767225600,
            "data": {"object": {"id": "sub_123"}},
        })
        
        event = service.verify_event(body.encode("utf-8"), _sign(body))
        
        assert event.id == "evt_1"
        assert event.type == "customer.subscription.updated"
        assert event.created.timestamp() == 1767225600
        assert event.data == {"id": "sub_123"}
    
    def test_tampered_body_rejected(self, service):
        body = json.dumps({"id": "evt_1", "type": "x", "data": {"object": {}}})
        signature = _sign(body)
        
        with pytest.raises(InvalidSignatureError):
            service.verify_event(body.replace("evt_1", "evt_2").encode("utf-8"), signature)
    
    def test_wrong_secret_rejected(self, service):
        body = json.dumps({"id": "evt_1", "type": "x", "data": {"object": {}}})
        
        with pytest.raises(InvalidSignatureError):
            service.verify_event(body.encode("utf-8"), _sign(body, secret="whsec_other"))
    
    def test_stale_timestamp_rejected(self, service):
        body = json.dumps({"id": "evt_1", "type": "x", "data": {"object": {}}})
        
        with pytest.raises(InvalidSignatureError):
            service.verify_event(
                body.encode("utf-8"),
                _sign(body, timestamp=int(time.time()) - 3600),
            )
    
    def test_missing_signature_rejected(self, service):
        with pytest.raises(InvalidSignatureError):
            service.verify_event(b"{}", "")
    
    def test_missing_secret_is_configuration_error(self):
        service = StripeService(_settings(stripe_webhook_secret=None))
        
        with pytest.raises(ConfigurationError):
            service.verify_event(b"{}", "t=1,v1=abc")


# =============================================================================
# Provider Calls
# =============================================================================

class TestProviderCalls:
    
    async def test_checkout_session_carries_tier_metadata(self, service, user):
        with patch.object(stripe.checkout.Session, "create") as mock_create:
            mock_create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
            
            session = await service.create_checkout_session(
                user,
                tier_details("professional"),
                BillingInterval.YEARLY,
                success_url="https://app.test/ok",
                cancel_url="https://app.test/cancel",
            )
        
        assert session.id == "cs_1"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["client_reference_id"] == user.id
        assert kwargs["metadata"] == {
            "user_id": user.id,
            "tier": "professional",
            "billing_interval": "yearly",
        }
        price_data = kwargs["line_items"][0]["price_data"]
        assert price_data["unit_amount"] == 29999
        assert price_data["recurring"] == {"interval": "year"}
    
    async def test_checkout_is_not_retried(self, service, user):
        with patch.object(stripe.checkout.Session, "create") as mock_create:
            mock_create.side_effect = stripe.APIConnectionError("network down")
            
            with pytest.raises(ProviderUnavailableError):
                await service.create_checkout_session(
                    user,
                    tier_details("starter"),
                    BillingInterval.MONTHLY,
                    success_url="https://app.test/ok",
                    cancel_url="https://app.test/cancel",
                )
        
        assert mock_create.call_count == 1
    
    async def test_checkout_timeout_is_retryable_error(self, user):
        service = StripeService(_settings(stripe_request_timeout_seconds=0.05))
        
        def slow_create(**kwargs):
            time.sleep(0.3)
            return {"id": "cs_late", "url": "https://checkout.stripe.test/cs_late"}
        
        with patch.object(stripe.checkout.Session, "create", side_effect=slow_create):
            with pytest.raises(ProviderUnavailableError) as exc_info:
                await service.create_checkout_session(
                    user,
                    tier_details("starter"),
                    BillingInterval.MONTHLY,
                    success_url="https://app.test/ok",
                    cancel_url="https://app.test/cancel",
                )
        
        assert exc_info.value.retryable is True
    
    async def test_retrieve_retries_transient_failures(self, service):
        with patch.object(stripe.Subscription, "retrieve") as mock_retrieve:
            mock_retrieve.side_effect = [
                stripe.APIConnectionError("blip"),
                _subscription_payload(),
            ]
            
            subscription = await service.retrieve_subscription("sub_123")
        
        assert mock_retrieve.call_count == 2
        assert subscription.id == "sub_123"
        assert subscription.customer_id == "cus_123"
    
    async def test_retrieve_gives_up_after_max_retries(self, service):
        with patch.object(stripe.Subscription, "retrieve") as mock_retrieve:
            mock_retrieve.side_effect = stripe.RateLimitError("slow down")
            
            with pytest.raises(ProviderUnavailableError):
                await service.retrieve_subscription("sub_123")
        
        assert mock_retrieve.call_count == 3
    
    async def test_retrieve_missing_is_not_found(self, service):
        with patch.object(stripe.Subscription, "retrieve") as mock_retrieve:
            mock_retrieve.side_effect = stripe.InvalidRequestError(
                "No such subscription", "id", http_status=404
            )
            
            with pytest.raises(NotFoundError):
                await service.retrieve_subscription("sub_missing")
    
    async def test_card_error_is_provider_error(self, service):
        with patch.object(stripe.Subscription, "modify") as mock_modify:
            mock_modify.side_effect = stripe.CardError("declined", "card", "card_declined")
            
            with pytest.raises(PaymentProviderError) as exc_info:
                await service.modify_subscription("sub_123", cancel_at_period_end=True)
        
        assert exc_info.value.retryable is False
    
    async def test_cancel_at_period_end_modifies(self, service):
        with patch.object(stripe.Subscription, "modify") as mock_modify:
            mock_modify.return_value = _subscription_payload(cancel_at_period_end=True)
            
            result = await service.cancel_subscription("sub_123", at_period_end=True)
        
        mock_modify.assert_called_once_with("sub_123", cancel_at_period_end=True)
        assert result.cancel_at_period_end is True
    
    async def test_cancel_immediately_is_idempotent_request(self, service):
        with patch.object(stripe.Subscription, "cancel") as mock_cancel:
            mock_cancel.return_value = _subscription_payload(status="canceled", canceled_at=1767312000)
            
            result = await service.cancel_subscription("sub_123", at_period_end=False)
        
        mock_cancel.assert_called_once_with("sub_123", idempotency_key="cancel-sub_123")
        assert result.status == "canceled"
        assert result.canceled_at is not None
    
    async def test_portal_session_returns_url(self, service):
        with patch.object(stripe.billing_portal.Session, "create") as mock_create:
            mock_create.return_value = {"url": "https://billing.stripe.test/p/1"}
            
            url = await service.create_portal_session("cus_123", "https://app.test/account")
        
        assert url == "https://billing.stripe.test/p/1"
        mock_create.assert_called_once_with(customer="cus_123", return_url="https://app.test/account")


# =============================================================================
# Payload Mapping
# =============================================================================

class TestProviderSubscription:
    
    def test_period_bounds_fall_back_to_first_item(self):
        subscription = ProviderSubscription.from_payload(_subscription_payload())
        
        assert subscription.current_period_start.timestamp() == 1767225600
        assert subscription.current_period_end.timestamp() == 1769904000
        assert subscription.unit_amount == 9.99
        assert subscription.currency == "usd"
        assert subscription.metadata == {"tier": "starter"}
    
    def test_top_level_period_bounds_win(self):
        subscription = ProviderSubscription.from_payload(
            _subscription_payload(current_period_start=1700000000, current_period_end=1702592000)
        )
        
        assert subscription.current_period_start.timestamp() == 1700000000
    
    def test_expanded_customer(self):
        subscription = ProviderSubscription.from_payload(
            _subscription_payload(customer={"id": "cus_expanded", "object": "customer"})
        )
        
        assert subscription.customer_id == "cus_expanded"
