"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from billing.config.settings import Settings


class TestSettings:
    """Tests for Settings configuration."""
    
    def test_settings_loads_from_env(self):
        """Settings should load from environment variables."""
        from billing.config.settings import settings
        
        # Pinned by conftest
        assert settings.jwt_secret is not None
        assert settings.stripe_webhook_secret is not None
    
    def test_settings_has_defaults(self):
        """Settings should have sensible defaults."""
        settings = Settings()
        
        assert settings.jwt_algorithm == "HS256"
        assert settings.stripe_currency == "usd"
        assert settings.free_tier_duration_days == 365
        assert settings.stripe_webhook_tolerance_seconds == 300
        assert settings.max_retries >= 1
    
    def test_is_production_property(self):
        settings = Settings(environment="development")
        
        assert settings.is_production is False
        assert settings.is_development is True
    
    def test_production_requires_secrets(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(
                environment="production",
                stripe_secret_key=None,
                stripe_webhook_secret=None,
                jwt_secret=None,
            )
        
        assert "STRIPE_SECRET_KEY" in str(exc_info.value)
    
    def test_production_with_secrets(self):
        settings = Settings(
            environment="production",
            stripe_secret_key="sk_live_x",
            stripe_webhook_secret="whsec_x",
            jwt_secret="a-production-secret-of-sufficient-length",
        )
        
        assert settings.is_production is True
    
    def test_allowed_origins_includes_localhost(self):
        settings = Settings()
        
        assert "http://localhost:3000" in settings.allowed_origins
