"""
Application Settings for the Billing Backend

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    
    Stripe keys are optional in development so the API can boot without
    a payment account; production requires them (see validate_secrets).
    """
    
    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    
    # CORS Configuration
    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]
    
    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False
    
    # Authentication (HS256 bearer tokens issued by the auth service)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    
    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_currency: str = "usd"
    stripe_payment_success_url: str = "http://localhost:3000/subscription/success"
    stripe_payment_cancel_url: str = "http://localhost:3000/subscription/cancel"
    stripe_request_timeout_seconds: float = 10.0
    stripe_webhook_tolerance_seconds: int = 300
    
    # Retry Configuration (idempotent provider calls only)
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    
    # Subscription Lifecycle
    free_tier_duration_days: int = 365
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    
    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Require payment and auth secrets outside development."""
        if not self.is_production:
            return self
        
        missing = [
            name
            for name in ("stripe_secret_key", "stripe_webhook_secret", "jwt_secret")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"{', '.join(name.upper() for name in missing)} required when ENVIRONMENT=production"
            )
        
        return self
    
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
