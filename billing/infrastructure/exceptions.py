"""
Custom Exceptions for the Billing Backend

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingError(Exception):
    """Base exception for all billing errors."""
    
    def __init__(
        self, 
        message: str, 
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(BillingError):
    """Raised when input validation fails."""
    pass


class DatabaseError(BillingError):
    """Raised when database operations fail."""
    
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class DuplicateError(DatabaseError):
    """Raised when attempting to create a duplicate resource."""
    pass


class InvalidReferenceError(DatabaseError):
    """Raised when a record points at a user that does not resolve."""
    pass


class UnknownTierError(ValidationError):
    """Raised when a tier is not part of the fixed catalog."""
    
    def __init__(self, tier: Any):
        super().__init__(
            f"Subscription tier {tier!r} not found",
            details={"tier": str(tier)},
        )


class NoActiveSubscriptionError(BillingError):
    """Raised when an operation needs an active provider-backed subscription."""
    pass


class SubscriptionConflictError(BillingError):
    """Raised when a command would leave a user with two active subscriptions."""
    pass


class PaymentProviderError(BillingError):
    """Raised when the payment provider rejects a request."""
    
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        retryable: bool = False,
        original_error: Optional[Exception] = None
    ):
        details = {"retryable": retryable}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)
        self.retryable = retryable


class ProviderUnavailableError(PaymentProviderError):
    """Raised when the payment provider cannot be reached or timed out."""
    
    def __init__(
        self,
        message: str = "Payment provider unavailable",
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation=operation,
            retryable=True,
            original_error=original_error,
        )


class InvalidSignatureError(BillingError):
    """Raised when a webhook payload fails signature verification."""
    pass


class ConfigurationError(BillingError):
    """Raised when configuration is missing or invalid."""
    
    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
