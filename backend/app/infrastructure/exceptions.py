"""
Custom Exceptions for Escuela Segura

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class EscuelaSeguraError(Exception):
    """Base exception for all Escuela Segura errors."""

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


class ValidationError(EscuelaSeguraError):
    """Raised when input validation fails."""
    pass


class MissingExternalReferenceError(ValidationError):
    """Raised when a processor transition is requested for a subscription
    that has no external subscription id yet."""

    def __init__(self, subscription_id: str, action: str):
        super().__init__(
            f"Subscription {subscription_id} has no external subscription id; "
            f"cannot {action}",
            details={"subscription_id": subscription_id, "action": action},
        )


class DatabaseError(EscuelaSeguraError):
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


class AccessDeniedError(EscuelaSeguraError):
    """Raised when a company has neither an active trial nor a subscription."""

    def __init__(self, message: str = "Trial expired. Subscribe to continue.", trial_status: Optional[str] = None):
        details = {}
        if trial_status:
            details["trial_status"] = trial_status
        super().__init__(message, details)


class SubscriptionStateError(EscuelaSeguraError):
    """Raised when a transition is not allowed from the current status."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        current_status: Optional[str] = None,
    ):
        details = {}
        if action:
            details["action"] = action
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details)


class TransitionInProgressError(SubscriptionStateError):
    """Raised when another transition for the same subscription is in flight."""

    def __init__(self, key: str):
        super().__init__(
            f"Another billing operation is already in progress for {key}",
        )
        self.details["key"] = key


class PaymentProcessorError(EscuelaSeguraError):
    """Raised when the external payment processor rejects or fails a call."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if provider:
            details["provider"] = provider
        if operation:
            details["operation"] = operation
        if status_code:
            details["status_code"] = status_code
        super().__init__(message, details, original_error)
        self.status_code = status_code


class MandateInvalidError(PaymentProcessorError):
    """Raised when a suspended subscription can no longer be reactivated.

    Callers must fall back to creating a new subscription.
    """
    pass


class UnknownProcessorStatusError(PaymentProcessorError):
    """Raised when the processor reports a status outside the closed enum."""

    def __init__(self, raw_status: Any, provider: Optional[str] = None):
        super().__init__(
            f"Unrecognized subscription status from processor: {raw_status!r}",
            provider=provider,
            operation="map_status",
        )
        self.details["raw_status"] = str(raw_status)


class ConfigurationError(EscuelaSeguraError):
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
