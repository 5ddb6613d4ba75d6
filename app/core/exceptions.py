"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Validation-class errors are recovered at the service boundary and turned into
failed ServiceResult objects; the HTTP layer renders the rest via to_dict().
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    LOCK_TIMEOUT = "ERR_1006"

    # Credit errors (2xxx)
    INSUFFICIENT_BALANCE = "ERR_2001"
    USAGE_LIMIT_EXCEEDED = "ERR_2002"
    INVALID_AMOUNT = "ERR_2003"
    BALANCE_LIMIT_EXCEEDED = "ERR_2004"
    PURCHASE_LIMIT_EXCEEDED = "ERR_2005"
    TRANSACTION_NOT_REFUNDABLE = "ERR_2006"
    TRANSACTION_NOT_CANCELLABLE = "ERR_2007"

    # Auto-topup / payment errors (3xxx)
    PAYMENT_FAILED = "ERR_3001"
    AUTO_TOPUP_SUSPENDED = "ERR_3002"
    AUTO_TOPUP_INVALID = "ERR_3003"

    # Marketplace errors (4xxx)
    JOB_NOT_FOUND = "ERR_4001"
    JOB_NOT_AVAILABLE = "ERR_4002"
    JOB_EXPIRED = "ERR_4003"
    APPLICATION_NOT_FOUND = "ERR_4004"
    DUPLICATE_APPLICATION = "ERR_4005"
    APPLICATION_LIMIT_REACHED = "ERR_4006"

    # External service errors (5xxx)
    PAYMENT_GATEWAY_ERROR = "ERR_5001"
    NOTIFICATION_GATEWAY_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class UnauthorizedError(AppException):
    """Raised when the actor does not own the job or application"""

    def __init__(self, actor_id: int | None = None, resource: str | None = None):
        super().__init__(
            message="Unauthorized access",
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=403,
            details={"actor_id": actor_id, "resource": resource}
        )


class LockTimeoutError(AppException):
    """Raised when a per-account or per-job lock cannot be acquired in time"""

    def __init__(self, key: str, timeout_seconds: float):
        super().__init__(
            message=f"Timed out after {timeout_seconds}s waiting for lock '{key}'",
            error_code=ErrorCode.LOCK_TIMEOUT,
            status_code=503,
            details={"lock_key": key, "timeout_seconds": timeout_seconds}
        )


class CreditException(AppException):
    """Base exception for credit ledger errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        account_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if account_id:
            self.details["account_id"] = account_id


class InsufficientBalanceError(CreditException):
    """Raised when a deduct would take the balance below zero"""

    def __init__(
        self,
        account_id: int,
        current_balance: int,
        required_credits: int,
        reason: str | None = None
    ):
        details: dict[str, Any] = {
            "current_balance": current_balance,
            "required_credits": required_credits,
            "shortfall": max(0, required_credits - current_balance),
        }
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Insufficient credits: required {required_credits}, available {current_balance}",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            account_id=account_id,
            details=details
        )
        self.status_code = 402


class UsageLimitExceededError(CreditException):
    """Raised when a daily or monthly usage cap would be exceeded"""

    def __init__(
        self,
        account_id: int,
        usage_type: str,
        message: str,
        period: str,
        limit: int,
        used: int
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.USAGE_LIMIT_EXCEEDED,
            account_id=account_id,
            details={"usage_type": usage_type, "period": period, "limit": limit, "used": used}
        )
        self.status_code = 429


class InvalidAmountError(CreditException):
    """Raised when a credit amount is outside the allowed range"""

    def __init__(self, credits: Any, minimum: int | None = None, maximum: int | None = None):
        super().__init__(
            message=f"Invalid credit amount: {credits}",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"credits": credits, "minimum": minimum, "maximum": maximum}
        )


class MarketplaceException(AppException):
    """Base exception for marketplace job / application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        job_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )
        if job_id:
            self.details["job_id"] = job_id


class JobNotAvailableError(MarketplaceException):
    """Raised when a job no longer accepts applications or changes"""

    def __init__(self, job_id: int, current_status: str):
        super().__init__(
            message="Job is no longer available for applications",
            error_code=ErrorCode.JOB_NOT_AVAILABLE,
            job_id=job_id,
            details={"current_status": current_status}
        )


class JobExpiredError(MarketplaceException):
    """Raised when the job's expiry window has passed"""

    def __init__(self, job_id: int):
        super().__init__(
            message="Job has expired",
            error_code=ErrorCode.JOB_EXPIRED,
            job_id=job_id
        )
        self.status_code = 410


class DuplicateApplicationError(MarketplaceException):
    """Raised when a tradie applies to the same job twice"""

    def __init__(self, job_id: int, tradie_id: int):
        super().__init__(
            message="You have already applied to this job",
            error_code=ErrorCode.DUPLICATE_APPLICATION,
            job_id=job_id,
            details={"tradie_id": tradie_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class PaymentGatewayError(ExternalServiceException):
    """Raised when the payment gateway API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payment_gateway",
            message=f"Payment gateway error: {message}",
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "PaymentGatewayError":
        """Build a PaymentGatewayError from an HTTP response (e.g. httpx.Response)."""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class NotificationGatewayError(ExternalServiceException):
    """Raised when the email or SMS gateway fails"""

    def __init__(self, channel: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=f"{channel}_gateway",
            message=f"{channel} gateway error: {message}",
            error_code=ErrorCode.NOTIFICATION_GATEWAY_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class PaymentFailedError(AppException):
    """Raised when a charge is declined or cannot be completed"""

    def __init__(self, message: str, charge_id: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYMENT_FAILED,
            status_code=402,
            details=details
        )
        if charge_id:
            self.details["charge_id"] = charge_id


class AutoTopupSuspendedError(AppException):
    """Raised when an operation requires an active auto-topup policy"""

    def __init__(self, account_id: int, failure_count: int):
        super().__init__(
            message="Auto-topup is suspended after repeated payment failures; update the payment method",
            error_code=ErrorCode.AUTO_TOPUP_SUSPENDED,
            status_code=409,
            details={"account_id": account_id, "failure_count": failure_count}
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, entity_type: str, current_state: str, target_state: str, entity_id: int | None = None):
        super().__init__(
            message=f"Cannot transition from {current_state} to {target_state}",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )
