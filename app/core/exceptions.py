"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every exception raised out of the booking/payment/ledger core is an AppException;
raw storage errors are wrapped before they reach a caller.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Trip / capacity errors (2xxx)
    TRIP_NOT_FOUND = "ERR_2001"
    TRIP_NOT_BOOKABLE = "ERR_2002"
    CAPACITY_EXCEEDED = "ERR_2003"

    # Booking errors (3xxx)
    BOOKING_NOT_FOUND = "ERR_3001"
    DUPLICATE_BOOKING = "ERR_3002"
    POLICY_VIOLATION = "ERR_3003"
    USER_NOT_FOUND = "ERR_3004"

    # Ledger / payment errors (4xxx)
    INSUFFICIENT_FUNDS = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    PAYMENT_NOT_FOUND = "ERR_4004"

    # External service errors (5xxx)
    PAYMENT_GATEWAY_ERROR = "ERR_5001"
    NOTIFICATION_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    INVALID_STATE = "ERR_6003"

    # Internal consistency (9xxx)
    INVARIANT_VIOLATION = "ERR_9001"
    STORAGE_ERROR = "ERR_9002"


class AppException(Exception):
    """Base exception for all application errors"""

    # Faults are internal failures: logged as errors, rendered without detail
    is_fault = False

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


class InvalidAmountError(ValidationException):
    """Raised when a monetary amount is zero, negative or exceeds what is allowed"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            field="amount",
            details=details,
            error_code=ErrorCode.INVALID_AMOUNT,
        )


# ============================================================================
# NotFound
# ============================================================================

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


class TripNotFoundError(NotFoundException):
    def __init__(self, trip_id: int):
        super().__init__("Trip", trip_id, ErrorCode.TRIP_NOT_FOUND)


class BookingNotFoundError(NotFoundException):
    def __init__(self, booking_id: int):
        super().__init__("Booking", booking_id, ErrorCode.BOOKING_NOT_FOUND)


class PaymentNotFoundError(NotFoundException):
    def __init__(self, identifier: int | str):
        super().__init__("Payment", identifier, ErrorCode.PAYMENT_NOT_FOUND)


class UserNotFoundError(NotFoundException):
    def __init__(self, user_id: int):
        super().__init__("User", user_id, ErrorCode.USER_NOT_FOUND)


# ============================================================================
# Domain rule errors
# ============================================================================

class UnauthorizedActionError(AppException):
    """Raised when the actor lacks ownership or role for an operation"""

    def __init__(self, message: str, user_id: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )
        if user_id is not None:
            self.details["user_id"] = user_id


class InvalidStateError(AppException):
    """Raised when an operation is illegal in the current lifecycle state"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_STATE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(InvalidStateError):
    """Raised when a transition is not in the lifecycle's transition table"""

    def __init__(self, entity: str, entity_id: int | None, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid {entity} transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class TripNotBookableError(InvalidStateError):
    """Raised when a trip is not active or has already departed"""

    def __init__(self, trip_id: int, status: str):
        super().__init__(
            message=f"Trip {trip_id} is not available for booking",
            error_code=ErrorCode.TRIP_NOT_BOOKABLE,
            details={"trip_id": trip_id, "status": status}
        )


class CapacityExceededError(AppException):
    """Raised when a trip has fewer available seats than requested"""

    def __init__(self, trip_id: int, requested: int, available: int | None = None):
        details: dict[str, Any] = {"trip_id": trip_id, "requested_seats": requested}
        if available is not None:
            details["available_seats"] = available
        super().__init__(
            message=(
                f"Only {available} seats available on trip {trip_id}"
                if available is not None
                else f"Not enough seats available on trip {trip_id}"
            ),
            error_code=ErrorCode.CAPACITY_EXCEEDED,
            status_code=409,
            details=details
        )


class DuplicateBookingError(AppException):
    """Raised when a passenger already holds an active booking on the trip"""

    def __init__(self, trip_id: int, passenger_id: int):
        super().__init__(
            message="You already have a booking for this trip",
            error_code=ErrorCode.DUPLICATE_BOOKING,
            status_code=409,
            details={"trip_id": trip_id, "passenger_id": passenger_id}
        )


class InsufficientFundsError(AppException):
    """Raised when a credit balance cannot cover a debit"""

    def __init__(self, user_id: int, balance: Any, required: Any):
        super().__init__(
            message="Insufficient credit balance",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            status_code=402,
            details={
                "user_id": user_id,
                "balance": str(balance),
                "required_amount": str(required),
            }
        )


class PolicyViolationError(AppException):
    """Raised when a request breaks a business rule (e.g. booking one's own trip)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.POLICY_VIOLATION,
            status_code=422,
            details=details
        )


# ============================================================================
# External services
# ============================================================================

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
    """Raised when the payment gateway is unreachable or returns an error"""

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


class NotificationError(ExternalServiceException):
    """Raised when the notification webhook rejects or drops a message"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="notifications",
            message=f"Notification delivery error: {message}",
            error_code=ErrorCode.NOTIFICATION_ERROR,
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


# ============================================================================
# Internal faults
# ============================================================================

class InvariantViolationError(AppException):
    """An internal consistency check failed. Fatal for the current transaction."""

    is_fault = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVARIANT_VIOLATION,
            status_code=500,
            details=details
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An internal error occurred",
                "details": {}
            }
        }


class StorageError(AppException):
    """Wraps a database error so it never reaches a caller raw"""

    is_fault = True

    def __init__(self, operation: str, original: Exception | None = None):
        super().__init__(
            message=f"Storage failure during {operation}",
            error_code=ErrorCode.STORAGE_ERROR,
            status_code=500,
            details={
                "operation": operation,
                "cause": type(original).__name__ if original else None,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An internal error occurred",
                "details": {}
            }
        }
