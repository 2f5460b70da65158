"""
Error taxonomy for the booking saga.

Every error carries a stable ``error_code`` and a user-facing message taken from
a fixed table. Raw upstream text goes to the logs only, never to the caller.
"""
from typing import Any, Dict, Optional


ERROR_MESSAGES: Dict[str, str] = {
    "VALIDATION_ERROR": "The booking request is invalid. Please check the highlighted fields.",
    "NOT_FOUND": "Booking not found.",
    "BOOKING_CONFLICT": "The selected dates are no longer available. Please choose different dates.",
    "UPSTREAM_UNAVAILABLE": "A booking partner is temporarily unavailable. Please try again later.",
    "RESOURCE_UNAVAILABLE": "The selected service has no availability for these dates.",
    "HOLD_EXPIRED": "Your reservation hold has expired. Please start the booking again.",
    "HOLD_NOT_FOUND": "Your reservation hold no longer exists. Please start the booking again.",
    "STATE_CONFLICT": "This booking was changed by another request. Please refresh and try again.",
    "INVALID_TRANSITION": "This action is not allowed for the booking in its current state.",
    "CANCELLATION_NOT_ALLOWED": "This booking can no longer be cancelled under its cancellation policy.",
    "BOOKING_FAILED": "The booking could not be completed. Any hold or charge has been released.",
}

PAYMENT_ERROR_MESSAGES: Dict[str, str] = {
    "INSUFFICIENT_FUNDS": "Payment declined due to insufficient funds. Please check your account balance.",
    "CARD_DECLINED": "Your card was declined. Please contact your bank or use a different card.",
    "INVALID_CARD": "Invalid card information. Please check your card details and try again.",
    "EXPIRED_CARD": "Your card has expired. Please use a different card.",
    "INVALID_CVV": "Invalid security code (CVV). Please check and try again.",
    "PROCESSING_ERROR": "Payment processing error. Please try again or use a different payment method.",
    "SERVICE_UNAVAILABLE": "Payment service is temporarily unavailable. Please try again later.",
    "TIMEOUT": "Payment processing timed out. Please try again.",
    "DUPLICATE_TRANSACTION": "This transaction appears to be a duplicate. Please check your bookings.",
    "AMOUNT_INVALID": "Invalid payment amount. Please contact support.",
    "CURRENCY_NOT_SUPPORTED": "Currency not supported. Please contact support.",
}

DEFAULT_PAYMENT_ERROR_CODE = "PROCESSING_ERROR"


def translate_payment_error(error_code: Optional[str]) -> str:
    """Map a processor error code to its fixed user-facing message."""
    if error_code in PAYMENT_ERROR_MESSAGES:
        return PAYMENT_ERROR_MESSAGES[error_code]
    return PAYMENT_ERROR_MESSAGES[DEFAULT_PAYMENT_ERROR_CODE]


def normalize_payment_error_code(error_code: Optional[str]) -> str:
    return error_code if error_code in PAYMENT_ERROR_MESSAGES else DEFAULT_PAYMENT_ERROR_CODE


class BookingError(Exception):
    """Base class for all booking errors."""

    error_code = "BOOKING_FAILED"
    http_status = 500

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or ERROR_MESSAGES.get(self.error_code, ERROR_MESSAGES["BOOKING_FAILED"])
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.error_code,
            "errorCode": self.error_code,
        }
        if self.details:
            body["data"] = self.details
        return body


class ValidationError(BookingError):
    """Malformed input. Raised before any side effect."""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(BookingError):
    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(self, booking_id: str):
        super().__init__(details={"bookingId": booking_id})


class ConflictError(BookingError):
    """Date range overlaps another active booking for the same provider."""

    error_code = "BOOKING_CONFLICT"
    http_status = 409


class UpstreamUnavailable(BookingError):
    """Network error or timeout talking to a collaborator. Never retried automatically."""

    error_code = "UPSTREAM_UNAVAILABLE"
    http_status = 503


class ResourceUnavailable(BookingError):
    error_code = "RESOURCE_UNAVAILABLE"
    http_status = 409


class PaymentDeclined(BookingError):
    """The processor refused the charge; ``payment_error_code`` is the processor's code."""

    error_code = "PAYMENT_DECLINED"
    http_status = 402

    def __init__(self, payment_error_code: Optional[str], details: Optional[Dict[str, Any]] = None):
        self.payment_error_code = normalize_payment_error_code(payment_error_code)
        super().__init__(translate_payment_error(self.payment_error_code), details)

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["errorCode"] = self.payment_error_code
        return body


class HoldExpired(BookingError):
    error_code = "HOLD_EXPIRED"
    http_status = 410


class HoldNotFound(BookingError):
    error_code = "HOLD_NOT_FOUND"
    http_status = 404


class StateConflict(BookingError):
    """An optimistic conditional update lost a race. Re-fetch and retry the transition."""

    error_code = "STATE_CONFLICT"
    http_status = 409


class InvalidTransition(BookingError):
    error_code = "INVALID_TRANSITION"
    http_status = 400


class CancellationNotAllowed(BookingError):
    error_code = "CANCELLATION_NOT_ALLOWED"
    http_status = 400
