"""Payment error taxonomy.

Every error carries the HTTP status it maps to and a ``public_message`` that is
safe to hand back to a caller. Anything learned from an upstream gateway
(raw bodies, error codes) goes in ``detail`` and is only ever logged.
"""

from datetime import datetime
from typing import Any, Optional


class PaymentError(Exception):
    status_code = 500
    default_message = "Payment processing failed"

    def __init__(self, message: Optional[str] = None, *, detail: Any = None):
        self.public_message = message or self.default_message
        self.detail = detail
        super().__init__(self.public_message)

    def to_response(self) -> dict:
        return {"error": self.public_message}


class ValidationError(PaymentError):
    status_code = 400
    default_message = "Invalid payment request"


class InvalidPhone(ValidationError):
    default_message = "Invalid phone number. Please enter a valid Kenyan mobile number."


class InvalidAmount(ValidationError):
    default_message = "Invalid amount"


class OrderNotFound(PaymentError):
    status_code = 404
    default_message = "Order not found"


class InvalidTransition(PaymentError):
    status_code = 400
    default_message = "Payment is not in a state that allows this action"

    def __init__(self, current=None, target=None, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message, detail={"current": current, "target": target})


class RateLimited(PaymentError):
    status_code = 429
    default_message = "Too many payment requests. Please wait before trying again."

    def __init__(self, reset_at: datetime, message: Optional[str] = None):
        self.reset_at = reset_at
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.public_message, "resetAt": self.reset_at.isoformat()}


class AuthError(PaymentError):
    status_code = 500
    default_message = "Failed to authenticate with the payment provider. Please try again later."


class NetworkError(PaymentError):
    status_code = 504
    default_message = "Network error while contacting the payment provider. Please try again."


class GatewayUnconfigured(PaymentError):
    status_code = 500
    default_message = "Payment processing not configured"


class GatewayError(PaymentError):
    status_code = 502
    default_message = "Payment failed. Please try again."

    def __init__(self, message: Optional[str] = None, *, detail: Any = None, status_code: Optional[int] = None):
        super().__init__(message, detail=detail)
        if status_code is not None:
            self.status_code = status_code


class PaymentStillProcessing(GatewayError):
    status_code = 202
    default_message = "The transaction is still being processed"


class IncompleteGatewayResponse(GatewayError):
    status_code = 502
    default_message = "Incomplete response from the payment provider. Cannot determine payment status."


class AmountMismatch(PaymentError):
    status_code = 400
    default_message = "Paid amount does not match the order total"

    def __init__(self, expected: int, received: Any):
        self.expected = expected
        self.received = received
        super().__init__(detail={"expected": expected, "received": received})
