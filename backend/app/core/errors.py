"""Billing error taxonomy and its HTTP rendering

Every error carries a stable machine-readable code. ``retryable`` tells the
caller whether re-attempting the same request can succeed.
"""
from enum import Enum
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(Enum):
    """Stable error codes returned to clients"""

    # User-input errors
    INVALID_PRICE = "INVALID_PRICE"
    SAME_PLAN = "SAME_PLAN"
    SUBSCRIPTION_CANCELING = "SUBSCRIPTION_CANCELING"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
    NO_SCHEDULED_CHANGE = "NO_SCHEDULED_CHANGE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    MISSING_CUSTOMER = "MISSING_CUSTOMER"

    # Concurrency
    PLAN_CHANGE_IN_PROGRESS = "PLAN_CHANGE_IN_PROGRESS"
    RATE_LIMITED = "RATE_LIMITED"

    # External dependency
    PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE"
    PROCESSOR_REJECTED = "PROCESSOR_REJECTED"

    # Webhooks
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"
    WEBHOOK_NOT_CONFIGURED = "WEBHOOK_NOT_CONFIGURED"


class BillingError(Exception):
    """Base class for all billing errors"""

    code: ErrorCode = ErrorCode.WEBHOOK_PROCESSING_FAILED
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Billing error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "retryable": self.retryable,
            }
        }


class InvalidPrice(BillingError):
    code = ErrorCode.INVALID_PRICE
    status_code = 400
    default_message = "Invalid or inactive price"


class SamePlan(BillingError):
    code = ErrorCode.SAME_PLAN
    status_code = 400
    default_message = "You are already on this plan"

    def __init__(self, message: Optional[str] = None, current_plan: Optional[str] = None):
        super().__init__(message)
        self.current_plan = current_plan

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.current_plan:
            body["error"]["current_plan"] = self.current_plan
        return body


class SubscriptionCanceling(BillingError):
    code = ErrorCode.SUBSCRIPTION_CANCELING
    status_code = 400
    default_message = "Your subscription is scheduled to cancel. Reactivate it before changing plans."


class NoActiveSubscription(BillingError):
    code = ErrorCode.NO_ACTIVE_SUBSCRIPTION
    status_code = 404
    default_message = "No active subscription found"


class NoScheduledChange(BillingError):
    code = ErrorCode.NO_SCHEDULED_CHANGE
    status_code = 404
    default_message = "No scheduled plan change to cancel"


class UserNotFound(BillingError):
    code = ErrorCode.USER_NOT_FOUND
    status_code = 404
    default_message = "User not found. Please log in again."


class MissingCustomer(BillingError):
    code = ErrorCode.MISSING_CUSTOMER
    status_code = 400
    default_message = "No payment account is configured for this user"


class PlanChangeInProgress(BillingError):
    code = ErrorCode.PLAN_CHANGE_IN_PROGRESS
    status_code = 409
    retryable = True
    default_message = "Another plan change is in progress. Try again in a moment."


class RateLimited(BillingError):
    code = ErrorCode.RATE_LIMITED
    status_code = 429
    retryable = True
    default_message = "Too many requests. Try again later."


class ProcessorError(BillingError):
    """The payment processor call did not complete"""

    code = ErrorCode.PROCESSOR_UNAVAILABLE
    status_code = 503
    retryable = True
    default_message = "We couldn't reach the payment system. Please try again."


class ProcessorUnavailable(ProcessorError):
    """Timeout, network failure or processor-side 5xx"""


class ProcessorRejected(ProcessorError):
    """Processor refused the request (4xx, e.g. no such price)"""

    code = ErrorCode.PROCESSOR_REJECTED
    status_code = 502
    default_message = "The payment system rejected the request. Please try again later."


class InvalidSignature(BillingError):
    code = ErrorCode.INVALID_SIGNATURE
    status_code = 400
    default_message = "Invalid signature"


class InvalidPayload(BillingError):
    code = ErrorCode.INVALID_PAYLOAD
    status_code = 400
    default_message = "Invalid payload"


class WebhookNotConfigured(BillingError):
    code = ErrorCode.WEBHOOK_NOT_CONFIGURED
    status_code = 500
    retryable = True
    default_message = "Webhook secret not configured"


class WebhookProcessingError(BillingError):
    code = ErrorCode.WEBHOOK_PROCESSING_FAILED
    status_code = 500
    retryable = True
    default_message = "Webhook handler failed"


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render a BillingError as a JSON error payload"""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
