"""Payment processor client - the Stripe RPC boundary

All calls go through one explicitly constructed ``ProcessorClient`` that owns
a ``stripe.StripeClient`` with a bounded HTTP timeout. Transient failures
(connection errors, timeouts, 409/5xx) are retried by the Stripe library with
capped exponential backoff; 4xx validation errors are never retried.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe
from fastapi import Request

from app.core.config import settings
from app.core.errors import (
    InvalidSignature, ProcessorRejected, ProcessorUnavailable, WebhookNotConfigured
)
from app.core.metrics import processor_errors_counter, webhook_signature_failures_counter

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

PRORATE = "create_prorations"
NO_PRORATION = "none"

# Errors worth retrying at the caller level (network, rate limit, processor 5xx)
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Stripe timestamps are Unix seconds"""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class ProcessorClient:
    """Thin wrapper over the Stripe API used by the billing services"""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        timeout: int = 10,
        max_network_retries: int = 2,
        webhook_tolerance: int = 300,
        client: Optional[Any] = None,
    ):
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        if client is not None:
            self._stripe = client
        else:
            self._stripe = stripe.StripeClient(
                api_key,
                max_network_retries=max_network_retries,
                http_client=stripe.RequestsClient(timeout=timeout),
            )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        """Run a Stripe call, translating library errors into billing errors"""
        try:
            return fn(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            processor_errors_counter.labels(operation=operation, kind="unavailable").inc()
            logger.error(f"Stripe {operation} failed (transient): {e}")
            raise ProcessorUnavailable() from e
        except stripe.StripeError as e:
            status = getattr(e, "http_status", None)
            if status and status >= 500:
                processor_errors_counter.labels(operation=operation, kind="unavailable").inc()
                logger.error(f"Stripe {operation} failed with HTTP {status}: {e}")
                raise ProcessorUnavailable() from e
            processor_errors_counter.labels(operation=operation, kind="rejected").inc()
            logger.error(f"Stripe {operation} rejected: {e}")
            raise ProcessorRejected() from e

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def get_or_create_customer(self, email: str, user_ref: str, name: Optional[str] = None) -> str:
        """Find a customer by email (de-duplicating double submits) or create one.

        The customer always ends up carrying ``metadata.user_ref`` so
        notifications that race ahead of checkout can be matched to the user.
        """
        existing = self._call(
            "customer_list", self._stripe.customers.list,
            params={"email": email, "limit": 1}
        )
        data = get_stripe_value(existing, "data", [])
        if data:
            customer = data[0]
            metadata = get_stripe_value(customer, "metadata", {}) or {}
            if not get_stripe_value(metadata, "user_ref"):
                self._call(
                    "customer_update", self._stripe.customers.update,
                    get_stripe_value(customer, "id"),
                    params={"metadata": {"user_ref": user_ref}}
                )
            return get_stripe_value(customer, "id")

        params = {"email": email, "metadata": {"user_ref": user_ref}}
        if name:
            params["name"] = name
        customer = self._call("customer_create", self._stripe.customers.create, params=params)
        customer_id = get_stripe_value(customer, "id")
        logger.info(f"Created Stripe customer {customer_id} for user {user_ref}")
        return customer_id

    def retrieve_customer(self, customer_id: str):
        return self._call("customer_retrieve", self._stripe.customers.retrieve, customer_id)

    # ------------------------------------------------------------------
    # Checkout & portal
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        price_ref: str,
        user_ref: str,
        success_url: str,
        cancel_url: str,
        customer_id: str,
    ) -> Dict[str, str]:
        """Create a subscription-mode checkout session with a single line item"""
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "customer": customer_id,
            "line_items": [{"price": price_ref, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_ref,
            "metadata": {"user_ref": user_ref},
            "subscription_data": {"metadata": {"user_ref": user_ref}},
        }
        session = self._call("checkout_create", self._stripe.checkout.sessions.create, params=params)
        return {"id": get_stripe_value(session, "id"), "url": get_stripe_value(session, "url")}

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "portal_create", self._stripe.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url}
        )
        return get_stripe_value(session, "url")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str):
        return self._call(
            "subscription_retrieve", self._stripe.subscriptions.retrieve,
            subscription_id, params={"expand": ["items.data.price"]}
        )

    def update_subscription_price(
        self,
        subscription_id: str,
        new_price_ref: str,
        proration_behavior: str = PRORATE
    ):
        """Swap the subscription's single item to a new price"""
        subscription = self.retrieve_subscription(subscription_id)
        items = get_stripe_value(get_stripe_value(subscription, "items"), "data", [])
        if not items:
            logger.error(f"Subscription {subscription_id} has no items, cannot swap price")
            raise ProcessorRejected("Subscription has no items")

        return self._call(
            "subscription_update", self._stripe.subscriptions.update,
            subscription_id,
            params={
                "items": [{"id": get_stripe_value(items[0], "id"), "price": new_price_ref}],
                "proration_behavior": proration_behavior,
            }
        )

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool):
        return self._call(
            "subscription_update", self._stripe.subscriptions.update,
            subscription_id, params={"cancel_at_period_end": cancel}
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def list_invoices(self, customer_id: str, limit: int = 10, starting_after: Optional[str] = None) -> Dict:
        params = {"customer": customer_id, "limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        invoices = self._call("invoice_list", self._stripe.invoices.list, params=params)
        return {
            "invoices": [_format_invoice(inv) for inv in get_stripe_value(invoices, "data", [])],
            "has_more": bool(get_stripe_value(invoices, "has_more", False)),
        }

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_notification(self, payload: bytes, sig_header: Optional[str]) -> None:
        """Authenticate a notification before anything parses it.

        Raises:
            WebhookNotConfigured: If no webhook secret is configured
            InvalidSignature: If the header is missing, stale or does not match
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise WebhookNotConfigured()
        if not sig_header:
            webhook_signature_failures_counter.inc()
            security_logger.warning("Webhook rejected: missing stripe-signature header")
            raise InvalidSignature("Missing stripe-signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig_header, self.webhook_secret, self.webhook_tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            webhook_signature_failures_counter.inc()
            security_logger.warning(f"Webhook rejected: invalid signature ({e})")
            raise InvalidSignature() from e


def _format_invoice(invoice: Any) -> Dict:
    transitions = get_stripe_value(invoice, "status_transitions")
    lines = get_stripe_value(get_stripe_value(invoice, "lines"), "data", [])
    return {
        "id": get_stripe_value(invoice, "id"),
        "number": get_stripe_value(invoice, "number"),
        "status": get_stripe_value(invoice, "status"),
        "amount": get_stripe_value(invoice, "amount_due"),
        "amount_paid": get_stripe_value(invoice, "amount_paid"),
        "currency": get_stripe_value(invoice, "currency"),
        "description": get_stripe_value(invoice, "description"),
        "period_start": timestamp_to_datetime(get_stripe_value(invoice, "period_start")),
        "period_end": timestamp_to_datetime(get_stripe_value(invoice, "period_end")),
        "created": timestamp_to_datetime(get_stripe_value(invoice, "created")),
        "due_date": timestamp_to_datetime(get_stripe_value(invoice, "due_date")),
        "paid_at": timestamp_to_datetime(get_stripe_value(transitions, "paid_at")),
        "hosted_invoice_url": get_stripe_value(invoice, "hosted_invoice_url"),
        "invoice_pdf": get_stripe_value(invoice, "invoice_pdf"),
        "lines": [
            {
                "description": get_stripe_value(line, "description"),
                "amount": get_stripe_value(line, "amount"),
                "quantity": get_stripe_value(line, "quantity"),
            }
            for line in lines
        ],
    }


def build_processor_client() -> ProcessorClient:
    """Construct the application's processor client from settings"""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set; processor calls will be rejected")
    return ProcessorClient(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )


def get_processor(request: Request) -> ProcessorClient:
    """Dependency: the processor client created at application startup"""
    return request.app.state.processor
