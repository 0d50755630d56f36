"""Email service - transactional billing notifications via Resend

Notifications are a side channel of reconciliation: every sender returns a
bool and never raises, so a mail outage cannot fail a webhook.
"""
import logging
from datetime import datetime
from typing import Optional

import resend

from app.core.config import settings, BILLING_RETURN_URL

logger = logging.getLogger(__name__)

# Resend test email addresses for safe testing
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"

CURRENCY_SYMBOLS = {"brl": "R$", "usd": "US$", "eur": "€"}


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"

    if not settings.RESEND_FROM_EMAIL:
        return False, "RESEND_FROM_EMAIL is not set in environment variables"

    return True, ""


def format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    """Render minor units for humans, e.g. 4990 brl -> 'R$ 49,90'"""
    if amount is None:
        return "Amount unavailable"
    code = (currency or "brl").lower()
    symbol = CURRENCY_SYMBOLS.get(code, code.upper())
    value = f"{amount / 100:.2f}"
    if code == "brl":
        value = value.replace(".", ",")
    return f"{symbol} {value}"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else "the end of the current period"


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Internal helper function to send email via Resend API.

    Args:
        to: Recipient email address
        subject: Email subject
        html: HTML email content

    Returns:
        bool: True on success, False on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY

        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns a dict with 'id' on success (object in older SDKs)
        email_id = None
        if isinstance(response, dict):
            email_id = response.get("id")
        elif hasattr(response, "id"):
            email_id = response.id

        if email_id:
            logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True
        logger.error(f"Email send returned invalid response: {response}")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def send_payment_success_email(
    email: str,
    user_name: str,
    plan_name: str,
    amount: str,
    invoice_url: Optional[str] = None
) -> bool:
    """Payment confirmation after a paid invoice"""
    invoice_link = ""
    if invoice_url:
        invoice_link = f'<p><a href="{invoice_url}" target="_blank" rel="noopener noreferrer">View invoice</a></p>'
    html = f"""
    <p>Hi {user_name},</p>
    <p>We received your payment of <strong>{amount}</strong> for the <strong>{plan_name}</strong> plan.</p>
    {invoice_link}
    <p>Thank you for staying with {settings.APP_NAME}.</p>
    """
    return _send_email(email, "Payment confirmed", html)


def send_payment_failed_email(email: str, user_name: str, plan_name: str, amount: str) -> bool:
    """Ask the user to update their payment method"""
    html = f"""
    <p>Hi {user_name},</p>
    <p>We couldn't process your payment of <strong>{amount}</strong> for the <strong>{plan_name}</strong> plan.</p>
    <p>Please update your payment method to keep your access:</p>
    <p><a href="{BILLING_RETURN_URL}" target="_blank" rel="noopener noreferrer">Update payment method</a></p>
    """
    return _send_email(email, "Payment failed - action needed", html)


def send_payment_action_required_email(email: str, user_name: str, invoice_url: Optional[str] = None) -> bool:
    """Payment needs extra authentication (3D Secure)"""
    link = invoice_url or BILLING_RETURN_URL
    html = f"""
    <p>Hi {user_name},</p>
    <p>Your bank needs you to confirm your latest payment.</p>
    <p><a href="{link}" target="_blank" rel="noopener noreferrer">Confirm payment</a></p>
    """
    return _send_email(email, "Confirm your payment", html)


def send_subscription_canceled_email(
    email: str,
    user_name: str,
    plan_name: str,
    end_date: Optional[datetime]
) -> bool:
    html = f"""
    <p>Hi {user_name},</p>
    <p>Your <strong>{plan_name}</strong> subscription was canceled.</p>
    <p>Access ends on {_format_date(end_date)}. You can subscribe again at any time.</p>
    """
    return _send_email(email, "Your subscription was canceled", html)


def send_trial_ending_email(email: str, user_name: str, plan_name: str, trial_end: Optional[datetime]) -> bool:
    html = f"""
    <p>Hi {user_name},</p>
    <p>Your <strong>{plan_name}</strong> trial ends on {_format_date(trial_end)}.</p>
    <p>Make sure a payment method is on file to keep your access:</p>
    <p><a href="{BILLING_RETURN_URL}" target="_blank" rel="noopener noreferrer">Manage billing</a></p>
    """
    return _send_email(email, "Your trial is ending soon", html)
