"""Email service - transactional email via Resend"""
import logging
from dataclasses import dataclass
from html import escape
from typing import Optional

import resend

from provisioner.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message}


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


def send_email(to_email: str, to_name: str, subject: str, html: str) -> EmailResult:
    """
    Send an email via Resend API. Never raises.

    Args:
        to_email: Recipient email address
        to_name: Recipient display name
        subject: Email subject
        html: HTML email content

    Returns:
        EmailResult with success flag and a message on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return EmailResult(False, "Email provider not configured")

    recipient = f"{to_name} <{to_email}>" if to_name else to_email

    try:
        resend.api_key = settings.RESEND_API_KEY

        response = resend.Emails.send(
            {
                "from": f"{settings.EMAIL_SENDER_NAME} <{settings.RESEND_FROM_EMAIL}>",
                "to": [recipient],
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns dict with 'id' field on success
        # Handle both dict and object responses
        email_id = None
        if isinstance(response, dict):
            email_id = response.get('id')
        elif hasattr(response, 'id'):
            email_id = response.id

        if email_id:
            logger.info(f"Email sent successfully to {to_email} (id: {email_id})")
            return EmailResult(True, "Email sent successfully")

        logger.error(f"Email send returned invalid response: {response} (type: {type(response)})")
        return EmailResult(False, "Email provider returned no message id")

    except Exception as exc:
        logger.error(f"Failed to send email to {to_email}: {exc}", exc_info=True)
        return EmailResult(False, str(exc))


def render_welcome_email(customer_name: str, customer_email: str) -> str:
    name = escape(customer_name or "there")
    email = escape(customer_email)
    brand = escape(settings.BRAND_NAME)
    login_url = escape(settings.CRM_LOGIN_URL)
    password = escape(settings.CRM_DEFAULT_PASSWORD)
    return f"""
    <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto;">
      <h1 style="background-color: #4CAF50; color: white; padding: 20px; text-align: center;">Welcome to {brand}</h1>
      <h2>Hi {name},</h2>
      <p>Your {brand} platform is ready!</p>
      <div style="background-color: #f9f9f9; padding: 20px; border: 1px solid #e0e0e0;">
        <h3>Login Details:</h3>
        <p><strong>URL:</strong> <a href="{login_url}">{login_url}</a></p>
        <p><strong>Email:</strong> {email}</p>
        <p><strong>Password:</strong> {password}</p>
      </div>
      <p><strong>Please change your password after first login.</strong></p>
      <p>If you have any questions, feel free to reach out to our support team.</p>
      <p style="color: #666; font-size: 14px;">Best regards,<br/>{escape(settings.EMAIL_SENDER_NAME)}</p>
    </div>
    """


def send_welcome_email(customer_name: str, customer_email: str) -> EmailResult:
    """Send login details after a CRM account has been created"""
    logger.info(f"Sending welcome email to: {customer_email}")
    return send_email(
        customer_email,
        customer_name,
        f"Your {settings.BRAND_NAME} Platform is Ready!",
        render_welcome_email(customer_name, customer_email),
    )
