"""Email endpoints"""
import logging

from fastapi import APIRouter

from provisioner.schemas.email import SendTestEmailRequest
from provisioner.services.email_service import send_welcome_email

router = APIRouter(prefix="/email", tags=["email"])
logger = logging.getLogger(__name__)


@router.post("/test-send")
def test_send_email(request: SendTestEmailRequest):
    """Send the welcome email to an address, to check the email setup"""
    customer_name = request.customerName or "Test User"
    logger.info(f"Testing email send to: {request.customerEmail}")
    result = send_welcome_email(customer_name, request.customerEmail)
    return {
        "success": result.success,
        "message": result.message,
        "customerEmail": request.customerEmail,
        "customerName": customer_name,
    }
