"""Manual CRM provisioning endpoints"""
import logging

from fastapi import APIRouter, HTTPException

from provisioner.core.exceptions import RemoteRejected
from provisioner.schemas.crm import CreateAccountFromOrderRequest, CreateAccountRequest
from provisioner.services.crm_service import AccountContact, get_crm_client

router = APIRouter(prefix="/crm", tags=["crm"])
logger = logging.getLogger(__name__)


@router.post("/account")
def create_account(request: CreateAccountRequest):
    """Create a CRM sub-account and admin user"""
    contact = AccountContact(
        first_name=request.firstName,
        last_name=request.lastName,
        email=request.email,
        phone=request.phone or "",
        business_name=request.businessName,
    )
    return get_crm_client().create_account(contact).to_dict()


@router.post("/account/create")
def create_account_simple(request: CreateAccountFromOrderRequest):
    """Create an account from a full name, as done for paid orders"""
    outcome = get_crm_client().create_account_from_order(
        request.name, request.email, request.phone, request.businessName
    )
    return outcome.to_dict()


@router.get("/account/{location_id}")
def get_account(location_id: str):
    try:
        return get_crm_client().get_location(location_id)
    except RemoteRejected as e:
        logger.error(f"Failed to fetch CRM location {location_id}: {e}")
        raise HTTPException(e.status_code or 400, str(e) or "Failed to fetch account")
