"""CRM provisioning - GoHighLevel sub-account (location) + admin user

Account creation is two ordered remote steps: the location is created
first, then a user scoped to it. Every public operation returns an outcome
object instead of raising for remote failures, so callers decide whether a
failure matters to them.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

import httpx

from provisioner.core.config import settings
from provisioner.core.exceptions import ProvisioningError, RemoteRejected
from provisioner.core.metrics import crm_operations_counter
from provisioner.services.email_service import EmailResult, send_welcome_email

logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS: Dict[str, bool] = {
    # Conversations and automation
    "conversationsEnabled": True,
    "workflowsEnabled": True,
    "triggersEnabled": True,
    "phoneCallEnabled": True,

    # Core CRM
    "contactsEnabled": True,
    "opportunitiesEnabled": True,
    "appointmentsEnabled": True,
    "dashboardStatsEnabled": True,
    "agentReportingEnabled": True,

    # Marketing
    "campaignsEnabled": True,
    "marketingEnabled": True,
    "bulkRequestsEnabled": True,

    # Settings and utilities
    "settingsEnabled": True,
    "tagsEnabled": True,
    "leadValueEnabled": True,
    "contentAiEnabled": True,
    "exportPaymentsEnabled": True,

    # Full read/write access
    "assignedDataOnly": False,
    "campaignsReadOnly": False,
    "workflowsReadOnly": False,

    # Disabled features
    "reviewsEnabled": False,
    "onlineListingsEnabled": False,
    "funnelsEnabled": False,
    "websitesEnabled": False,
    "membershipEnabled": False,
    "communitiesEnabled": False,
    "socialPlanner": False,
    "bloggingEnabled": False,
    "invoiceEnabled": False,
    "paymentsEnabled": False,
    "recordPaymentEnabled": False,
    "refundsEnabled": False,
    "cancelSubscriptionEnabled": False,
    "affiliateManagerEnabled": False,
    "adwordsReportingEnabled": False,
    "facebookAdsReportingEnabled": False,
    "attributionsReportingEnabled": False,
    "botService": False,
}

DEFAULT_SCOPES = ["contacts.write", "campaigns.readonly"]


# ============================================================================
# OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class ProvisioningOk:
    account_id: str
    location_id: str
    message: str = "Account created successfully"
    email_sent: bool = False

    success = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "id": self.account_id,
            "locationId": self.location_id,
            "message": self.message,
            "emailSent": self.email_sent,
        }


@dataclass(frozen=True)
class ProvisioningFailed:
    message: str
    stage: str  # 'location' | 'user' | 'config'
    location_id: Optional[str] = None  # Set when the location exists but the user step failed

    success = False

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": False, "message": self.message, "stage": self.stage}
        if self.location_id:
            result["locationId"] = self.location_id
        return result


ProvisioningResult = Union[ProvisioningOk, ProvisioningFailed]


@dataclass(frozen=True)
class RemoteResult:
    """Outcome of a single remote call (delete user, delete location)"""
    success: bool
    id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class AccountDeletion:
    user_id: Optional[str]
    location_id: Optional[str]
    user_deleted: bool = False
    location_deleted: bool = False
    user_error: Optional[str] = None
    location_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.user_deleted and self.location_deleted

    @property
    def message(self) -> str:
        if self.success:
            return "Account deleted successfully"
        return (
            f"Partial deletion - User: {'OK' if self.user_deleted else 'Failed'}, "
            f"Location: {'OK' if self.location_deleted else 'Failed'}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "id": self.user_id,
            "locationId": self.location_id,
            "message": self.message,
            "userDeleted": self.user_deleted,
            "locationDeleted": self.location_deleted,
            "userError": self.user_error,
            "locationError": self.location_error,
        }


@dataclass
class AccountContact:
    """Who the CRM account is for"""
    first_name: str
    email: str
    last_name: str = ""
    phone: str = ""
    business_name: Optional[str] = None

    @classmethod
    def from_full_name(cls, name: str, email: str, phone: Optional[str] = None,
                       business_name: Optional[str] = None) -> "AccountContact":
        parts = (name or "").strip().split(" ")
        return cls(
            first_name=parts[0] or "User",
            last_name=" ".join(parts[1:]),
            email=email,
            phone=phone or "",
            business_name=business_name or None,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def account_name(self) -> str:
        return self.business_name or self.full_name


# ============================================================================
# CLIENT
# ============================================================================

def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        message = body["message"]
        return ", ".join(message) if isinstance(message, list) else str(message)
    return response.text or f"HTTP {response.status_code}"


def _is_location_not_found(error: RemoteRejected) -> bool:
    text = str(error).lower()
    return error.status_code in (400, 404, 422) and "location" in text and (
        "not found" in text or "does not exist" in text or "invalid" in text
    )


class CrmClient:
    """Bearer-token client for the CRM account API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        company_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        email_sender: Callable[[str, str], EmailResult] = send_welcome_email,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = settings.CRM_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.CRM_API_URL).rstrip("/")
        self.company_id = settings.CRM_COMPANY_ID if company_id is None else company_id
        self.timeout = settings.CRM_REQUEST_TIMEOUT if timeout is None else timeout
        self._transport = transport
        self._email_sender = email_sender
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Version": settings.CRM_API_VERSION,
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, operation: str, json: Optional[dict] = None) -> Dict[str, Any]:
        """Perform one remote call.

        Raises:
            RemoteRejected: non-2xx response, timeout or connection error
        """
        try:
            with self._client() as client:
                response = client.request(method, path, json=json)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            crm_operations_counter.labels(operation=operation, status="failed").inc()
            raise RemoteRejected(_error_message(e.response), status_code=e.response.status_code)
        except httpx.TimeoutException:
            crm_operations_counter.labels(operation=operation, status="timeout").inc()
            raise RemoteRejected(f"CRM request timed out after {self.timeout}s")
        except httpx.RequestError as e:
            crm_operations_counter.labels(operation=operation, status="failed").inc()
            raise RemoteRejected(f"CRM request failed: {e}")

        crm_operations_counter.labels(operation=operation, status="success").inc()
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ------------------------------------------------------------------
    # Raising steps
    # ------------------------------------------------------------------

    def _post_location(self, name: str, email: Optional[str] = None, phone: Optional[str] = None) -> str:
        payload = {
            "name": name,
            "country": settings.CRM_DEFAULT_COUNTRY,
            "timezone": settings.CRM_DEFAULT_TIMEZONE,
            "companyId": self.company_id,
        }
        if email:
            payload["email"] = email
        if phone:
            payload["phone"] = phone

        logger.info(f"Creating CRM location for: {name}")
        body = self._request("POST", "/locations/", "create_location", json=payload)

        location_id = body.get("locationId") or body.get("id")
        if not location_id:
            logger.error(f"No location ID in response. Full response: {body}")
            raise ProvisioningError("missing location id", stage="location")
        return location_id

    def _user_payload(self, location_id: str, contact: AccountContact) -> Dict[str, Any]:
        return {
            "locationIds": [location_id],
            "companyId": self.company_id,
            "firstName": contact.first_name or contact.business_name or "User",
            "lastName": contact.last_name or "",
            "email": contact.email,
            "password": settings.CRM_DEFAULT_PASSWORD,
            "phone": contact.phone or "",
            "type": "account",
            "role": "admin",
            "permissions": DEFAULT_PERMISSIONS,
            "scopes": DEFAULT_SCOPES,
            "scopesAssignedToOnly": DEFAULT_SCOPES,
            "profilePhoto": "",
            "platformLanguage": "en_US",
        }

    def _post_user(self, location_id: str, contact: AccountContact) -> str:
        payload = self._user_payload(location_id, contact)
        logger.info(f"User payload: {dict(payload, password='***', permissions='<default>')}")

        retries = settings.CRM_USER_CREATE_RETRIES
        delay = settings.CRM_USER_CREATE_RETRY_BACKOFF
        for attempt in range(retries + 1):
            try:
                body = self._request("POST", "/users/", "create_user", json=payload)
                break
            except RemoteRejected as e:
                if attempt == retries or not _is_location_not_found(e):
                    raise
                logger.warning(
                    f"Location {location_id} not visible yet (attempt {attempt + 1}/{retries + 1}), "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delay *= 2

        user_id = body.get("id") or body.get("userId")
        if not user_id:
            logger.error(f"No user ID in response. Full response: {body}")
            raise ProvisioningError("missing user id", stage="user")
        return user_id

    # ------------------------------------------------------------------
    # Outcome-returning operations
    # ------------------------------------------------------------------

    def create_location(self, name: str, email: Optional[str] = None, phone: Optional[str] = None) -> ProvisioningResult:
        """Create only a sub-account/location"""
        try:
            location_id = self._post_location(name, email, phone)
        except (RemoteRejected, ProvisioningError) as e:
            logger.error(f"Failed to create CRM location: {e}")
            return ProvisioningFailed(message=str(e), stage="location")
        logger.info(f"CRM location created: {location_id}")
        return ProvisioningOk(account_id=location_id, location_id=location_id, message="Location created successfully")

    def create_user_in_location(self, location_id: str, contact: AccountContact) -> ProvisioningResult:
        """Create an admin user in an existing location"""
        try:
            user_id = self._post_user(location_id, contact)
        except (RemoteRejected, ProvisioningError) as e:
            logger.error(f"Failed to create user in location {location_id}: {e}")
            return ProvisioningFailed(message=str(e), stage="user", location_id=location_id)
        logger.info(f"User created: {user_id}")
        return ProvisioningOk(account_id=user_id, location_id=location_id, message="User created successfully")

    def create_account(self, contact: AccountContact) -> ProvisioningResult:
        """Two-step create: location, then user in that location, then welcome email.

        The welcome email is best-effort; a failed send still yields ProvisioningOk.
        """
        if not self.api_key:
            logger.error("CRM_API_KEY not configured, cannot create account")
            return ProvisioningFailed(message="CRM not configured", stage="config")

        logger.info(f"Step 1: Creating CRM location/sub-account for: {contact.account_name}")
        try:
            location_id = self._post_location(contact.account_name, contact.email, contact.phone)
        except (RemoteRejected, ProvisioningError) as e:
            logger.error(f"Failed to create CRM account for {contact.email}: {e}")
            return ProvisioningFailed(message=str(e), stage="location")
        logger.info(f"Step 1 Success: Location created with ID: {location_id}")

        propagation_delay = settings.CRM_LOCATION_PROPAGATION_DELAY
        if propagation_delay > 0:
            logger.info(f"Waiting {propagation_delay}s for the CRM to propagate the location...")
            self._sleep(propagation_delay)

        logger.info(f"Step 2: Creating user in location: {location_id}")
        try:
            user_id = self._post_user(location_id, contact)
        except (RemoteRejected, ProvisioningError) as e:
            # The location now exists remotely without a user
            logger.error(f"Failed to create CRM user for {contact.email} in location {location_id}: {e}")
            return ProvisioningFailed(message=str(e), stage="user", location_id=location_id)
        logger.info(f"Step 2 Success: User created with ID: {user_id}")

        email_result = self._email_sender(contact.full_name or contact.account_name, contact.email)
        if email_result.success:
            logger.info(f"Welcome email sent successfully to {contact.email}")
        else:
            logger.warning(f"Failed to send welcome email to {contact.email}: {email_result.message}")

        return ProvisioningOk(
            account_id=user_id,
            location_id=location_id,
            email_sent=email_result.success,
        )

    def create_account_from_order(
        self,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str] = None,
        business_name: Optional[str] = None,
    ) -> ProvisioningResult:
        """Create an account from the order's customer details"""
        return self.create_account(
            AccountContact.from_full_name(customer_name, customer_email, customer_phone, business_name)
        )

    def recreate_account(self, contact: AccountContact) -> ProvisioningResult:
        """Provision a fresh account for a customer whose previous one was deleted"""
        logger.info(f"Recreating CRM account for {contact.email}")
        return self.create_account(contact)

    def get_location(self, location_id: str) -> Dict[str, Any]:
        """Fetch location details.

        Raises:
            RemoteRejected: the CRM rejected the lookup
        """
        return self._request("GET", f"/locations/{location_id}", "get_location")

    def delete_user(self, user_id: str) -> RemoteResult:
        logger.info(f"Deleting CRM user: {user_id}")
        try:
            self._request("DELETE", f"/users/{user_id}", "delete_user")
        except RemoteRejected as e:
            if e.status_code == 404:
                # Already gone, e.g. removed by an earlier partial deletion
                logger.info(f"CRM user {user_id} not found, treating as deleted")
                return RemoteResult(success=True, id=user_id, message="User already deleted")
            logger.error(f"Failed to delete CRM user {user_id}: {e}")
            return RemoteResult(success=False, id=user_id, message=str(e))
        logger.info(f"CRM user deleted successfully: {user_id}")
        return RemoteResult(success=True, id=user_id, message="User deleted successfully")

    def delete_location(self, location_id: str) -> RemoteResult:
        logger.info(f"Deleting CRM location: {location_id}")
        try:
            self._request("DELETE", f"/locations/{location_id}", "delete_location")
        except RemoteRejected as e:
            if e.status_code == 404:
                logger.info(f"CRM location {location_id} not found, treating as deleted")
                return RemoteResult(success=True, id=location_id, message="Location already deleted")
            logger.error(f"Failed to delete CRM location {location_id}: {e}")
            return RemoteResult(success=False, id=location_id, message=str(e))
        logger.info(f"CRM location deleted successfully: {location_id}")
        return RemoteResult(success=True, id=location_id, message="Location deleted successfully")

    def delete_account(self, user_id: Optional[str], location_id: Optional[str]) -> AccountDeletion:
        """Delete user and location; each is attempted regardless of the other"""
        logger.info(f"Deleting CRM account - User: {user_id}, Location: {location_id}")

        user_deleted = location_deleted = False
        user_error = "No user id" if not user_id else None
        location_error = "No location id" if not location_id else None

        if user_id:
            user_result = self.delete_user(user_id)
            user_deleted = user_result.success
            user_error = None if user_result.success else user_result.message

        if location_id:
            location_result = self.delete_location(location_id)
            location_deleted = location_result.success
            location_error = None if location_result.success else location_result.message

        return AccountDeletion(
            user_id=user_id,
            location_id=location_id,
            user_deleted=user_deleted,
            location_deleted=location_deleted,
            user_error=user_error,
            location_error=location_error,
        )


def get_crm_client() -> CrmClient:
    """Client configured from settings"""
    return CrmClient()
