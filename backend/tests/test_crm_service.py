"""CRM provisioning client tests"""
import pytest
from unittest.mock import Mock, patch

import httpx

from provisioner.core.exceptions import RemoteRejected
from provisioner.services.crm_service import (
    DEFAULT_PERMISSIONS,
    AccountContact,
    AccountDeletion,
    CrmClient,
    ProvisioningFailed,
    ProvisioningOk,
)
from provisioner.services.email_service import EmailResult

CONTACT = AccountContact(first_name="Jane", last_name="Doe", email="delivered@resend.dev",
                         phone="+15550100", business_name="Acme Dental")


@pytest.mark.critical
class TestCreateAccount:
    """Test the two-step location-then-user create"""

    def test_creates_location_then_user(self, crm_client, fake_crm, welcome_sender):
        outcome = crm_client.create_account(CONTACT)

        assert isinstance(outcome, ProvisioningOk)
        assert outcome.success is True
        assert outcome.location_id == "loc_1"
        assert outcome.account_id == "user_2"
        assert outcome.email_sent is True
        assert [(r.method, r.url.path) for r in fake_crm.requests] == [("POST", "/locations/"), ("POST", "/users/")]
        welcome_sender.assert_called_once_with("Jane Doe", "delivered@resend.dev")

    def test_request_payloads_and_headers(self, crm_client, fake_crm):
        crm_client.create_account(CONTACT)
        location_request, user_request = fake_crm.requests

        assert location_request.headers["Authorization"] == "Bearer test-key"
        assert location_request.headers["Version"] == "2021-07-28"
        location = fake_crm.json_of(location_request)
        assert location["name"] == "Acme Dental"
        assert location["companyId"] == "company_test"
        assert location["email"] == "delivered@resend.dev"

        user = fake_crm.json_of(user_request)
        assert user["locationIds"] == ["loc_1"]
        assert user["role"] == "admin"
        assert user["type"] == "account"
        assert user["permissions"] == DEFAULT_PERMISSIONS
        assert user["scopes"] == ["contacts.write", "campaigns.readonly"]
        assert user["firstName"] == "Jane"

    def test_to_dict(self, crm_client):
        result = crm_client.create_account(CONTACT).to_dict()
        assert result["success"] is True
        assert result["id"] == "user_2"
        assert result["locationId"] == "loc_1"
        assert result["message"] == "Account created successfully"

    def test_location_id_read_from_alternate_field(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/locations", 201, {"locationId": "loc_alt"})
        outcome = crm_client.create_account(CONTACT)
        assert outcome.location_id == "loc_alt"

    def test_user_id_read_from_alternate_field(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/users", 201, {"userId": "user_alt"})
        outcome = crm_client.create_account(CONTACT)
        assert outcome.account_id == "user_alt"

    def test_missing_location_id_fails_without_user_call(self, crm_client, fake_crm, welcome_sender):
        fake_crm.queue_response("POST", "/locations", 201, {"name": "no id here"})
        outcome = crm_client.create_account(CONTACT)

        assert isinstance(outcome, ProvisioningFailed)
        assert outcome.stage == "location"
        assert "missing location id" in outcome.message
        assert fake_crm.calls("POST", "/users") == []
        welcome_sender.assert_not_called()

    def test_location_rejected(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/locations", 401, {"message": "Invalid JWT"})
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert outcome.message == "Invalid JWT"
        assert outcome.to_dict() == {"success": False, "message": "Invalid JWT", "stage": "location"}

    def test_user_rejected_reports_orphan_location(self, crm_client, fake_crm, welcome_sender):
        fake_crm.queue_response("POST", "/users", 422, {"message": ["email must be an email"]})
        outcome = crm_client.create_account(CONTACT)

        assert isinstance(outcome, ProvisioningFailed)
        assert outcome.stage == "user"
        assert outcome.location_id == "loc_1"
        assert outcome.message == "email must be an email"
        welcome_sender.assert_not_called()

    def test_missing_user_id_is_failure(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/users", 201, {})
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert outcome.stage == "user"
        assert outcome.location_id == "loc_1"

    def test_timeout_is_ordinary_failure(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/locations", exc=httpx.ReadTimeout)
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert "timed out" in outcome.message

    def test_connection_error_is_ordinary_failure(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/locations", exc=httpx.ConnectError)
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert "CRM request failed" in outcome.message

    def test_email_failure_still_succeeds(self, crm_client, welcome_sender):
        welcome_sender.return_value = EmailResult(False, "quota exceeded")
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is True
        assert outcome.email_sent is False

    def test_not_configured(self, fake_crm):
        crm = CrmClient(api_key="", base_url="https://crm.test", transport=httpx.MockTransport(fake_crm.handler))
        outcome = crm.create_account(CONTACT)
        assert outcome.success is False
        assert outcome.stage == "config"
        assert fake_crm.requests == []

    def test_propagation_delay(self, crm_client):
        with patch('provisioner.services.crm_service.settings.CRM_LOCATION_PROPAGATION_DELAY', 2.0):
            crm_client.create_account(CONTACT)
        crm_client._sleep.assert_called_once_with(2.0)


@pytest.mark.high
class TestUserCreateRetry:
    """Test retry when the new location is not visible yet"""

    def test_retries_location_not_found(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/users", 400, {"message": "Location not found"})
        with patch('provisioner.services.crm_service.settings.CRM_USER_CREATE_RETRIES', 2):
            outcome = crm_client.create_account(CONTACT)

        assert outcome.success is True
        assert len(fake_crm.calls("POST", "/users")) == 2
        crm_client._sleep.assert_called_once_with(1.0)

    def test_backoff_doubles_and_gives_up(self, crm_client, fake_crm):
        for _ in range(3):
            fake_crm.queue_response("POST", "/users", 404, {"message": "Location does not exist"})
        with patch('provisioner.services.crm_service.settings.CRM_USER_CREATE_RETRIES', 2):
            outcome = crm_client.create_account(CONTACT)

        assert outcome.success is False
        assert outcome.location_id == "loc_1"
        assert len(fake_crm.calls("POST", "/users")) == 3
        assert [c.args[0] for c in crm_client._sleep.call_args_list] == [1.0, 2.0]

    def test_other_errors_not_retried(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/users", 400, {"message": "Email already exists"})
        with patch('provisioner.services.crm_service.settings.CRM_USER_CREATE_RETRIES', 2):
            outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert len(fake_crm.calls("POST", "/users")) == 1

    def test_no_retry_by_default(self, crm_client, fake_crm):
        fake_crm.queue_response("POST", "/users", 400, {"message": "Location not found"})
        outcome = crm_client.create_account(CONTACT)
        assert outcome.success is False
        assert len(fake_crm.calls("POST", "/users")) == 1


@pytest.mark.critical
class TestDeleteAccount:
    """Test deletion of user and location"""

    def test_both_deleted(self, crm_client, fake_crm):
        deletion = crm_client.delete_account("user_9", "loc_9")
        assert isinstance(deletion, AccountDeletion)
        assert deletion.success is True
        assert deletion.message == "Account deleted successfully"
        assert [(r.method, r.url.path) for r in fake_crm.requests] == [
            ("DELETE", "/users/user_9"), ("DELETE", "/locations/loc_9")
        ]

    def test_user_failure_still_deletes_location(self, crm_client, fake_crm):
        fake_crm.queue_response("DELETE", "/users", 500, {"message": "Internal error"})
        deletion = crm_client.delete_account("user_9", "loc_9")

        assert deletion.success is False
        assert deletion.user_deleted is False
        assert deletion.location_deleted is True
        assert deletion.user_error == "Internal error"
        assert deletion.message == "Partial deletion - User: Failed, Location: OK"
        assert len(fake_crm.calls("DELETE", "/locations")) == 1

    def test_location_failure_reported(self, crm_client, fake_crm):
        fake_crm.queue_response("DELETE", "/locations", 502, {"message": "Bad gateway"})
        deletion = crm_client.delete_account("user_9", "loc_9")
        assert deletion.message == "Partial deletion - User: OK, Location: Failed"
        assert deletion.to_dict()["success"] is False

    def test_already_deleted_side_counts_as_deleted(self, crm_client, fake_crm):
        fake_crm.queue_response("DELETE", "/users", 404, {"message": "User not found"})
        deletion = crm_client.delete_account("user_9", "loc_9")

        assert deletion.success is True
        assert deletion.user_deleted is True
        assert deletion.user_error is None

    def test_missing_location_counts_as_deleted(self, crm_client, fake_crm):
        fake_crm.queue_response("DELETE", "/locations", 404, {"message": "Location not found"})
        result = crm_client.delete_location("loc_9")
        assert result.success is True
        assert result.message == "Location already deleted"

    def test_missing_id_not_attempted(self, crm_client, fake_crm):
        deletion = crm_client.delete_account(None, "loc_9")
        assert deletion.success is False
        assert deletion.user_error == "No user id"
        assert fake_crm.calls("DELETE", "/users") == []
        assert deletion.location_deleted is True


@pytest.mark.medium
class TestLocationLookup:
    """Test single-call operations"""

    def test_get_location(self, crm_client):
        assert crm_client.get_location("loc_9") == {"location": {"id": "loc_9", "name": "Acme"}}

    def test_get_location_rejected_raises(self, crm_client, fake_crm):
        fake_crm.queue_response("GET", "/locations", 403, {"message": "Forbidden"})
        with pytest.raises(RemoteRejected) as exc_info:
            crm_client.get_location("loc_9")
        assert exc_info.value.status_code == 403

    def test_create_location_only(self, crm_client, fake_crm):
        outcome = crm_client.create_location("Acme", email="a@example.com")
        assert outcome.success is True
        assert outcome.location_id == "loc_1"
        assert fake_crm.calls("POST", "/users") == []

    def test_create_user_in_location(self, crm_client, fake_crm):
        outcome = crm_client.create_user_in_location("loc_7", CONTACT)
        assert outcome.success is True
        assert fake_crm.json_of(fake_crm.requests[0])["locationIds"] == ["loc_7"]

    def test_create_account_from_order_splits_name(self, crm_client, fake_crm):
        crm_client.create_account_from_order("Jane van Dyke", "jane@example.com", business_name=None)
        location, user = fake_crm.requests
        assert fake_crm.json_of(location)["name"] == "Jane van Dyke"
        assert fake_crm.json_of(user)["firstName"] == "Jane"
        assert fake_crm.json_of(user)["lastName"] == "van Dyke"

    def test_recreate_account(self, crm_client, fake_crm):
        outcome = crm_client.recreate_account(CONTACT)
        assert outcome.success is True
        assert len(fake_crm.calls("POST", "/locations")) == 1
