"""Shared pytest fixtures for test suite"""
import pytest
import json
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch
import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from provisioner.main import app
from provisioner.db.session import get_db
from provisioner.models import Base
from provisioner.models.customer import Customer, ExternalAccountRef
from provisioner.models.order import Order, OrderStatus
from provisioner.services.crm_service import CrmClient
from provisioner.services.customer_service import create_customer
from provisioner.services.email_service import EmailResult
from provisioner.services.webhook_service import process_webhook


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

CRM_BASE_URL = "https://crm.test"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Tables already exist on the test engine
        with patch('provisioner.main.init_db'):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


class FakeCrm:
    """In-memory CRM API served through httpx.MockTransport.

    Records every request. Responses default to success with sequential ids;
    queue_response() overrides the next matching call.
    """

    def __init__(self):
        self.requests = []
        self._queued = []
        self._next_id = 0

    def queue_response(self, method: str, path_prefix: str, status_code: int = 200, json_body=None, exc=None):
        self._queued.append((method, path_prefix, status_code, json_body, exc))

    def calls(self, method: str, path_prefix: str):
        return [
            r for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        ]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}_{self._next_id}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for queued in self._queued:
            method, path_prefix, status_code, json_body, exc = queued
            if request.method == method and path.startswith(path_prefix):
                self._queued.remove(queued)
                if exc is not None:
                    raise exc(f"{method} {path} failed", request=request)
                return httpx.Response(status_code, json=json_body)

        if request.method == "POST" and path.startswith("/locations"):
            return httpx.Response(201, json={"id": self._new_id("loc")})
        if request.method == "POST" and path.startswith("/users"):
            return httpx.Response(201, json={"id": self._new_id("user")})
        if request.method == "GET" and path.startswith("/locations/"):
            location_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"location": {"id": location_id, "name": "Acme"}})
        if request.method == "DELETE":
            return httpx.Response(200, json={"succeded": True})
        return httpx.Response(404, json={"message": "Not found"})

    def json_of(self, request: httpx.Request) -> dict:
        return json.loads(request.content)


@pytest.fixture(scope="function")
def fake_crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture(scope="function")
def welcome_sender():
    """Stand-in for send_welcome_email"""
    return Mock(return_value=EmailResult(True, "Email sent successfully"))


@pytest.fixture(scope="function")
def crm_client(fake_crm: FakeCrm, welcome_sender) -> Generator[CrmClient, None, None]:
    """CrmClient talking to FakeCrm, installed wherever the app builds its client"""
    crm = CrmClient(
        api_key="test-key",
        base_url=CRM_BASE_URL,
        company_id="company_test",
        transport=httpx.MockTransport(fake_crm.handler),
        email_sender=welcome_sender,
        sleep=Mock(),
    )
    with patch('provisioner.services.webhook_handlers.get_crm_client', return_value=crm):
        with patch('provisioner.api.crm.get_crm_client', return_value=crm):
            yield crm


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('provisioner.services.email_service.resend') as mock_resend:
        with patch('provisioner.services.email_service.settings.RESEND_API_KEY', 're_test_key'):
            mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
            yield mock_resend


@pytest.fixture(scope="function")
def deliver(db_session: Session):
    """Send a Polar event through the ingestion pipeline, as the HTTP endpoint does"""
    def _deliver(event_type: str, data: dict, event_id: str = None, signature: str = None, **extra):
        event = {"type": event_type, "data": data, "timestamp": "2026-01-01T00:00:00Z", **extra}
        if event_id:
            event["id"] = event_id
        return process_webhook(json.dumps(event).encode("utf-8"), signature, db_session)
    return _deliver


@pytest.fixture(scope="function")
def customer(db_session: Session) -> Customer:
    """A real (non-placeholder) customer linked to Polar customer cus_1"""
    customer = create_customer(
        RESEND_TEST_DELIVERED,
        db_session,
        first_name="Jane",
        last_name="Doe",
        business_name="Acme Dental",
        polar_customer_id="cus_1",
    )
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture(scope="function")
def pending_order(db_session: Session, customer: Customer) -> Order:
    """Pending order for checkout chk_1 under subscription sub_1"""
    order = Order(
        customer_id=customer.id,
        status=OrderStatus.PENDING,
        polar_checkout_id="chk_1",
        polar_subscription_id="sub_1",
        polar_product_id="prod_1",
        amount=1000,
        currency="USD",
        metadata_={},
    )
    db_session.add(order)
    db_session.commit()
    db_session.refresh(order)
    return order


@pytest.fixture(scope="function")
def provisioned_order(db_session: Session, pending_order: Order) -> Order:
    """Completed order whose customer holds CRM account user_9 / loc_9"""
    pending_order.status = OrderStatus.COMPLETED
    pending_order.crm_account_id = "user_9"
    pending_order.crm_location_id = "loc_9"
    pending_order.customer.set_external_account(ExternalAccountRef("user_9", "loc_9"))
    db_session.commit()
    db_session.refresh(pending_order)
    return pending_order


# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"
