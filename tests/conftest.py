import threading
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from database import Database
from errors import ProfileNotFound, UpstreamUnavailable
from gateway import FAILED, PENDING, SUCCEEDED, GatewaySession, PaymentGateway, PaymentStatus
from profiles import ProfileRecord, ProfileStore, SqlProfileStore

SUPERADMIN_USERNAME = "root"
SUPERADMIN_PASSWORD = "root-password-123"


class FakeGateway(PaymentGateway):
    """Pasarela en memoria: las sesiones quedan pendientes hasta que el test las liquida."""

    def __init__(self):
        self.sessions = {}
        self.status_calls = 0
        self.unavailable = False
        self._lock = threading.Lock()

    def create_session(self, amount_cents, currency, metadata, line_items=None):
        if self.unavailable:
            raise UpstreamUnavailable("Payment gateway", "down")
        with self._lock:
            reference = f"cs_test_{len(self.sessions) + 1}"
            self.sessions[reference] = {
                "state": PENDING,
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": dict(metadata),
                "line_items": list(line_items or []),
            }
        return GatewaySession(redirect_handle=f"https://pay.example.test/{reference}", reference=reference)

    def get_status(self, reference):
        with self._lock:
            self.status_calls += 1
        if self.unavailable:
            raise UpstreamUnavailable("Payment gateway", "down")
        session = self.sessions.get(reference)
        if session is None:
            return PaymentStatus(reference=reference, state=FAILED)
        return PaymentStatus(
            reference=reference,
            state=session["state"],
            amount_cents=session["amount_cents"],
            currency=session["currency"],
            metadata=dict(session["metadata"]),
        )

    # Helpers de test
    def settle(self, reference, state=SUCCEEDED):
        self.sessions[reference]["state"] = state

    def add_paid(self, reference, amount_cents, metadata, currency="usd"):
        self.sessions[reference] = {
            "state": SUCCEEDED,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": dict(metadata),
            "line_items": [],
        }


class MemoryProfileStore(ProfileStore):
    """ProfileStore externo en memoria: sus perfiles no existen en la base."""
    def __init__(self):
        self.records = {}

    def put(self, profile_id, price="2.00", approved=True, contacts=None, name="Remoto"):
        record = ProfileRecord(id=profile_id, display_name=name, price=Decimal(price), is_approved=approved,
                               contact_methods=contacts if contacts is not None else {"email": "r@example.com"})
        self.records[profile_id] = record
        return record

    def get_profile(self, profile_id):
        if profile_id not in self.records:
            raise ProfileNotFound(profile_id)
        return self.records[profile_id]

    def update_profile(self, profile_id, price=None, is_approved=None, contact_methods=None):
        current = self.get_profile(profile_id)
        record = replace(
            current,
            price=Decimal(price) if price is not None else current.price,
            is_approved=is_approved if is_approved is not None else current.is_approved,
            contact_methods=contact_methods if contact_methods is not None else current.contact_methods,
        )
        self.records[profile_id] = record
        return record


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'market-test.db'}",
        reconcile_interval=0,
        log_json=False,
        log_level="DEBUG",
        superadmin_username=SUPERADMIN_USERNAME,
        superadmin_email="root@example.com",
        superadmin_password=SUPERADMIN_PASSWORD,
    )


@pytest.fixture
def db(settings: Settings) -> Database:
    database = Database(settings.database_url)
    database.init()
    yield database
    database.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def profile_store(db: Database) -> SqlProfileStore:
    return SqlProfileStore(db)


@pytest.fixture
def make_profile(profile_store: SqlProfileStore):
    def _make(price="2.00", approved=True, contacts=None, name="Ana"):
        return profile_store.create_profile(
            display_name=name,
            price=Decimal(price),
            contact_methods=contacts if contacts is not None else {"phone": "+54 11 5555 0000"},
            is_approved=approved,
        )
    return _make


@pytest.fixture
def app(settings: Settings, gateway: FakeGateway, db: Database):
    return create_app(settings=settings, gateway=gateway, database=db)


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register_buyer(client: TestClient, email="buyer@example.com", username="buyer1", password="password123") -> str:
    res = client.post("/auth/register", json={"email": email, "username": username, "password": password})
    assert res.status_code == 201, res.text
    client.cookies.clear()
    return res.json()["sessionToken"]


def login_admin(client: TestClient, username=SUPERADMIN_USERNAME, password=SUPERADMIN_PASSWORD) -> str:
    res = client.post("/admin/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    client.cookies.clear()
    return res.json()["sessionToken"]
