import os
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_LATENCY_SECS", "0")
os.environ["DATABASE_URL"] = ""

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import ensure_indexes, get_db  # noqa: E402
from main import app  # noqa: E402
from payments import PaymentGateway, PaymentResult, get_payment_gateway  # noqa: E402


class StubGateway(PaymentGateway):
    """Deterministic gateway: succeeds unless told to decline."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.charges = []
        self.refunds = []

    def charge(self, amount, method):
        self.charges.append((amount, method))
        if not self.succeed:
            return PaymentResult(False, None, "Card declined")
        return PaymentResult(True, f"TXN-TEST-{len(self.charges)}", "Payment successful")

    def refund(self, transaction_id, amount):
        self.refunds.append((transaction_id, amount))


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()[f"parking_{uuid.uuid4().hex[:8]}"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def client(mongo, gateway):
    app.dependency_overrides[get_db] = lambda: mongo
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def signup(client, email=None, name="Test User"):
    email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
    r = client.post(
        "/api/auth/signup",
        json={"name": name, "email": email, "password": "secret123", "phone": "9999999999"},
    )
    assert r.status_code == 201, r.text
    token = r.json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth(client):
    return signup(client)


@pytest.fixture
def location(client, auth):
    r = client.post(
        "/api/locations",
        headers=auth,
        json={
            "name": "City Mall Parking",
            "address": "123 Main Street, Downtown",
            "coordinates": {"lat": 12.9716, "long": 77.5946},
            "totalSlots": 4,
            "floors": 1,
            "type": "mall",
        },
    )
    assert r.status_code == 201, r.text
    return r.json()["data"]


def make_slot(client, auth, location_id, number, vehicle_type="car", row="A", position=1, floor="Floor 1", **flags):
    body = {
        "locationId": location_id,
        "slotNumber": number,
        "vehicleType": vehicle_type,
        "pricePerHour": 50,
        "floor": floor,
        "row": row,
        "position": position,
    }
    body.update(flags)
    r = client.post("/api/slots", headers=auth, json=body)
    assert r.status_code == 201, r.text
    return r.json()["data"]


def booking_body(location_id, slot_id, vehicle_type="car", duration=2, **extra):
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    body = {
        "locationId": location_id,
        "slotId": slot_id,
        "vehicleType": vehicle_type,
        "vehicleNumber": " ka01ab1234 ",
        "startTime": start.isoformat(),
        "duration": duration,
    }
    body.update(extra)
    return body
