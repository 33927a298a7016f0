import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import bookings
import qrpayload
from conftest import StubGateway, booking_body, make_slot, signup
from errors import ConflictError
from schemas import BookingCreate


def _counter(client, location_id):
    return client.get(f"/api/locations/{location_id}").json()["data"]["availableSlots"]


def _slot(client, slot_id):
    return client.get(f"/api/slots/{slot_id}").json()["data"]


@pytest.fixture
def slot(client, auth, location):
    make_slot(client, auth, location["_id"], "A2", position=2)
    return make_slot(client, auth, location["_id"], "A1")


def _book(client, auth, location, slot, **extra):
    r = client.post("/api/bookings", headers=auth, json=booking_body(location["_id"], slot["_id"], **extra))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_create_booking_joins_and_reserves(client, auth, location, slot, gateway):
    assert _counter(client, location["_id"]) == 2
    data = _book(client, auth, location, slot, paymentMethod="wallet")

    assert data["status"] == "active"
    assert data["paymentStatus"] == "success"
    assert data["paymentMethod"] == "wallet"
    assert data["transactionId"] == "TXN-TEST-1"
    assert data["vehicleNumber"] == "KA01AB1234"
    assert data["totalAmount"] == 100
    assert data["locationId"]["name"] == "City Mall Parking"
    assert data["slotId"]["slotNumber"] == "A1"
    assert data["userId"]["email"].endswith("@example.com")
    assert data["isOverdue"] is False

    start = datetime.fromisoformat(data["startTime"])
    end = datetime.fromisoformat(data["endTime"])
    assert end - start == timedelta(hours=2)

    assert _slot(client, slot["_id"])["isAvailable"] is False
    assert _counter(client, location["_id"]) == 1
    assert gateway.charges == [(100, "wallet")]

    profile = client.get("/api/auth/profile", headers=auth).json()["data"]
    assert [b["_id"] for b in profile["bookings"]] == [data["_id"]]


def test_qr_payload_round_trips(client, auth, location, slot):
    data = _book(client, auth, location, slot)
    payload = qrpayload.decode(data["qrCode"])
    assert payload.bookingId == data["_id"]
    assert payload.userId == data["userId"]["_id"]
    assert payload.locationId == location["_id"]
    assert payload.slotNumber == "A1"
    assert payload.vehicleNumber == "KA01AB1234"
    assert payload.amount == 100
    assert payload.startTime == datetime.fromisoformat(data["startTime"])
    assert qrpayload.encode(payload) == data["qrCode"]


def test_missing_fields_fail_before_lookup(client, auth, location, slot, gateway):
    body = booking_body(location["_id"], slot["_id"])
    del body["vehicleNumber"]
    r = client.post("/api/bookings", headers=auth, json=body)
    assert r.status_code == 400
    assert gateway.charges == []

    r = client.post("/api/bookings", headers=auth, json=booking_body(location["_id"], slot["_id"], duration=0))
    assert r.status_code == 400


def test_requires_token(client, location, slot):
    r = client.post("/api/bookings", json=booking_body(location["_id"], slot["_id"]))
    assert r.status_code == 401
    assert r.json()["success"] is False


def test_unknown_location_and_slot(client, auth, location, slot):
    r = client.post("/api/bookings", headers=auth, json=booking_body(str(ObjectId()), slot["_id"]))
    assert r.status_code == 404
    assert r.json()["message"] == "Location not found"

    r = client.post("/api/bookings", headers=auth, json=booking_body(location["_id"], str(ObjectId())))
    assert r.status_code == 404
    assert r.json()["message"] == "Slot not found"


def test_vehicle_type_mismatch_has_no_side_effects(client, auth, location, gateway, mongo):
    bike = make_slot(client, auth, location["_id"], "B1", vehicle_type="bike", row="B")
    r = client.post("/api/bookings", headers=auth, json=booking_body(location["_id"], bike["_id"], vehicle_type="car"))
    assert r.status_code == 409
    assert r.json()["message"] == "This slot is only available for bike"
    assert gateway.charges == []
    assert mongo["booking"].count_documents({}) == 0
    assert _slot(client, bike["_id"])["isAvailable"] is True


def test_unavailable_slot_conflicts(client, auth, location, slot, gateway):
    _book(client, auth, location, slot)
    other = signup(client)
    r = client.post("/api/bookings", headers=other, json=booking_body(location["_id"], slot["_id"]))
    assert r.status_code == 409
    assert r.json()["message"] == "Slot is not available"
    assert len(gateway.charges) == 1


def test_payment_failure_persists_nothing(client, auth, location, slot, gateway, mongo):
    gateway.succeed = False
    r = client.post("/api/bookings", headers=auth, json=booking_body(location["_id"], slot["_id"]))
    assert r.status_code == 400
    body = r.json()
    assert body["message"] == "Payment failed. Please try again."
    assert body["error"] == "Card declined"
    assert mongo["booking"].count_documents({}) == 0
    assert _slot(client, slot["_id"])["isAvailable"] is True
    assert _counter(client, location["_id"]) == 2
    assert client.get("/api/auth/profile", headers=auth).json()["data"]["bookings"] == []


def test_idempotency_key_replays_booking(client, auth, location, slot, gateway, mongo):
    headers = dict(auth, **{"Idempotency-Key": "order-42"})
    body = booking_body(location["_id"], slot["_id"])
    first = client.post("/api/bookings", headers=headers, json=body)
    second = client.post("/api/bookings", headers=headers, json=body)
    assert first.status_code == 201 and second.status_code == 201
    assert first.json()["data"]["_id"] == second.json()["data"]["_id"]
    assert len(gateway.charges) == 1
    assert mongo["booking"].count_documents({}) == 1


def test_retry_after_declined_payment_charges_again(client, auth, location, slot, gateway):
    headers = dict(auth, **{"Idempotency-Key": "order-43"})
    body = booking_body(location["_id"], slot["_id"])
    gateway.succeed = False
    assert client.post("/api/bookings", headers=headers, json=body).status_code == 400
    gateway.succeed = True
    assert client.post("/api/bookings", headers=headers, json=body).status_code == 201
    assert len(gateway.charges) == 2


def test_cancel_restores_slot_and_counter(client, auth, location, slot, gateway):
    booking = _book(client, auth, location, slot)
    assert _counter(client, location["_id"]) == 1

    r = client.put(f"/api/bookings/{booking['_id']}/cancel", headers=auth)
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["status"] == "cancelled"
    assert data["paymentStatus"] == "refunded"
    assert gateway.refunds == [("TXN-TEST-1", 100)]
    assert _slot(client, slot["_id"])["isAvailable"] is True
    assert _counter(client, location["_id"]) == 2

    r = client.put(f"/api/bookings/{booking['_id']}/cancel", headers=auth)
    assert r.status_code == 409
    assert r.json()["message"] == "Booking is already cancelled"
    assert len(gateway.refunds) == 1


def test_checkin_checkout_lifecycle(client, auth, location, slot):
    booking = _book(client, auth, location, slot)
    bid = booking["_id"]

    r = client.put(f"/api/bookings/{bid}/checkout", headers=auth)
    assert r.status_code == 409
    assert r.json()["message"] == "Please check-in first"

    r = client.put(f"/api/bookings/{bid}/checkin", headers=auth)
    assert r.status_code == 200
    assert r.json()["data"]["checkInTime"] is not None

    r = client.put(f"/api/bookings/{bid}/checkin", headers=auth)
    assert r.status_code == 409
    assert r.json()["message"] == "Already checked in"

    r = client.put(f"/api/bookings/{bid}/checkout", headers=auth)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "completed"
    assert data["checkOutTime"] is not None
    assert _slot(client, slot["_id"])["isAvailable"] is True
    assert _counter(client, location["_id"]) == 2

    for action in ("checkout", "checkin"):
        r = client.put(f"/api/bookings/{bid}/{action}", headers=auth)
        assert r.status_code == 409
        assert r.json()["message"] == "Booking is not active"

    r = client.put(f"/api/bookings/{bid}/cancel", headers=auth)
    assert r.status_code == 409
    assert r.json()["message"] == "Cannot cancel completed booking"
    assert client.get(f"/api/bookings/{bid}", headers=auth).json()["data"]["status"] == "completed"


def test_other_users_are_forbidden(client, auth, location, slot):
    booking = _book(client, auth, location, slot)
    other = signup(client)
    assert client.get(f"/api/bookings/{booking['_id']}", headers=other).status_code == 403
    for action in ("cancel", "checkin", "checkout"):
        r = client.put(f"/api/bookings/{booking['_id']}/{action}", headers=other)
        assert r.status_code == 403
    assert client.get(f"/api/bookings/{booking['_id']}", headers=auth).json()["data"]["status"] == "active"
    assert client.get(f"/api/bookings/{ObjectId()}", headers=auth).status_code == 404


def test_listings(client, auth, location, slot):
    second = make_slot(client, auth, location["_id"], "A3", position=3)
    first = _book(client, auth, location, slot)
    latest = _book(client, auth, location, second)
    client.put(f"/api/bookings/{first['_id']}/cancel", headers=auth)

    other = signup(client)
    r = client.get("/api/bookings/my-bookings", headers=other)
    assert r.json()["count"] == 0

    r = client.get("/api/bookings/my-bookings", headers=auth)
    assert [b["_id"] for b in r.json()["data"]] == [latest["_id"], first["_id"]]
    assert r.json()["data"][0]["slotId"]["vehicleType"] == "car"

    r = client.get("/api/bookings/my-bookings", headers=auth, params={"status": "cancelled"})
    assert [b["_id"] for b in r.json()["data"]] == [first["_id"]]

    r = client.get("/api/bookings", headers=other, params={"status": "active", "locationId": location["_id"]})
    assert [b["_id"] for b in r.json()["data"]] == [latest["_id"]]

    r = client.get("/api/bookings", headers=other, params={"endDate": "2000-01-01T00:00:00"})
    assert r.json()["count"] == 0


def test_overdue_flag_is_computed_on_read(client, auth, location, slot, mongo):
    booking = _book(client, auth, location, slot)
    mongo["booking"].update_one(
        {"_id": ObjectId(booking["_id"])},
        {"$set": {"endTime": datetime(2000, 1, 1)}},
    )
    data = client.get(f"/api/bookings/{booking['_id']}", headers=auth).json()["data"]
    assert data["isOverdue"] is True
    assert data["status"] == "active"


def test_concurrent_creates_for_one_slot(mongo):
    location_id = mongo["location"].insert_one(
        {"name": "Race Lot", "address": "x", "coordinates": {"lat": 0, "long": 0}, "totalSlots": 1,
         "availableSlots": 1, "floors": 1, "type": "other"}
    ).inserted_id
    slot_id = mongo["slot"].insert_one(
        {"locationId": location_id, "slotNumber": "R1", "vehicleType": "car", "pricePerHour": 10,
         "floor": "Ground", "row": "A", "position": 1, "isAvailable": True}
    ).inserted_id
    users = [{"_id": mongo["user"].insert_one({"name": f"u{i}", "bookings": []}).inserted_id} for i in range(8)]

    class SlowGateway(StubGateway):
        def charge(self, amount, method):
            time.sleep(0.01)
            return super().charge(amount, method)

    gateway = SlowGateway()
    req = BookingCreate(
        locationId=str(location_id),
        slotId=str(slot_id),
        vehicleType="car",
        vehicleNumber="ab12",
        startTime=datetime(2030, 1, 1, 9, 0),
        duration=1,
    )

    def attempt(user):
        try:
            bookings.create_booking(mongo, user, req, gateway)
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, users))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7
    assert len(gateway.charges) == 1
    assert mongo["booking"].count_documents({"slotId": slot_id, "status": "active"}) == 1
    assert mongo["slot"].find_one({"_id": slot_id})["isAvailable"] is False
    assert mongo["location"].find_one({"_id": location_id})["availableSlots"] == 0


def test_cancel_frees_slot_even_when_refund_fails(client, auth, location, slot, mongo):
    booking = _book(client, auth, location, slot)
    user = mongo["user"].find_one({"_id": ObjectId(booking["userId"]["_id"])})

    class BrokenRefunds(StubGateway):
        def refund(self, transaction_id, amount):
            raise RuntimeError("gateway unreachable")

    with pytest.raises(RuntimeError):
        bookings.cancel_booking(mongo, user, booking["_id"], BrokenRefunds())

    stored = mongo["booking"].find_one({"_id": ObjectId(booking["_id"])})
    assert stored["status"] == "cancelled"
    assert stored["paymentStatus"] == "success"
    assert _slot(client, slot["_id"])["isAvailable"] is True
    assert _counter(client, location["_id"]) == 2


def test_idempotency_key_reused_for_another_slot_conflicts(client, auth, location, slot, gateway, mongo):
    other_slot = make_slot(client, auth, location["_id"], "A3", position=3)
    headers = dict(auth, **{"Idempotency-Key": "order-44"})
    assert client.post("/api/bookings", headers=headers, json=booking_body(location["_id"], slot["_id"])).status_code == 201

    r = client.post("/api/bookings", headers=headers, json=booking_body(location["_id"], other_slot["_id"]))
    assert r.status_code == 409
    assert r.json()["message"] == "Idempotency key already used for a different booking"
    assert len(gateway.charges) == 1
    assert _slot(client, other_slot["_id"])["isAvailable"] is True


def test_concurrent_retries_with_one_key_share_a_booking(mongo):
    location_id = mongo["location"].insert_one(
        {"name": "Retry Lot", "address": "x", "coordinates": {"lat": 0, "long": 0}, "totalSlots": 1,
         "availableSlots": 1, "floors": 1, "type": "other"}
    ).inserted_id
    slot_id = mongo["slot"].insert_one(
        {"locationId": location_id, "slotNumber": "K1", "vehicleType": "car", "pricePerHour": 10,
         "floor": "Ground", "row": "A", "position": 1, "isAvailable": True}
    ).inserted_id
    user = {"_id": mongo["user"].insert_one({"name": "retry", "bookings": []}).inserted_id}

    class SlowGateway(StubGateway):
        def charge(self, amount, method):
            time.sleep(0.01)
            return super().charge(amount, method)

    gateway = SlowGateway()
    req = BookingCreate(
        locationId=str(location_id),
        slotId=str(slot_id),
        vehicleType="car",
        vehicleNumber="ab12",
        startTime=datetime(2030, 1, 1, 9, 0),
        duration=1,
        idempotencyKey="retry-1",
    )

    with ThreadPoolExecutor(max_workers=4) as pool:
        created = list(pool.map(lambda _: bookings.create_booking(mongo, user, req, gateway), range(4)))

    assert len({b["_id"] for b in created}) == 1
    assert len(gateway.charges) == 1
    assert mongo["booking"].count_documents({}) == 1
