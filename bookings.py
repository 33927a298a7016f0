"""
Booking workflow: create, cancel, check-in, check-out and listings.

Slot reservation is a compare-and-swap on ``isAvailable`` performed after the
payment succeeds, inside a per-slot critical section, so a slot is held by at
most one active booking. The location's ``availableSlots`` is always refreshed
with a recount rather than incremented.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header
from pymongo import DESCENDING
from pymongo.database import Database

import payments
import qrpayload
from database import get_db, get_documents, parse_object_id, serialize, serialize_many, to_utc, utcnow
from errors import ConflictError, ForbiddenError, NotFoundError, PaymentFailedError
from locations import get_location, recount_available
from payments import PaymentGateway, get_payment_gateway
from schemas import Booking, BookingCreate, BookingStatus
from security import get_current_user, require_admin
from slots import active_holder, get_slot, release, reserve

logger = logging.getLogger("parking.bookings")

router = APIRouter(prefix="/api/bookings", tags=["bookings"])

_locks_guard = threading.Lock()
_slot_locks: Dict[str, threading.Lock] = {}


@contextmanager
def slot_lock(slot_id: ObjectId):
    with _locks_guard:
        lock = _slot_locks.setdefault(str(slot_id), threading.Lock())
    with lock:
        yield


# --------------------------------------------------------------------------
# Views
# --------------------------------------------------------------------------

def _summaries(db: Database, collection: str, ids: Iterable, fields: Iterable[str]) -> Dict[ObjectId, dict]:
    ids = list({i for i in ids if i is not None})
    if not ids:
        return {}
    projection = {f: 1 for f in fields}
    return {doc["_id"]: doc for doc in db[collection].find({"_id": {"$in": ids}}, projection)}


def populate(
    db: Database,
    bookings: List[dict],
    location_fields=("name", "address", "coordinates", "type"),
    slot_fields=("slotNumber", "floor", "vehicleType"),
    user_fields=("name", "email", "phone"),
) -> List[dict]:
    """Replace reference ids with summaries of the referenced documents."""
    now = utcnow()
    locations = _summaries(db, "location", (b.get("locationId") for b in bookings), location_fields)
    slots = _summaries(db, "slot", (b.get("slotId") for b in bookings), slot_fields)
    users = _summaries(db, "user", (b.get("userId") for b in bookings), user_fields) if user_fields else {}
    out = []
    for b in bookings:
        view = dict(b)
        view["locationId"] = locations.get(b.get("locationId"), b.get("locationId"))
        view["slotId"] = slots.get(b.get("slotId"), b.get("slotId"))
        if user_fields:
            view["userId"] = users.get(b.get("userId"), b.get("userId"))
        end = b.get("endTime")
        view["isOverdue"] = b.get("status") == "active" and end is not None and end < now
        out.append(view)
    return out


# --------------------------------------------------------------------------
# Workflow
# --------------------------------------------------------------------------

def _get_booking(db: Database, booking_id) -> dict:
    oid = parse_object_id(booking_id, "Booking")
    booking = db["booking"].find_one({"_id": oid})
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _owned_booking(db: Database, user: dict, booking_id, action: str) -> dict:
    booking = _get_booking(db, booking_id)
    if booking["userId"] != user["_id"]:
        raise ForbiddenError(f"Not authorized to {action}")
    return booking


def _release_slot(db: Database, booking: dict) -> None:
    """Free the booking's slot unless another active booking now holds it."""
    holder = active_holder(db, booking["slotId"], exclude=booking["_id"])
    if holder:
        logger.warning("slot %s held by booking %s, not released", booking["slotId"], holder["_id"])
    else:
        release(db, booking["slotId"])
    recount_available(db, booking["locationId"])


def _replay(db: Database, user: dict, key: Optional[str], req: BookingCreate) -> Optional[dict]:
    """Return the booking already created under ``key`` for this user, if any."""
    if not key:
        return None
    existing = db["booking"].find_one({"userId": user["_id"], "idempotencyKey": key})
    if not existing:
        return None
    if str(existing["slotId"]) != req.slotId or str(existing["locationId"]) != req.locationId:
        raise ConflictError("Idempotency key already used for a different booking")
    logger.info("replaying booking %s for idempotency key %s", existing["_id"], key)
    return existing


def create_booking(
    db: Database,
    user: dict,
    req: BookingCreate,
    gateway: PaymentGateway,
    idempotency_key: Optional[str] = None,
) -> dict:
    key = (idempotency_key or req.idempotencyKey or "").strip() or None
    existing = _replay(db, user, key, req)
    if existing:
        return existing

    location = get_location(db, req.locationId)
    slot = get_slot(db, req.slotId)
    if slot["locationId"] != location["_id"]:
        raise NotFoundError("Slot not found at this location")

    start = to_utc(req.startTime)
    end = start + timedelta(hours=req.duration)

    with slot_lock(slot["_id"]):
        # a request holding the lock may have just created this key's booking
        existing = _replay(db, user, key, req)
        if existing:
            return existing
        slot = get_slot(db, slot["_id"])
        if not slot.get("isAvailable"):
            raise ConflictError("Slot is not available")
        if slot["vehicleType"] != req.vehicleType:
            raise ConflictError(f"This slot is only available for {slot['vehicleType']}")

        total = slot["pricePerHour"] * req.duration
        payment_key = f"{user['_id']}:{key}" if key else None
        result = payments.charge(db, gateway, total, req.paymentMethod, payment_key)
        if not result.success:
            raise PaymentFailedError("Payment failed. Please try again.", result.message)

        if not reserve(db, slot["_id"]):
            payments.refund(db, gateway, result.transaction_id, total)
            raise ConflictError("Slot is not available")

        now = utcnow()
        booking = Booking(
            userId=user["_id"],
            locationId=location["_id"],
            slotId=slot["_id"],
            vehicleType=req.vehicleType,
            vehicleNumber=req.vehicleNumber,
            bookingTime=now,
            startTime=start,
            endTime=end,
            duration=req.duration,
            totalAmount=total,
            paymentStatus="success",
            paymentMethod=req.paymentMethod,
            transactionId=result.transaction_id,
            status="active",
            idempotencyKey=key,
        ).model_dump()
        booking["_id"] = ObjectId()
        booking["createdAt"] = now
        booking["qrCode"] = qrpayload.encode(qrpayload.for_booking(booking, slot["slotNumber"]))

        try:
            db["booking"].insert_one(booking)
        except Exception:
            logger.exception("booking insert failed, releasing slot %s", slot["_id"])
            release(db, slot["_id"])
            payments.refund(db, gateway, result.transaction_id, total)
            raise

        recount_available(db, location["_id"])
        db["user"].update_one({"_id": user["_id"]}, {"$push": {"bookings": booking["_id"]}})

    logger.info("booking %s created for slot %s (%.2f)", booking["_id"], slot["slotNumber"], total)
    return booking


def cancel_booking(db: Database, user: dict, booking_id, gateway: PaymentGateway) -> dict:
    booking = _owned_booking(db, user, booking_id, "cancel this booking")
    if booking["status"] == "cancelled":
        raise ConflictError("Booking is already cancelled")
    if booking["status"] == "completed":
        raise ConflictError("Cannot cancel completed booking")

    result = db["booking"].update_one(
        {"_id": booking["_id"], "status": "active"},
        {"$set": {"status": "cancelled", "cancelledAt": utcnow()}},
    )
    if result.modified_count == 0:
        raise ConflictError("Booking is no longer active")

    # The slot is freed before the gateway call; paymentStatus only flips once the refund goes through.
    _release_slot(db, booking)
    payments.refund(db, gateway, booking.get("transactionId"), booking.get("totalAmount", 0))
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": {"paymentStatus": "refunded"}})
    logger.info("booking %s cancelled", booking["_id"])
    return _get_booking(db, booking["_id"])


def check_in(db: Database, user: dict, booking_id) -> dict:
    booking = _owned_booking(db, user, booking_id, "check-in to this booking")
    if booking["status"] != "active":
        raise ConflictError("Booking is not active")
    if booking.get("checkInTime"):
        raise ConflictError("Already checked in")

    result = db["booking"].update_one(
        {"_id": booking["_id"], "status": "active", "checkInTime": None},
        {"$set": {"checkInTime": utcnow()}},
    )
    if result.modified_count == 0:
        raise ConflictError("Already checked in")
    return _get_booking(db, booking["_id"])


def check_out(db: Database, user: dict, booking_id) -> dict:
    booking = _owned_booking(db, user, booking_id, "check-out from this booking")
    if booking["status"] != "active":
        raise ConflictError("Booking is not active")
    if not booking.get("checkInTime"):
        raise ConflictError("Please check-in first")
    if booking.get("checkOutTime"):
        raise ConflictError("Already checked out")

    result = db["booking"].update_one(
        {"_id": booking["_id"], "status": "active", "checkOutTime": None},
        {"$set": {"checkOutTime": utcnow(), "status": "completed"}},
    )
    if result.modified_count == 0:
        raise ConflictError("Already checked out")

    _release_slot(db, booking)
    logger.info("booking %s completed", booking["_id"])
    return _get_booking(db, booking["_id"])


def list_my_bookings(db: Database, user: dict, status: Optional[str] = None) -> List[dict]:
    query: dict = {"userId": user["_id"]}
    if status:
        query["status"] = status
    return get_documents(db, "booking", query, sort=[("createdAt", DESCENDING), ("_id", DESCENDING)])


def list_all_bookings(
    db: Database,
    status: Optional[str] = None,
    location_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[dict]:
    query: dict = {}
    if status:
        query["status"] = status
    if location_id:
        query["locationId"] = parse_object_id(location_id, "Location")
    if start_date or end_date:
        window = {}
        if start_date:
            window["$gte"] = to_utc(start_date)
        if end_date:
            window["$lte"] = to_utc(end_date)
        query["bookingTime"] = window
    return get_documents(db, "booking", query, sort=[("createdAt", DESCENDING), ("_id", DESCENDING)])


def get_booking(db: Database, user: dict, booking_id) -> dict:
    return _owned_booking(db, user, booking_id, "access this booking")


# --------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------

@router.post("", status_code=201)
def create_booking_route(
    req: BookingCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=64),
    db: Database = Depends(get_db),
    user: dict = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = create_booking(db, user, req, gateway, idempotency_key)
    view = populate(
        db,
        [booking],
        location_fields=("name", "address", "coordinates"),
        slot_fields=("slotNumber", "floor"),
    )[0]
    return {"success": True, "message": "Booking created successfully", "data": serialize(view)}


@router.get("/my-bookings")
def my_bookings_route(
    status: Optional[BookingStatus] = None,
    db: Database = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    bookings = populate(db, list_my_bookings(db, user, status), user_fields=())
    return {"success": True, "count": len(bookings), "data": serialize_many(bookings)}


@router.get("")
def all_bookings_route(
    status: Optional[BookingStatus] = None,
    locationId: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    db: Database = Depends(get_db),
    user: dict = Depends(require_admin),
):
    bookings = populate(
        db,
        list_all_bookings(db, status, locationId, startDate, endDate),
        location_fields=("name", "address"),
        slot_fields=("slotNumber", "floor"),
    )
    return {"success": True, "count": len(bookings), "data": serialize_many(bookings)}


@router.get("/{booking_id}")
def get_booking_route(booking_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    view = populate(db, [get_booking(db, user, booking_id)])[0]
    return {"success": True, "data": serialize(view)}


@router.put("/{booking_id}/cancel")
def cancel_route(
    booking_id: str,
    db: Database = Depends(get_db),
    user: dict = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = cancel_booking(db, user, booking_id, gateway)
    return {"success": True, "message": "Booking cancelled successfully", "data": serialize(booking)}


@router.put("/{booking_id}/checkin")
def checkin_route(booking_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    booking = check_in(db, user, booking_id)
    return {"success": True, "message": "Checked in successfully", "data": serialize(booking)}


@router.put("/{booking_id}/checkout")
def checkout_route(booking_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    booking = check_out(db, user, booking_id)
    return {"success": True, "message": "Checked out successfully", "data": serialize(booking)}
