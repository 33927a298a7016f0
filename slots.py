import logging
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, status
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import BulkWriteError, DuplicateKeyError

from database import get_db, get_documents, parse_object_id, serialize, serialize_many, utcnow
from errors import ConflictError, NotFoundError
from locations import get_location, recount_available
from schemas import Slot, SlotBulkCreate, SlotCreate, SlotStatusUpdate, SlotUpdate, VehicleType
from security import require_admin

logger = logging.getLogger("parking.slots")

router = APIRouter(prefix="/api/slots", tags=["slots"])

LOCATION_SUMMARY = ("name", "address")


def _with_location(db: Database, slots: List[dict], fields=LOCATION_SUMMARY) -> List[dict]:
    """Replace ``locationId`` with a summary of the owning location."""
    ids = {s["locationId"] for s in slots}
    if not ids:
        return slots
    projection = {f: 1 for f in fields} if fields else None
    by_id = {loc["_id"]: loc for loc in db["location"].find({"_id": {"$in": list(ids)}}, projection)}
    for s in slots:
        s["locationId"] = by_id.get(s["locationId"], s["locationId"])
    return slots


def get_slot(db: Database, slot_id) -> dict:
    oid = parse_object_id(slot_id, "Slot")
    slot = db["slot"].find_one({"_id": oid})
    if not slot:
        raise NotFoundError("Slot not found")
    return slot


def list_slots(
    db: Database,
    location_id,
    vehicle_type: Optional[str] = None,
    available: Optional[bool] = None,
    floor: Optional[str] = None,
) -> List[dict]:
    query: dict = {"locationId": parse_object_id(location_id, "Location")}
    if vehicle_type:
        query["vehicleType"] = vehicle_type
    if available is not None:
        query["isAvailable"] = available
    if floor:
        query["floor"] = floor
    return get_documents(db, "slot", query, sort=[("slotNumber", ASCENDING)])


def list_floors(db: Database, location_id) -> List[str]:
    oid = parse_object_id(location_id, "Location")
    return sorted(f for f in db["slot"].distinct("floor", {"locationId": oid}) if f is not None)


def floor_layout(db: Database, location_id, floor: str) -> dict:
    oid = parse_object_id(location_id, "Location")
    slots = get_documents(db, "slot", {"locationId": oid, "floor": floor})
    if not slots:
        raise NotFoundError("No slots found for this floor")

    slots.sort(key=lambda s: (str(s.get("row")), s.get("position") or 0))
    rows = sorted({str(s.get("row")) for s in slots})
    slots_by_row: Dict[str, List[dict]] = {row: [] for row in rows}
    for s in slots:
        slots_by_row[str(s.get("row"))].append(s)

    stats = {
        "total": len(slots),
        "available": sum(1 for s in slots if s.get("isAvailable")),
        "booked": sum(1 for s in slots if not s.get("isAvailable")),
        "handicapped": sum(1 for s in slots if s.get("isHandicapped")),
        "nearEntrance": sum(1 for s in slots if s.get("isNearEntrance")),
        "nearExit": sum(1 for s in slots if s.get("isNearExit")),
        "carSlots": sum(1 for s in slots if s.get("vehicleType") == "car"),
        "bikeSlots": sum(1 for s in slots if s.get("vehicleType") == "bike"),
    }
    return {"floor": floor, "rows": rows, "slotsByRow": slots_by_row, "stats": stats, "data": slots}


def create_slot(db: Database, req: SlotCreate) -> dict:
    location = get_location(db, req.locationId)
    if db["slot"].find_one({"locationId": location["_id"], "slotNumber": req.slotNumber}):
        raise ConflictError("Slot number already exists for this location")

    slot = Slot(
        locationId=location["_id"],
        slotNumber=req.slotNumber,
        vehicleType=req.vehicleType,
        pricePerHour=req.pricePerHour,
        floor=req.floor or "Ground",
        row=req.row,
        position=req.position,
        isPremium=req.isPremium,
        isHandicapped=req.isHandicapped,
        isNearEntrance=req.isNearEntrance,
        isNearExit=req.isNearExit,
        isNearLift=req.isNearLift,
    ).model_dump()
    slot["createdAt"] = utcnow()
    try:
        slot_id = db["slot"].insert_one(slot).inserted_id
    except DuplicateKeyError:
        raise ConflictError("Slot number already exists for this location")
    recount_available(db, location["_id"])
    return db["slot"].find_one({"_id": slot_id})


def create_bulk_slots(db: Database, req: SlotBulkCreate) -> List[dict]:
    location = get_location(db, req.locationId)
    now = utcnow()
    docs = []
    for i in range(req.startNumber, req.endNumber + 1):
        doc = Slot(
            locationId=location["_id"],
            slotNumber=f"{req.slotPrefix}{i}",
            vehicleType=req.vehicleType,
            pricePerHour=req.pricePerHour,
            floor=req.floor or "Ground",
            row=req.row,
            position=i,
            isPremium=req.isPremium,
            isHandicapped=req.isHandicapped,
            isNearEntrance=req.isNearEntrance,
            isNearExit=req.isNearExit,
            isNearLift=req.isNearLift,
        ).model_dump()
        doc["_id"] = ObjectId()
        doc["createdAt"] = now
        docs.append(doc)

    numbers = [d["slotNumber"] for d in docs]
    taken = db["slot"].distinct("slotNumber", {"locationId": location["_id"], "slotNumber": {"$in": numbers}})
    if taken:
        raise ConflictError("One or more slot numbers already exist for this location", ", ".join(sorted(taken)))

    ids = [d["_id"] for d in docs]
    try:
        db["slot"].insert_many(docs)
    except (BulkWriteError, DuplicateKeyError):
        # a concurrent insert won the race; undo whatever part of the batch landed
        db["slot"].delete_many({"_id": {"$in": ids}})
        raise ConflictError("One or more slot numbers already exist for this location")
    recount_available(db, location["_id"])
    logger.info("bulk created %d slots at location %s", len(docs), location["_id"])
    return get_documents(db, "slot", {"_id": {"$in": ids}}, sort=[("slotNumber", ASCENDING)])


def active_holder(db: Database, slot_id: ObjectId, exclude: Optional[ObjectId] = None) -> Optional[dict]:
    """Return the active booking occupying ``slot_id``, if any."""
    query: dict = {"slotId": slot_id, "status": "active"}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    return db["booking"].find_one(query, {"_id": 1})


def _guard_release(db: Database, slot: dict) -> None:
    if active_holder(db, slot["_id"]):
        raise ConflictError("Slot is held by an active booking")


def set_availability(db: Database, slot_id, is_available: bool) -> dict:
    slot = get_slot(db, slot_id)
    if is_available:
        _guard_release(db, slot)
    db["slot"].update_one({"_id": slot["_id"]}, {"$set": {"isAvailable": is_available}})
    recount_available(db, slot["locationId"])
    return db["slot"].find_one({"_id": slot["_id"]})


def update_slot(db: Database, slot_id, req: SlotUpdate) -> dict:
    slot = get_slot(db, slot_id)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if changes.get("isAvailable"):
        _guard_release(db, slot)
    if changes:
        try:
            db["slot"].update_one({"_id": slot["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise ConflictError("Slot number already exists for this location")
        recount_available(db, slot["locationId"])
    return db["slot"].find_one({"_id": slot["_id"]})


def delete_slot(db: Database, slot_id) -> None:
    slot = get_slot(db, slot_id)
    db["slot"].delete_one({"_id": slot["_id"]})
    recount_available(db, slot["locationId"])


def reserve(db: Database, slot_id: ObjectId) -> bool:
    """Flip a slot to unavailable only if it is currently available."""
    result = db["slot"].update_one({"_id": slot_id, "isAvailable": True}, {"$set": {"isAvailable": False}})
    return result.modified_count == 1


def release(db: Database, slot_id: ObjectId) -> bool:
    result = db["slot"].update_one({"_id": slot_id}, {"$set": {"isAvailable": True}})
    return result.matched_count == 1


# --------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------

@router.get("/location/{location_id}")
def slots_by_location_route(
    location_id: str,
    vehicleType: Optional[VehicleType] = None,
    available: Optional[bool] = None,
    floor: Optional[str] = None,
    db: Database = Depends(get_db),
):
    slots = _with_location(db, list_slots(db, location_id, vehicleType, available, floor))
    return {"success": True, "count": len(slots), "data": serialize_many(slots)}


@router.get("/location/{location_id}/available")
def available_slots_route(
    location_id: str,
    vehicleType: Optional[VehicleType] = None,
    floor: Optional[str] = None,
    db: Database = Depends(get_db),
):
    slots = _with_location(db, list_slots(db, location_id, vehicleType, True, floor))
    return {"success": True, "count": len(slots), "data": serialize_many(slots)}


@router.get("/location/{location_id}/floors")
def floors_route(location_id: str, db: Database = Depends(get_db)):
    floors = list_floors(db, location_id)
    return {"success": True, "count": len(floors), "data": floors}


@router.get("/location/{location_id}/floor/{floor_name}")
def floor_layout_route(location_id: str, floor_name: str, db: Database = Depends(get_db)):
    layout = floor_layout(db, location_id, floor_name)
    _with_location(db, layout["data"])
    return {"success": True, **serialize(layout)}


@router.get("/{slot_id}")
def get_slot_route(slot_id: str, db: Database = Depends(get_db)):
    slot = _with_location(db, [get_slot(db, slot_id)], fields=None)[0]
    return {"success": True, "data": serialize(slot)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_slot_route(req: SlotCreate, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    return {"success": True, "data": serialize(create_slot(db, req))}


@router.post("/bulk", status_code=status.HTTP_201_CREATED)
def create_bulk_route(req: SlotBulkCreate, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    slots = create_bulk_slots(db, req)
    return {"success": True, "count": len(slots), "data": serialize_many(slots)}


@router.put("/{slot_id}/status")
def slot_status_route(
    slot_id: str,
    req: SlotStatusUpdate,
    db: Database = Depends(get_db),
    user: dict = Depends(require_admin),
):
    return {"success": True, "data": serialize(set_availability(db, slot_id, req.isAvailable))}


@router.put("/{slot_id}")
def update_slot_route(slot_id: str, req: SlotUpdate, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    return {"success": True, "data": serialize(update_slot(db, slot_id, req))}


@router.delete("/{slot_id}")
def delete_slot_route(slot_id: str, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    delete_slot(db, slot_id)
    return {"success": True, "message": "Slot deleted successfully"}
