import logging
import re
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query, status
from pymongo import ASCENDING
from pymongo.database import Database

from database import create_document, get_db, get_documents, parse_object_id, serialize, serialize_many
from errors import NotFoundError, ValidationError
from geo import haversine
from schemas import Location, LocationCreate, LocationType, LocationUpdate, PricePerHour
from security import require_admin

logger = logging.getLogger("parking.locations")

router = APIRouter(prefix="/api/locations", tags=["locations"])

DEFAULT_RADIUS_KM = 10.0


# --------------------------------------------------------------------------
# Registry operations
# --------------------------------------------------------------------------

def get_location(db: Database, location_id) -> dict:
    oid = parse_object_id(location_id, "Location")
    location = db["location"].find_one({"_id": oid})
    if not location:
        raise NotFoundError("Location not found")
    return location


def recount_available(db: Database, location_id: ObjectId) -> int:
    """Store a fresh count of available child slots on the location.

    ``totalSlots`` is raised to the number of provisioned slots when they
    outgrow it, so ``availableSlots`` never exceeds ``totalSlots``.
    """
    available = db["slot"].count_documents({"locationId": location_id, "isAvailable": True})
    provisioned = db["slot"].count_documents({"locationId": location_id})
    changes = {"availableSlots": available}
    location = db["location"].find_one({"_id": location_id}, {"totalSlots": 1})
    if location and (location.get("totalSlots") or 0) < provisioned:
        changes["totalSlots"] = provisioned
    db["location"].update_one({"_id": location_id}, {"$set": changes})
    return available


def list_locations(db: Database, type: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
    query: dict = {}
    if type:
        query["type"] = type
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"address": pattern}]
    return get_documents(db, "location", query, sort=[("name", ASCENDING)])


def location_detail(db: Database, location_id) -> dict:
    location = get_location(db, location_id)
    slots = get_documents(db, "slot", {"locationId": location["_id"]}, sort=[("slotNumber", ASCENDING)])
    location["slots"] = slots
    location["actualAvailableSlots"] = sum(1 for s in slots if s.get("isAvailable"))
    return location


def create_location(db: Database, req: LocationCreate) -> dict:
    location = Location(
        name=req.name.strip(),
        address=req.address.strip(),
        coordinates=req.coordinates,
        totalSlots=req.totalSlots,
        availableSlots=req.totalSlots,
        floors=req.floors,
        type=req.type,
        pricePerHour=req.pricePerHour or PricePerHour(),
    )
    if req.operatingHours:
        location.operatingHours = req.operatingHours
    location_id = create_document(db, "location", location)
    logger.info("created location %s (%s)", location_id, location.name)
    return db["location"].find_one({"_id": ObjectId(location_id)})


def update_location(db: Database, location_id, req: LocationUpdate) -> dict:
    location = get_location(db, location_id)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if "totalSlots" in changes:
        provisioned = db["slot"].count_documents({"locationId": location["_id"]})
        if changes["totalSlots"] < provisioned:
            raise ValidationError(f"totalSlots cannot be less than the {provisioned} slots already provisioned")
    if changes:
        db["location"].update_one({"_id": location["_id"]}, {"$set": changes})
        if "totalSlots" in changes:
            recount_available(db, location["_id"])
    return db["location"].find_one({"_id": location["_id"]})


def delete_location(db: Database, location_id) -> int:
    location = get_location(db, location_id)
    removed = db["slot"].delete_many({"locationId": location["_id"]}).deleted_count
    db["location"].delete_one({"_id": location["_id"]})
    logger.info("deleted location %s with %d slots", location["_id"], removed)
    return removed


def nearby_locations(db: Database, lat: float, long: float, radius: float = DEFAULT_RADIUS_KM) -> List[dict]:
    results = []
    for location in get_documents(db, "location"):
        coords = location.get("coordinates") or {}
        if coords.get("lat") is None or coords.get("long") is None:
            continue
        distance = haversine(lat, long, coords["lat"], coords["long"])
        if distance <= radius:
            location["distanceKm"] = round(distance, 3)
            results.append((distance, location))
    results.sort(key=lambda pair: pair[0])
    return [loc for _, loc in results]


# --------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------

@router.get("")
def list_locations_route(
    type: Optional[LocationType] = None,
    search: Optional[str] = None,
    db: Database = Depends(get_db),
):
    locations = list_locations(db, type=type, search=search)
    return {"success": True, "count": len(locations), "data": serialize_many(locations)}


@router.get("/nearby")
def nearby_route(
    lat: Optional[float] = None,
    long: Optional[float] = None,
    radius: float = Query(DEFAULT_RADIUS_KM, ge=0),
    db: Database = Depends(get_db),
):
    if lat is None or long is None:
        raise ValidationError("Please provide latitude and longitude")
    locations = nearby_locations(db, lat, long, radius)
    return {"success": True, "count": len(locations), "data": serialize_many(locations)}


@router.get("/{location_id}")
def get_location_route(location_id: str, db: Database = Depends(get_db)):
    return {"success": True, "data": serialize(location_detail(db, location_id))}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_location_route(req: LocationCreate, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    return {"success": True, "data": serialize(create_location(db, req))}


@router.put("/{location_id}")
def update_location_route(
    location_id: str,
    req: LocationUpdate,
    db: Database = Depends(get_db),
    user: dict = Depends(require_admin),
):
    return {"success": True, "data": serialize(update_location(db, location_id, req))}


@router.delete("/{location_id}")
def delete_location_route(location_id: str, db: Database = Depends(get_db), user: dict = Depends(require_admin)):
    delete_location(db, location_id)
    return {"success": True, "message": "Location deleted successfully"}
