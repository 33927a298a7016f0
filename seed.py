"""Demo data: a handful of locations, each with a floor/row/position slot layout."""
import logging
import math
import random
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import create_document, utcnow
from locations import recount_available
from schemas import Coordinates, Location, PricePerHour, Slot

logger = logging.getLogger("parking.seed")

ROWS = ["A", "B", "C", "D", "E", "F", "G", "H"]
SLOTS_PER_ROW = 10

DEMO_LOCATIONS = [
    ("City Mall Parking", "123 Main Street, Downtown", 12.9716, 77.5946, 100, 3, "mall", 60, 25),
    ("Central Hospital Parking", "456 Health Avenue, Medical District", 12.9655, 77.5928, 80, 2, "hospital", 40, 15),
    ("Grand Cinema Complex", "789 Entertainment Road, Cinema District", 12.9756, 77.5900, 120, 4, "theatre", 70, 30),
    ("Airport Premium Parking", "1000 Airport Road, Aviation Area", 12.9800, 77.5850, 200, 5, "airport", 100, 40),
]


def layout_slots(location: dict, rng: random.Random) -> List[dict]:
    """Build one floor/row/position grid of slots for ``location``."""
    floors = location["floors"]
    rows_per_floor = min(len(ROWS), math.ceil(location["totalSlots"] / floors / SLOTS_PER_ROW))
    prices = location["pricePerHour"]
    now = utcnow()
    slots = []
    for floor_num in range(1, floors + 1):
        for row in ROWS[:rows_per_floor]:
            for position in range(1, SLOTS_PER_ROW + 1):
                vehicle_type = "car" if rng.random() > 0.3 else "bike"
                handicapped = rng.random() < 0.05
                premium = row == "A" and position <= 3 and not handicapped
                price = prices[vehicle_type]
                if premium:
                    price = math.floor(price * 1.5)
                doc = Slot(
                    locationId=location["_id"],
                    slotNumber=f"{floor_num}{row}{position}",
                    vehicleType=vehicle_type,
                    pricePerHour=price,
                    floor=f"Floor {floor_num}",
                    row=row,
                    position=position,
                    isPremium=premium,
                    isHandicapped=handicapped,
                    isNearEntrance=row == "A" and position <= 2,
                    isNearExit=row == "A" and position >= SLOTS_PER_ROW - 1,
                    isNearLift=row == ROWS[rows_per_floor - 1],
                ).model_dump()
                doc["createdAt"] = now
                slots.append(doc)
    return slots


def seed_demo_data(db: Database, rng: Optional[random.Random] = None) -> dict:
    if db["location"].count_documents({}) > 0:
        return {"seeded": False, "locations": 0, "slots": 0}

    rng = rng or random.Random(42)
    slot_total = 0
    for name, address, lat, lng, total, floors, kind, car, bike in DEMO_LOCATIONS:
        location_id = create_document(
            db,
            "location",
            Location(
                name=name,
                address=address,
                coordinates=Coordinates(lat=lat, long=lng),
                totalSlots=total,
                availableSlots=total,
                floors=floors,
                type=kind,
                pricePerHour=PricePerHour(car=car, bike=bike),
            ),
        )
        location = db["location"].find_one({"_id": ObjectId(location_id)})
        slots = layout_slots(location, rng)
        if slots:
            db["slot"].insert_many(slots)
        db["location"].update_one({"_id": location["_id"]}, {"$set": {"totalSlots": len(slots)}})
        recount_available(db, location["_id"])
        slot_total += len(slots)
        logger.info("seeded %s (%s) with %d slots", name, location_id, len(slots))

    return {"seeded": True, "locations": len(DEMO_LOCATIONS), "slots": slot_total}
