"""Receipt payload embedded in a booking's QR code."""
import base64
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class QRPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    bookingId: str
    userId: str
    locationId: str
    slotNumber: str
    vehicleNumber: str
    startTime: datetime
    endTime: datetime
    amount: float


def encode(payload: QRPayload) -> str:
    raw = payload.model_dump_json().encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode(token: str) -> QRPayload:
    raw = base64.urlsafe_b64decode(token.encode("ascii"))
    return QRPayload.model_validate_json(raw)


def for_booking(booking: dict, slot_number: str) -> QRPayload:
    return QRPayload(
        bookingId=str(booking["_id"]),
        userId=str(booking["userId"]),
        locationId=str(booking["locationId"]),
        slotNumber=slot_number,
        vehicleNumber=booking["vehicleNumber"],
        startTime=booking["startTime"],
        endTime=booking["endTime"],
        amount=booking["totalAmount"],
    )
