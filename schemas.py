"""
Database Schemas for the Parking Reservation API

Each document model corresponds to a MongoDB collection (collection name is the
lowercased class name). Request models validate incoming bodies before any
business logic runs.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

LocationType = Literal["mall", "hospital", "theatre", "airport", "stadium", "other"]
VehicleType = Literal["car", "bike"]
PaymentStatus = Literal["pending", "success", "failed", "refunded"]
PaymentMethod = Literal["credit_card", "debit_card", "upi", "cash", "wallet"]
BookingStatus = Literal["active", "completed", "cancelled"]

MAX_BULK_SLOTS = 500


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    long: float = Field(..., ge=-180, le=180, description="Longitude in degrees")


class PricePerHour(BaseModel):
    car: float = Field(50, ge=0, description="Hourly price for cars")
    bike: float = Field(20, ge=0, description="Hourly price for bikes")


class OperatingHours(BaseModel):
    open: str = Field("00:00", description="Opening time HH:MM")
    close: str = Field("23:59", description="Closing time HH:MM")


# --------------------------------------------------------------------------
# Stored documents
# --------------------------------------------------------------------------

class Location(BaseModel):
    name: str = Field(..., description="Display name of the parking site")
    address: str = Field(..., description="Street address")
    coordinates: Coordinates
    totalSlots: int = Field(..., ge=0, description="Total number of slots")
    availableSlots: int = Field(..., ge=0, description="Mirror of the count of available slots")
    floors: int = Field(..., ge=1, description="Number of floors")
    type: LocationType = Field(..., description="Site category")
    pricePerHour: PricePerHour = Field(default_factory=PricePerHour)
    operatingHours: OperatingHours = Field(default_factory=OperatingHours)


class Slot(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    locationId: ObjectId = Field(..., description="Owning location")
    slotNumber: str = Field(..., description="Slot label, unique per location")
    vehicleType: VehicleType
    pricePerHour: float = Field(..., ge=0)
    floor: str = Field("Ground", description="Floor label")
    row: str = Field(..., description="Row label within the floor")
    position: int = Field(..., description="Ordering within the row")
    isAvailable: bool = True
    isPremium: bool = False
    isHandicapped: bool = False
    isNearEntrance: bool = False
    isNearExit: bool = False
    isNearLift: bool = False


class Booking(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    userId: ObjectId
    locationId: ObjectId
    slotId: ObjectId
    vehicleType: VehicleType
    vehicleNumber: str
    bookingTime: datetime
    startTime: datetime
    endTime: datetime
    duration: int = Field(..., ge=1, description="Hours")
    totalAmount: float = Field(..., ge=0)
    paymentStatus: PaymentStatus = "pending"
    paymentMethod: PaymentMethod = "upi"
    transactionId: Optional[str] = None
    qrCode: Optional[str] = None
    status: BookingStatus = "active"
    checkInTime: Optional[datetime] = None
    checkOutTime: Optional[datetime] = None
    idempotencyKey: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    email: str
    password: str = Field(..., description="Salted password hash")
    phone: str
    role: Literal["user", "admin"] = "user"
    currentLocation: Optional[Coordinates] = None
    vehicle: Dict[str, Any] = Field(default_factory=dict)
    bookings: List[ObjectId] = Field(default_factory=list)


class Payment(BaseModel):
    idempotencyKey: Optional[str] = None
    amount: float
    method: PaymentMethod
    status: Literal["success", "failed", "refunded"]
    transactionId: Optional[str] = None


# --------------------------------------------------------------------------
# Request bodies
# --------------------------------------------------------------------------

class LocationCreate(BaseModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    coordinates: Coordinates
    totalSlots: int = Field(..., ge=1)
    floors: int = Field(..., ge=1)
    type: LocationType
    pricePerHour: Optional[PricePerHour] = None
    operatingHours: Optional[OperatingHours] = None


class LocationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = Field(None, min_length=1)
    coordinates: Optional[Coordinates] = None
    totalSlots: Optional[int] = Field(None, ge=0)
    floors: Optional[int] = Field(None, ge=1)
    type: Optional[LocationType] = None
    pricePerHour: Optional[PricePerHour] = None
    operatingHours: Optional[OperatingHours] = None


class SlotFlags(BaseModel):
    isPremium: bool = False
    isHandicapped: bool = False
    isNearEntrance: bool = False
    isNearExit: bool = False
    isNearLift: bool = False


class SlotCreate(SlotFlags):
    locationId: str = Field(..., min_length=1)
    slotNumber: str = Field(..., min_length=1)
    vehicleType: VehicleType
    pricePerHour: float = Field(..., gt=0)
    floor: Optional[str] = None
    row: str = Field(..., min_length=1)
    position: int = Field(..., ge=1)

    @field_validator("slotNumber", "row")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class SlotBulkCreate(SlotFlags):
    locationId: str = Field(..., min_length=1)
    slotPrefix: str = Field(..., min_length=1)
    startNumber: int = Field(..., ge=1)
    endNumber: int = Field(..., ge=1)
    vehicleType: VehicleType
    pricePerHour: float = Field(..., gt=0)
    floor: Optional[str] = None
    row: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_range(self):
        if self.endNumber < self.startNumber:
            raise ValueError("endNumber must not be less than startNumber")
        if self.endNumber - self.startNumber + 1 > MAX_BULK_SLOTS:
            raise ValueError(f"at most {MAX_BULK_SLOTS} slots per bulk request")
        return self


class SlotUpdate(BaseModel):
    slotNumber: Optional[str] = Field(None, min_length=1)
    vehicleType: Optional[VehicleType] = None
    pricePerHour: Optional[float] = Field(None, ge=0)
    floor: Optional[str] = None
    row: Optional[str] = None
    position: Optional[int] = None
    isAvailable: Optional[bool] = None
    isPremium: Optional[bool] = None
    isHandicapped: Optional[bool] = None
    isNearEntrance: Optional[bool] = None
    isNearExit: Optional[bool] = None
    isNearLift: Optional[bool] = None


class SlotStatusUpdate(BaseModel):
    isAvailable: bool


class BookingCreate(BaseModel):
    locationId: str = Field(..., min_length=1)
    slotId: str = Field(..., min_length=1)
    vehicleType: VehicleType
    vehicleNumber: str = Field(..., min_length=1)
    startTime: datetime
    duration: int = Field(..., ge=1, description="Hours")
    paymentMethod: PaymentMethod = "upi"
    idempotencyKey: Optional[str] = Field(None, max_length=64)

    @field_validator("vehicleNumber")
    @classmethod
    def _normalize_plate(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("vehicleNumber must not be blank")
        return v


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., min_length=1)
    currentLocation: Optional[Coordinates] = None
    vehicle: Optional[Dict[str, Any]] = None

    @field_validator("email", mode="before")
    @classmethod
    def _lower_email(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    currentLocation: Optional[Coordinates] = None
    vehicle: Optional[Dict[str, Any]] = None
