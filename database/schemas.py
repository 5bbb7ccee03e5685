"""
Record schemas for ParkWise.

Each model maps to one document collection. Documents are stored with the
camelCase aliases (``ownerId``, ``pricePerHour`` …); Python code uses the
snake_case field names.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .models import UserRole, SlotStatus, BookingStatus


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self, *exclude: str) -> dict:
        """JSON-ready payload under the stored field names."""
        return self.model_dump(mode="json", by_alias=True,
                               exclude=set(exclude), exclude_none=True)


class Location(Record):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class ParkingLand(Record):
    id: str = Field("", description="Document id")
    owner_id: str = Field(..., description="uid of the owning user")
    name: str = Field(..., min_length=1, description="Display name of the property")
    location: Location
    total_slots: int = Field(..., ge=1, description="Number of slots in the land")
    price_per_hour: float = Field(..., ge=0, description="Hourly price")
    image: Optional[str] = None


class ParkingSlot(Record):
    id: str = ""
    land_id: str
    slot_number: str = Field(..., description="Row/column label, e.g. B7")
    status: SlotStatus = SlotStatus.AVAILABLE
    current_vehicle: Optional[str] = Field(None, description="Plate of the parked vehicle")
    booked_by: Optional[str] = Field(None, description="uid of the booking customer")
    booked_until: Optional[str] = None
    current_booking_id: Optional[str] = None
    qr_code: Optional[str] = None
    updated_at: Optional[str] = None


class BookingCreate(Record):
    user_id: str
    slot_id: str
    land_id: str
    start_time: datetime
    end_time: datetime
    amount: Optional[float] = Field(None, ge=0, description="Computed from the land price when omitted")
    status: BookingStatus = BookingStatus.CONFIRMED

    @model_validator(mode="after")
    def _window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600.0


class Booking(BookingCreate):
    id: str = ""
    amount: float = Field(..., ge=0)
    created_at: Optional[str] = None


class UserProfile(Record):
    uid: str
    email: str
    display_name: str
    role: UserRole
    phone: Optional[str] = None
