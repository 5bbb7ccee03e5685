"""
ParkWise – FastAPI routes
"""
from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from database.documents import DocumentStore
from database.errors import (
    StoreError, NotFoundError, PermissionDeniedError, StoreUnavailableError,
)
from database.models import SlotStatus, UserRole
from database.schemas import (
    Booking, BookingCreate, Location, ParkingLand, ParkingSlot, Record, UserProfile,
)
from core.assistant import AssistantResponse, GuardAssistant, build_request
from core.events import RecentErrors, error_emitter
from core.store import (
    BookingClosedError, OccupancySummary, ParkStore, SlotUnavailableError,
)

router = APIRouter()

# Singletons (initialised at startup)
_documents: Optional[DocumentStore]  = None
_store:     Optional[ParkStore]      = None
_assistant: Optional[GuardAssistant] = None
_errors:    Optional[RecentErrors]   = None


def get_documents() -> DocumentStore:
    global _documents
    if _documents is None:
        _documents = DocumentStore()
    return _documents

def get_store() -> ParkStore:
    global _store
    if _store is None:
        _store = ParkStore(get_documents(), emitter=error_emitter)
        _store.init_sync()
    return _store

def get_assistant() -> GuardAssistant:
    global _assistant
    if _assistant is None:
        _assistant = GuardAssistant()
    return _assistant

def get_errors() -> RecentErrors:
    global _errors
    if _errors is None:
        _errors = RecentErrors(error_emitter)
    return _errors


@contextmanager
def http_errors():
    """Translate store failures into HTTP responses."""
    try:
        yield
    except SlotUnavailableError as e:
        raise HTTPException(409, str(e))
    except BookingClosedError as e:
        raise HTTPException(409, str(e))
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except PermissionDeniedError as e:
        raise HTTPException(403, str(e))
    except StoreUnavailableError:
        raise HTTPException(503, "Database unavailable – please reconnect")
    except StoreError as e:
        raise HTTPException(500, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


# ── Schemas ───────────────────────────────────────────────────────────────
class LandIn(Record):
    owner_id:       str
    name:           str = Field(..., min_length=1)
    total_slots:    int = Field(20, ge=1, le=1000)
    price_per_hour: float = Field(40, ge=0)
    location:       Optional[Location] = None
    image:          Optional[str] = None

class SlotStatusIn(Record):
    status:  SlotStatus
    vehicle: Optional[str] = None

class ProfileIn(Record):
    email:        str
    display_name: str
    role:         UserRole
    phone:        Optional[str] = None

class RecommendationIn(Record):
    land_id:       str
    recent_events: str = ""


# ── Health ────────────────────────────────────────────────────────────────
@router.get("/health")
def health(store: ParkStore = Depends(get_store)):
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "loading": store.loading,
        "subscriptions": len(store.subscription_keys),
        "lands": len(store.lands),
    }


# ── Lands & slots ─────────────────────────────────────────────────────────
@router.get("/lands", response_model=List[ParkingLand])
def lands(q: Optional[str] = None, store: ParkStore = Depends(get_store)):
    needle = (q or "").lower()
    return [land for land in list(store.lands) if needle in land.name.lower()]

@router.post("/lands", response_model=ParkingLand, status_code=201)
def add_land(payload: LandIn, store: ParkStore = Depends(get_store)):
    with http_errors():
        return store.add_parking_land(
            payload.owner_id, payload.name, payload.total_slots,
            payload.price_per_hour, location=payload.location, image=payload.image,
        )

@router.get("/lands/{land_id}", response_model=ParkingLand)
def land_detail(land_id: str, store: ParkStore = Depends(get_store)):
    land = store.get_land(land_id)
    if not land:
        raise HTTPException(404, "Land not found")
    return land

@router.delete("/lands/{land_id}")
def delete_land(land_id: str, store: ParkStore = Depends(get_store)):
    with http_errors():
        store.remove_parking_land(land_id)
    return {"deleted": land_id}

@router.get("/lands/{land_id}/slots", response_model=List[ParkingSlot])
def land_slots(land_id: str, store: ParkStore = Depends(get_store)):
    if not store.get_land(land_id):
        raise HTTPException(404, "Land not found")
    return store.slots_for(land_id)

@router.patch("/lands/{land_id}/slots/{slot_id}")
def set_slot_status(land_id: str, slot_id: str, payload: SlotStatusIn,
                    store: ParkStore = Depends(get_store)):
    vehicle = payload.vehicle if payload.status == SlotStatus.OCCUPIED else None
    with http_errors():
        store.update_slot_status(land_id, slot_id, payload.status, vehicle)
    return {"land_id": land_id, "slot_id": slot_id,
            "status": payload.status.value, "vehicle": vehicle}


# ── Bookings ──────────────────────────────────────────────────────────────
@router.get("/bookings", response_model=List[Booking])
def bookings(user_id: Optional[str] = None, store: ParkStore = Depends(get_store)):
    if user_id:
        return store.bookings_for_user(user_id)
    return list(store.bookings)

@router.post("/bookings", response_model=Booking, status_code=201)
def create_booking(payload: BookingCreate, store: ParkStore = Depends(get_store)):
    with http_errors():
        return store.create_booking(payload)

@router.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(booking_id: str, store: ParkStore = Depends(get_store)):
    with http_errors():
        return store.release_booking(booking_id, "completed")

@router.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str, store: ParkStore = Depends(get_store)):
    with http_errors():
        return store.release_booking(booking_id, "cancelled")


# ── Users ─────────────────────────────────────────────────────────────────
@router.get("/guards", response_model=List[UserProfile])
def guards(store: ParkStore = Depends(get_store)):
    return list(store.available_guards)

@router.put("/users/{uid}", response_model=UserProfile)
def save_profile(uid: str, payload: ProfileIn, store: ParkStore = Depends(get_store)):
    profile = UserProfile(uid=uid, **payload.model_dump())
    with http_errors():
        return store.save_user_profile(profile)


# ── Dashboards ────────────────────────────────────────────────────────────
@router.get("/stats/summary", response_model=OccupancySummary)
def stats_summary(land_id: Optional[str] = None, store: ParkStore = Depends(get_store)):
    """Slot counts and occupancy rate for one land or all of them."""
    if land_id and not store.get_land(land_id):
        raise HTTPException(404, "Land not found")
    return store.occupancy(land_id)

@router.get("/patrol", response_model=List[ParkingSlot])
def patrol(plate: Optional[str] = None, store: ParkStore = Depends(get_store)):
    return store.active_slots(plate)


# ── Guard assistant ───────────────────────────────────────────────────────
@router.post("/assistant/recommendations", response_model=AssistantResponse)
def recommendations(payload: RecommendationIn,
                    store: ParkStore = Depends(get_store),
                    assistant: GuardAssistant = Depends(get_assistant)):
    if not store.get_land(payload.land_id):
        raise HTTPException(404, "Land not found")
    request = build_request(store, payload.land_id, payload.recent_events)
    return assistant.recommend(request)


# ── Sync & errors ─────────────────────────────────────────────────────────
@router.get("/errors")
def recent_errors(errors: RecentErrors = Depends(get_errors)):
    return errors.items()

@router.post("/sync/reconnect")
def reconnect(store: ParkStore = Depends(get_store)):
    store.reconnect()
    return {"status": "reconnected", "subscriptions": store.subscription_keys}
