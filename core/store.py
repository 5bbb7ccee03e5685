"""
ParkWise – Collection mirror

Keeps local copies of the ``parkingLands`` / ``slots`` / ``bookings`` /
guard-user collections current through live queries, and issues the writes
the owner, guard and customer dashboards need.

Every snapshot *replaces* its slice of state; nothing is merged, so callbacks
arriving in any order leave each slice equal to the latest snapshot for it.
Mutations are acknowledged before they return: a failed write raises to the
caller and is also published on the error channel as ``write-error``.
"""
from __future__ import annotations
import re, string, threading
from contextlib import contextmanager
from functools import partial
from typing import Dict, Iterable, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, ValidationError, computed_field

from database.documents import (
    DESCENDING, DocumentStore, ListenerRegistration, Query, QuerySnapshot,
    SERVER_TIMESTAMP,
)
from database.errors import StoreError, NotFoundError
from database.models import SlotStatus, BookingStatus, UserRole
from database.schemas import (
    ParkingLand, ParkingSlot, Booking, BookingCreate, UserProfile, Location,
)
from core.events import ErrorEmitter, error_emitter, PERMISSION_ERROR, WRITE_ERROR

LANDS    = "parkingLands"
SLOTS    = "slots"
BOOKINGS = "bookings"
USERS    = "users"

LANDS_LIMIT    = 20
BOOKINGS_LIMIT = 50
GUARDS_LIMIT   = 50

SLOTS_PER_ROW    = 10
DEFAULT_LOCATION = Location(lat=17.3850, lng=78.4867)

_CLOSED = (BookingStatus.COMPLETED, BookingStatus.CANCELLED)
_SLOT_LABEL = re.compile(r"^([A-Z]+)(\d+)$")


class SlotUnavailableError(StoreError):
    def __init__(self, path: str, status: Optional[str]):
        super().__init__(f"Slot {path} is {status}, not available",
                         path=path, operation="update")
        self.status = status


class BookingClosedError(StoreError):
    def __init__(self, path: str, status: str):
        super().__init__(f"Booking {path} is already {status}",
                         path=path, operation="update")
        self.status = status


# ── Slot labels ───────────────────────────────────────────────────────────
def row_label(row: int) -> str:
    """0 → A, 25 → Z, 26 → AA …"""
    label, n = "", row + 1
    while n:
        n, rem = divmod(n - 1, 26)
        label = string.ascii_uppercase[rem] + label
    return label

def slot_number(index: int) -> str:
    return f"{row_label(index // SLOTS_PER_ROW)}{index % SLOTS_PER_ROW + 1}"

def slot_sort_key(number: str):
    m = _SLOT_LABEL.match(number or "")
    if not m:
        return (1, 0, number or "")
    letters, col = m.groups()
    row = 0
    for ch in letters:
        row = row * 26 + (ord(ch) - 64)
    return (0, row * 1000 + int(col), "")

def generate_slots(land_id: str, count: int) -> List[ParkingSlot]:
    return [
        ParkingSlot(
            id=f"{land_id}-slot-{i + 1}",
            land_id=land_id,
            slot_number=slot_number(i),
            status=SlotStatus.AVAILABLE,
        )
        for i in range(count)
    ]


class OccupancySummary(BaseModel):
    total:     int = 0
    available: int = 0
    booked:    int = 0
    occupied:  int = 0

    @computed_field
    @property
    def occupancy_rate(self) -> float:
        if not self.total:
            return 0.0
        return round((self.total - self.available) / self.total, 4)

    @classmethod
    def from_statuses(cls, statuses: Iterable[Union[SlotStatus, str]]) -> "OccupancySummary":
        counts = {s: 0 for s in SlotStatus}
        total = 0
        for status in statuses:
            counts[SlotStatus(status)] += 1
            total += 1
        return cls(
            total=total,
            available=counts[SlotStatus.AVAILABLE],
            booked=counts[SlotStatus.BOOKED],
            occupied=counts[SlotStatus.OCCUPIED],
        )


# ── Mirror ────────────────────────────────────────────────────────────────
class ParkStore:

    def __init__(self, db: Optional[DocumentStore] = None,
                 emitter: ErrorEmitter = error_emitter):
        self.lands: List[ParkingLand] = []
        self.slots: Dict[str, List[ParkingSlot]] = {}
        self.bookings: List[Booking] = []
        self.available_guards: List[UserProfile] = []
        self.loading = True
        self.is_initialized = False

        self._db = db
        self._emitter = emitter
        self._syncing = False
        self._subs: Dict[str, ListenerRegistration] = {}
        self._failed: set = set()
        self._lock = threading.RLock()

    @property
    def db(self) -> DocumentStore:
        if self._db is None:
            raise RuntimeError("ParkStore has no document store; call init_sync(db) first")
        return self._db

    # ── Real-time sync ────────────────────────────────────────────────────
    def init_sync(self, db: Optional[DocumentStore] = None):
        """Subscribe to lands, bookings and guards. Repeated calls are no-ops."""
        with self._lock:
            if self._syncing:
                return
            if db is not None:
                self._db = db
            store = self.db
            self._syncing = True
            self._failed.clear()
            self.loading = True

        logger.info("Starting live sync …")
        # newest first so recent lands and bookings stay inside the limit
        self._subscribe(
            "lands",
            store.collection(LANDS).order_by("createdAt", DESCENDING).limit(LANDS_LIMIT),
            self._on_lands,
        )
        self._subscribe(
            "bookings",
            store.collection(BOOKINGS).order_by("createdAt", DESCENDING).limit(BOOKINGS_LIMIT),
            self._on_bookings,
        )
        self._subscribe(
            "guards",
            store.collection(USERS).where("role", "==", UserRole.GUARD.value).limit(GUARDS_LIMIT),
            self._on_guards,
        )

    def close(self):
        """Detach every live query; local state keeps its last snapshot."""
        with self._lock:
            regs = list(self._subs.values())
            self._subs.clear()
            self._syncing = False
        for reg in regs:
            reg.unsubscribe()
        if regs:
            logger.info(f"Live sync stopped ({len(regs)} subscription(s) closed)")

    def reconnect(self):
        self.close()
        self.init_sync()

    @property
    def subscription_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._subs)

    def _subscribe(self, key: str, query: Query, handler):
        reg = query.on_snapshot(handler, on_error=partial(self._on_sync_error, key))
        with self._lock:
            # close() may have run while the first snapshot was delivered
            keep = reg.active and self._syncing
            previous = self._subs.pop(key, None) if keep else None
            if keep:
                self._subs[key] = reg
        if previous is not None:
            previous.unsubscribe()
        if not keep:
            reg.unsubscribe()

    def _on_lands(self, snap: QuerySnapshot):
        lands = self._parse(snap, ParkingLand)
        ids = {land.id for land in lands}
        with self._lock:
            self.lands = lands
            self.loading = False
            self.is_initialized = True
            stale_keys = [k for k in self._subs
                          if k.startswith("slots:") and k[len("slots:"):] not in ids]
            stale = [self._subs.pop(k) for k in stale_keys]
            self.slots = {k: v for k, v in self.slots.items() if k in ids}
            self._failed = {k for k in self._failed
                            if not k.startswith("slots:") or k[len("slots:"):] in ids}
            # a failed land stays down until reconnect()
            fresh = [land.id for land in lands
                     if f"slots:{land.id}" not in self._subs
                     and f"slots:{land.id}" not in self._failed]
            syncing = self._syncing

        for reg in stale:
            reg.unsubscribe()
        if not syncing:
            return
        for land_id in fresh:
            self._subscribe(
                f"slots:{land_id}",
                self.db.collection(LANDS, land_id, SLOTS),
                partial(self._on_slots, land_id),
            )

    def _on_slots(self, land_id: str, snap: QuerySnapshot):
        slots = sorted(self._parse(snap, ParkingSlot),
                       key=lambda s: slot_sort_key(s.slot_number))
        with self._lock:
            if not any(land.id == land_id for land in self.lands):
                return
            self.slots = {**self.slots, land_id: slots}

    def _on_bookings(self, snap: QuerySnapshot):
        bookings = self._parse(snap, Booking)
        with self._lock:
            self.bookings = bookings

    def _on_guards(self, snap: QuerySnapshot):
        guards = self._parse(snap, UserProfile, id_field="uid")
        with self._lock:
            self.available_guards = guards

    def _on_sync_error(self, key: str, error: StoreError):
        logger.error(f"Live sync for '{key}' failed: {error}")
        with self._lock:
            self._subs.pop(key, None)
            self._failed.add(key)
            self.loading = False
        self._emitter.emit(PERMISSION_ERROR, error)

    @staticmethod
    def _parse(snap: QuerySnapshot, model, id_field: str = "id") -> list:
        records = []
        for doc in snap.docs:
            try:
                records.append(model.model_validate({**doc.to_dict(), id_field: doc.id}))
            except ValidationError as e:
                logger.warning(f"Skipping malformed document {doc.path} ({e.error_count()} error(s))")
        return records

    # ── Mutations ─────────────────────────────────────────────────────────
    @contextmanager
    def _reporting(self, what: str):
        try:
            yield
        except StoreError as e:
            logger.error(f"{what} failed: {e}")
            self._emitter.emit(WRITE_ERROR, e)
            raise

    def update_slot_status(self, land_id: str, slot_id: str,
                           status: Union[SlotStatus, str],
                           vehicle: Optional[str] = None):
        """Overwrite a slot's status and vehicle. Transitions are not checked."""
        status = SlotStatus(status)
        ref = self.db.document(LANDS, land_id, SLOTS, slot_id)
        with self._reporting(f"Slot update {ref.path}"):
            ref.update({
                "status": status.value,
                "currentVehicle": vehicle or None,
                "updatedAt": SERVER_TIMESTAMP,
            })
        logger.info(f"{ref.path} → {status.value}" + (f" [{vehicle}]" if vehicle else ""))

    def create_booking(self, data: Union[BookingCreate, dict]) -> Booking:
        """
        Insert the booking and mark its slot booked in one transaction.

        Raises NotFoundError when the slot (or, with no amount given, the
        land) does not exist and SlotUnavailableError when the slot is not
        available; in both cases nothing is written.
        """
        if not isinstance(data, BookingCreate):
            data = BookingCreate.model_validate(data)
        if data.status in _CLOSED:
            raise ValueError(f"Cannot create a booking with status '{data.status.value}'")

        db = self.db
        land_ref = db.document(LANDS, data.land_id)
        slot_ref = land_ref.collection(SLOTS).document(data.slot_id)
        booking_ref = db.collection(BOOKINGS).document()

        def book(txn):
            slot = txn.get(slot_ref)
            if not slot.exists:
                raise NotFoundError(slot_ref.path)
            if slot.get("status") != SlotStatus.AVAILABLE.value:
                raise SlotUnavailableError(slot_ref.path, slot.get("status"))

            amount = data.amount
            if amount is None:
                land = txn.get(land_ref)
                if not land.exists:
                    raise NotFoundError(land_ref.path)
                amount = round(float(land.get("pricePerHour", 0)) * data.hours, 2)

            booking = Booking(**data.model_dump(exclude={"amount"}),
                              id=booking_ref.id, amount=amount)
            doc = booking.to_document("id")
            txn.set(booking_ref, {**doc, "createdAt": SERVER_TIMESTAMP})
            txn.update(slot_ref, {
                "status": SlotStatus.BOOKED.value,
                "bookedBy": data.user_id,
                "bookedUntil": doc["endTime"],
                "currentBookingId": booking_ref.id,
                "updatedAt": SERVER_TIMESTAMP,
            })
            return booking

        with self._reporting(f"Booking for {slot_ref.path}"):
            booking = db.run_transaction(book)
        logger.info(f"Booking {booking.id}: {slot_ref.path} booked by {data.user_id} "
                    f"({booking.amount:.2f})")
        return booking

    def release_booking(self, booking_id: str,
                        status: Union[BookingStatus, str] = BookingStatus.COMPLETED) -> Booking:
        """Close a booking and free its slot if the slot still points at it."""
        status = BookingStatus(status)
        if status not in _CLOSED:
            raise ValueError("A released booking must be completed or cancelled")

        db = self.db
        booking_ref = db.document(BOOKINGS, booking_id)

        def release(txn):
            snap = txn.get(booking_ref)
            if not snap.exists:
                raise NotFoundError(booking_ref.path)
            booking = Booking.model_validate({**snap.to_dict(), "id": snap.id})
            if booking.status in _CLOSED:
                raise BookingClosedError(booking_ref.path, booking.status.value)

            slot_ref = db.document(LANDS, booking.land_id, SLOTS, booking.slot_id)
            slot = txn.get(slot_ref)
            txn.update(booking_ref, {"status": status.value, "updatedAt": SERVER_TIMESTAMP})
            if slot.exists and slot.get("currentBookingId") == booking.id:
                txn.update(slot_ref, {
                    "status": SlotStatus.AVAILABLE.value,
                    "currentVehicle": None,
                    "bookedBy": None,
                    "bookedUntil": None,
                    "currentBookingId": None,
                    "updatedAt": SERVER_TIMESTAMP,
                })
            return booking.model_copy(update={"status": status})

        with self._reporting(f"Release of {booking_ref.path}"):
            booking = db.run_transaction(release)
        logger.info(f"Booking {booking_id} {status.value}")
        return booking

    def add_parking_land(self, owner_id: str, name: str, total_slots: int,
                         price_per_hour: float,
                         location: Union[Location, dict, None] = None,
                         image: Optional[str] = None,
                         land_id: Optional[str] = None) -> ParkingLand:
        """Write the land and its ``total_slots`` available slots in one batch."""
        db = self.db
        land_ref = db.collection(LANDS).document(land_id)
        land = ParkingLand(
            id=land_ref.id,
            owner_id=owner_id,
            name=name,
            location=location or DEFAULT_LOCATION,
            total_slots=total_slots,
            price_per_hour=price_per_hour,
            image=image,
        )
        batch = db.batch()
        batch.set(land_ref, {**land.to_document("id"), "createdAt": SERVER_TIMESTAMP})
        for slot in generate_slots(land.id, land.total_slots):
            batch.set(land_ref.collection(SLOTS).document(slot.id), slot.to_document("id"))

        with self._reporting(f"New land {land_ref.path}"):
            batch.commit()
        logger.info(f"Land '{land.name}' listed with {land.total_slots} slots ({land.id})")
        return land

    def remove_parking_land(self, land_id: str):
        db = self.db
        land_ref = db.document(LANDS, land_id)
        with self._reporting(f"Removal of {land_ref.path}"):
            if not land_ref.get().exists:
                raise NotFoundError(land_ref.path, "delete")
            batch = db.batch()
            for slot in land_ref.collection(SLOTS).stream():
                batch.delete(db.document(slot.path))
            batch.delete(land_ref)
            batch.commit()
        logger.info(f"Land {land_id} removed")

    def save_user_profile(self, profile: Union[UserProfile, dict]) -> UserProfile:
        if not isinstance(profile, UserProfile):
            profile = UserProfile.model_validate(profile)
        ref = self.db.document(USERS, profile.uid)
        with self._reporting(f"Profile {ref.path}"):
            ref.set(profile.to_document("uid"))
        return profile

    # ── Selectors ─────────────────────────────────────────────────────────
    def get_land(self, land_id: str) -> Optional[ParkingLand]:
        with self._lock:
            return next((land for land in self.lands if land.id == land_id), None)

    def slots_for(self, land_id: str) -> List[ParkingSlot]:
        with self._lock:
            return list(self.slots.get(land_id, []))

    def all_slots(self) -> List[ParkingSlot]:
        with self._lock:
            return [s for slots in self.slots.values() for s in slots]

    def occupancy(self, land_id: Optional[str] = None) -> OccupancySummary:
        slots = self.slots_for(land_id) if land_id else self.all_slots()
        return OccupancySummary.from_statuses(s.status for s in slots)

    def active_slots(self, plate: Optional[str] = None) -> List[ParkingSlot]:
        """Booked or occupied slots, optionally filtered by a plate fragment."""
        needle = (plate or "").strip().upper()
        return [
            s for s in self.all_slots()
            if s.status != SlotStatus.AVAILABLE
            and (not needle or needle in (s.current_vehicle or "").upper())
        ]

    def bookings_for_user(self, uid: str) -> List[Booking]:
        with self._lock:
            return [b for b in self.bookings if b.user_id == uid]
