# Seed demo users, parking lands and a few live slot states.
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import random
from datetime import datetime, timedelta, timezone

from database.models import init_db, SlotStatus, UserRole
from database.documents import DocumentStore
from core.store import ParkStore

USERS = [
    ("owner1", "owner@parkwise.com", "Land Owner",     UserRole.OWNER),
    ("guard1", "guard@parkwise.com", "Security Guard", UserRole.GUARD),
    ("user1",  "user@parkwise.com",  "John Doe",       UserRole.CUSTOMER),
]

LANDS = [
    ("land1", "Hyderabad Central Mall Parking", 17.3850, 78.4867, 50, 20),
    ("land2", "Hitech City Corporate Parking",  17.4400, 78.3800, 30, 30),
]


def seed(db: DocumentStore = None, rng: random.Random = None):
    if db is None:
        init_db()
        db = DocumentStore()
    rng = rng or random.Random(7)
    store = ParkStore(db)

    for uid, email, name, role in USERS:
        store.save_user_profile({"uid": uid, "email": email,
                                 "display_name": name, "role": role})
        print(f"  ✓  {email:22s} [{role.value}]")

    for land_id, name, lat, lng, slots, price in LANDS:
        if db.document("parkingLands", land_id).get().exists:
            print(f"  ·  {name} already listed")
            continue
        store.add_parking_land(
            "owner1", name, slots, price,
            location={"lat": lat, "lng": lng},
            image=f"https://picsum.photos/seed/{land_id}/600/400",
            land_id=land_id,
        )
        # A handful of parked vehicles so the guard dashboard is not empty
        for i in rng.sample(range(slots), k=max(1, slots // 5)):
            plate = f"TS-0{rng.randint(0, 8)}B-{rng.randint(1000, 9998)}"
            store.update_slot_status(land_id, f"{land_id}-slot-{i + 1}",
                                     SlotStatus.OCCUPIED, plate)
        print(f"  ✓  {name} ({slots} slots)")

    if db.collection("bookings").where("userId", "==", "user1").limit(1).get().empty:
        now = datetime.now(timezone.utc)
        booking = store.create_booking({
            "user_id": "user1",
            "land_id": "land1",
            "slot_id": _first_available(store, "land1"),
            "start_time": now,
            "end_time": now + timedelta(hours=2),
        })
        print(f"  ✓  booking {booking.id} for user1 ({booking.amount:.2f})")
    else:
        print("  ·  user1 already has a booking")
    print("\nSeeding complete! 🚗")


def _first_available(store: ParkStore, land_id: str) -> str:
    for snap in store.db.collection("parkingLands", land_id, "slots").stream():
        if snap.get("status") == SlotStatus.AVAILABLE.value:
            return snap.id
    raise SystemExit(f"No available slot left in {land_id}")


if __name__ == "__main__":
    seed()
