import unittest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import get_assistant, get_errors, get_store, router
from core.assistant import GuardAssistant
from core.events import ErrorEmitter, RecentErrors
from core.store import ParkStore
from tests.helpers import END, START, fake_groq, make_documents


def _unreachable(**kwargs):
    raise TimeoutError("model timed out")


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        emitter = ErrorEmitter()
        self.store = ParkStore(make_documents(), emitter=emitter)
        self.store.init_sync()
        self.errors = RecentErrors(emitter)
        self.assistant = GuardAssistant(client=fake_groq(_unreachable))

        app = FastAPI()
        app.include_router(router, prefix="/api/v1")
        app.dependency_overrides[get_store] = lambda: self.store
        app.dependency_overrides[get_errors] = lambda: self.errors
        app.dependency_overrides[get_assistant] = lambda: self.assistant
        self.client = TestClient(app)

        response = self.client.post("/api/v1/lands", json={
            "ownerId": "owner1", "name": "Skyline Mall Parking",
            "totalSlots": 12, "pricePerHour": 40,
        })
        self.assertEqual(response.status_code, 201, response.text)
        self.land_id = response.json()["id"]

    def tearDown(self) -> None:
        self.store.close()
        self.errors.close()

    def booking_payload(self, slot_id=None, user_id="user1"):
        return {
            "userId": user_id,
            "landId": self.land_id,
            "slotId": slot_id or f"{self.land_id}-slot-1",
            "startTime": START.isoformat(),
            "endTime": END.isoformat(),
        }

    def test_health(self) -> None:
        body = self.client.get("/api/v1/health").json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["lands"], 1)
        self.assertEqual(body["subscriptions"], 4)

    def test_land_listing_and_slots(self) -> None:
        lands = self.client.get("/api/v1/lands").json()
        self.assertEqual(len(lands), 1)
        self.assertEqual(lands[0]["totalSlots"], 12)
        self.assertEqual(lands[0]["ownerId"], "owner1")
        self.assertEqual(self.client.get("/api/v1/lands", params={"q": "SKYLINE"}).json(), lands)
        self.assertEqual(self.client.get("/api/v1/lands", params={"q": "airport"}).json(), [])

        slots = self.client.get(f"/api/v1/lands/{self.land_id}/slots").json()
        self.assertEqual(len(slots), 12)
        self.assertEqual([s["slotNumber"] for s in slots][9:], ["A10", "B1", "B2"])
        self.assertTrue(all(s["status"] == "available" for s in slots))

    def test_invalid_land_rejected(self) -> None:
        response = self.client.post("/api/v1/lands", json={
            "ownerId": "owner1", "name": "", "totalSlots": 0, "pricePerHour": 40,
        })
        self.assertEqual(response.status_code, 422)

    def test_unknown_land(self) -> None:
        self.assertEqual(self.client.get("/api/v1/lands/ghost").status_code, 404)
        self.assertEqual(self.client.get("/api/v1/lands/ghost/slots").status_code, 404)
        self.assertEqual(self.client.delete("/api/v1/lands/ghost").status_code, 404)

    def test_slot_status_update(self) -> None:
        slot_id = f"{self.land_id}-slot-4"
        response = self.client.patch(f"/api/v1/lands/{self.land_id}/slots/{slot_id}",
                                     json={"status": "occupied", "vehicle": "TS-09B-1234"})
        self.assertEqual(response.status_code, 200, response.text)

        slot = self.client.get(f"/api/v1/lands/{self.land_id}/slots").json()[3]
        self.assertEqual((slot["status"], slot["currentVehicle"]), ("occupied", "TS-09B-1234"))

        patrol = self.client.get("/api/v1/patrol", params={"plate": "1234"}).json()
        self.assertEqual([s["id"] for s in patrol], [slot_id])

    def test_unknown_slot_is_404_and_reported(self) -> None:
        response = self.client.patch(f"/api/v1/lands/{self.land_id}/slots/nope",
                                     json={"status": "booked"})
        self.assertEqual(response.status_code, 404)

        feed = self.client.get("/api/v1/errors").json()
        self.assertEqual(feed[0]["event"], "write-error")
        self.assertEqual(feed[0]["kind"], "NotFoundError")

    def test_booking_lifecycle(self) -> None:
        response = self.client.post("/api/v1/bookings", json=self.booking_payload())
        self.assertEqual(response.status_code, 201, response.text)
        booking = response.json()
        self.assertEqual(booking["amount"], 80.0)
        self.assertEqual(booking["status"], "confirmed")

        conflict = self.client.post("/api/v1/bookings", json=self.booking_payload(user_id="user2"))
        self.assertEqual(conflict.status_code, 409)

        mine = self.client.get("/api/v1/bookings", params={"user_id": "user1"}).json()
        self.assertEqual([b["id"] for b in mine], [booking["id"]])

        stats = self.client.get("/api/v1/stats/summary", params={"land_id": self.land_id}).json()
        self.assertEqual((stats["booked"], stats["available"]), (1, 11))

        done = self.client.post(f"/api/v1/bookings/{booking['id']}/complete")
        self.assertEqual(done.json()["status"], "completed")
        slot = self.client.get(f"/api/v1/lands/{self.land_id}/slots").json()[0]
        self.assertEqual(slot["status"], "available")

        again = self.client.post(f"/api/v1/bookings/{booking['id']}/cancel")
        self.assertEqual(again.status_code, 409)

    def test_booking_validation(self) -> None:
        payload = self.booking_payload()
        payload["endTime"], payload["startTime"] = payload["startTime"], payload["endTime"]
        self.assertEqual(self.client.post("/api/v1/bookings", json=payload).status_code, 422)

        missing = self.client.post("/api/v1/bookings", json=self.booking_payload("ghost-slot"))
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self.client.post("/api/v1/bookings/ghost/complete").status_code, 404)

    def test_profiles_and_guards(self) -> None:
        response = self.client.put("/api/v1/users/g1", json={
            "email": "guard@parkwise.com", "displayName": "Security Guard", "role": "guard",
        })
        self.assertEqual(response.status_code, 200, response.text)
        self.client.put("/api/v1/users/c1", json={
            "email": "user@parkwise.com", "displayName": "John Doe", "role": "customer",
        })

        guards = self.client.get("/api/v1/guards").json()
        self.assertEqual([g["uid"] for g in guards], ["g1"])

        bad = self.client.put("/api/v1/users/x", json={
            "email": "x@p.com", "displayName": "X", "role": "admin",
        })
        self.assertEqual(bad.status_code, 422)

    def test_stats_summary(self) -> None:
        self.client.patch(f"/api/v1/lands/{self.land_id}/slots/{self.land_id}-slot-1",
                          json={"status": "occupied", "vehicle": "A"})
        stats = self.client.get("/api/v1/stats/summary").json()
        self.assertEqual(stats["total"], 12)
        self.assertEqual(stats["occupied"], 1)
        self.assertAlmostEqual(stats["occupancy_rate"], round(1 / 12, 4))
        self.assertEqual(self.client.get("/api/v1/stats/summary",
                                         params={"land_id": "ghost"}).status_code, 404)

    def test_assistant_falls_back_when_model_fails(self) -> None:
        response = self.client.post("/api/v1/assistant/recommendations", json={
            "landId": self.land_id, "recentEvents": "Morning rush starting",
        })
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["fallback"])
        self.assertEqual(len(body["recommendations"]), 3)
        self.assertIn("0/12", body["recommendations"][0])

        missing = self.client.post("/api/v1/assistant/recommendations", json={"landId": "ghost"})
        self.assertEqual(missing.status_code, 404)

    def test_reconnect(self) -> None:
        body = self.client.post("/api/v1/sync/reconnect").json()
        self.assertEqual(body["subscriptions"],
                         ["bookings", "guards", "lands", f"slots:{self.land_id}"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
