import json
import unittest
from unittest import mock

from core.assistant import (
    AssistantRequest, GuardAssistant, build_request, fallback_recommendations,
    render_prompt,
)
from core.events import ErrorEmitter
from core.store import ParkStore
from tests.helpers import END, START, completion, fake_groq, make_documents


def request_for(statuses, events=""):
    return AssistantRequest(
        parking_land_id="land1",
        current_slot_statuses=[
            {"slot_number": f"A{i + 1}", "status": status} for i, status in enumerate(statuses)
        ],
        recent_events=events,
    )


class FallbackTestCase(unittest.TestCase):
    def test_high_occupancy_without_bookings(self) -> None:
        result = fallback_recommendations(request_for(["occupied"] * 9 + ["available"]))

        self.assertTrue(result.fallback)
        self.assertEqual(len(result.recommendations), 3)
        self.assertTrue(result.recommendations[0].startswith("High occupancy (9/10 slots in use)"))
        self.assertIn("1 free slot", result.recommendations[0])
        self.assertTrue(result.recommendations[1].startswith("No bookings"))
        self.assertIn("9 occupied", result.recommendations[2])

    def test_normal_occupancy_with_bookings(self) -> None:
        result = fallback_recommendations(
            request_for(["booked", "booked", "occupied", "available", "available"])
        )
        self.assertTrue(result.recommendations[0].startswith("Occupancy is normal (3/5"))
        self.assertTrue(result.recommendations[1].startswith("2 booked slot(s)"))

    def test_fallback_is_deterministic(self) -> None:
        req = request_for(["booked", "occupied", "available"])
        self.assertEqual(fallback_recommendations(req), fallback_recommendations(req))

    def test_empty_land(self) -> None:
        result = fallback_recommendations(request_for([]))
        self.assertEqual(len(result.recommendations), 3)
        self.assertIn("0/0", result.recommendations[0])


class GuardAssistantTestCase(unittest.TestCase):
    def test_network_failure_yields_fallback(self) -> None:
        def unreachable(**kwargs):
            raise ConnectionError("network down")

        assistant = GuardAssistant(client=fake_groq(unreachable))
        req = request_for(["occupied"] * 8 + ["available"] * 2)

        result = assistant.recommend(req)
        self.assertTrue(result.fallback)
        self.assertEqual(result.recommendations, fallback_recommendations(req).recommendations)

    def test_offline_mode_without_api_key(self) -> None:
        with mock.patch("core.assistant._GROQ_KEY", ""):
            assistant = GuardAssistant()
        self.assertFalse(assistant.online)
        result = assistant.recommend(request_for(["available"]))
        self.assertTrue(result.fallback)
        self.assertEqual(len(result.recommendations), 3)

    def test_model_answer_is_validated_and_truncated(self) -> None:
        calls = []

        def answer(**kwargs):
            calls.append(kwargs)
            recs = ["Open gate B", "  ", "Check A5 sensor", "Greet VIP", "Sweep row C"]
            return completion(json.dumps({"recommendations": recs}))

        assistant = GuardAssistant(client=fake_groq(answer), model="test-model")
        result = assistant.recommend(request_for(["occupied", "booked"], "Sensor fault in A5"))

        self.assertFalse(result.fallback)
        self.assertEqual(result.recommendations, ["Open gate B", "Check A5 sensor", "Greet VIP"])
        self.assertEqual(calls[0]["model"], "test-model")
        self.assertEqual(calls[0]["response_format"], {"type": "json_object"})
        prompt = calls[0]["messages"][1]["content"]
        self.assertIn("Slot: A2, Status: booked", prompt)
        self.assertIn("Sensor fault in A5", prompt)

    def test_invalid_json_yields_fallback(self) -> None:
        assistant = GuardAssistant(client=fake_groq(lambda **kw: completion("sure! here you go")))
        result = assistant.recommend(request_for(["available"]))
        self.assertTrue(result.fallback)

    def test_schema_mismatch_yields_fallback(self) -> None:
        for content in ('{"recommendations": []}', '{"advice": ["x"]}', '{"recommendations": ["", " "]}'):
            assistant = GuardAssistant(client=fake_groq(lambda _c=content, **kw: completion(_c)))
            self.assertTrue(assistant.recommend(request_for(["available"])).fallback, content)

    def test_camel_case_request_is_accepted(self) -> None:
        assistant = GuardAssistant(client=fake_groq(lambda **kw: completion('{"recommendations": ["ok"]}')))
        result = assistant.recommend({
            "parkingLandId": "land1",
            "currentSlotStatuses": [{"slotNumber": "A1", "status": "occupied"}],
            "activeBookings": [{"slotNumber": "A2", "bookedBy": "user1"}],
            "recentEvents": "",
        })
        self.assertEqual(result.recommendations, ["ok"])


class BuildRequestTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ParkStore(make_documents(), emitter=ErrorEmitter())
        self.store.init_sync()
        self.store.add_parking_land("owner1", "Central", 4, 10, land_id="land1")

    def tearDown(self) -> None:
        self.store.close()

    def test_snapshot_of_live_state(self) -> None:
        self.store.update_slot_status("land1", "land1-slot-1", "occupied", "TS-01")
        booking = self.store.create_booking({
            "user_id": "user1", "land_id": "land1", "slot_id": "land1-slot-2",
            "start_time": START, "end_time": END,
        })

        req = build_request(self.store, "land1", "Morning rush")
        self.assertEqual([s.status.value for s in req.current_slot_statuses],
                         ["occupied", "booked", "available", "available"])
        self.assertEqual(len(req.active_bookings), 1)
        active = req.active_bookings[0]
        self.assertEqual((active.slot_number, active.booked_by), ("A2", "user1"))
        self.assertEqual(active.expected_arrival_time, booking.start_time.isoformat())
        self.assertEqual(req.recent_events, "Morning rush")

        prompt = render_prompt(req)
        self.assertIn("Booked by: user1", prompt)
        self.assertIn("Expected Departure:", prompt)

    def test_unknown_land_gives_empty_request(self) -> None:
        req = build_request(self.store, "ghost")
        self.assertEqual(req.current_slot_statuses, [])
        self.assertIn("No recent events reported.", render_prompt(req))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
