"""
ParkWise – Guard Assistant
Uses Groq (free API, Llama-3.1-8B-Instant) to turn a land's live slot state
into up to three short, actionable recommendations for the guard on duty.
When the model is unreachable or answers off-schema, fixed occupancy rules
produce the recommendations instead.

Get free Groq API key: https://console.groq.com/keys
"""
from __future__ import annotations
import os
from typing import List, Optional

from loguru import logger
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from database.models import SlotStatus
from database.schemas import Record
from core.store import ParkStore, OccupancySummary

load_dotenv()

_GROQ_KEY   = os.getenv("GROQ_API_KEY", "")
_GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
_TIMEOUT    = float(os.getenv("ASSISTANT_TIMEOUT", "10"))

MAX_RECOMMENDATIONS = 3
HIGH_OCCUPANCY      = 0.8

SYSTEM_PROMPT = """You are an AI assistant for a parking guard.
Give concise, actionable recommendations and alerts based on the current
parking situation, active bookings and recent events. Focus on efficient
vehicle flow and proactive customer service; put immediate actions and
potential issues first.

Answer with a JSON object of the form
{"recommendations": ["...", "..."]}
containing at most 3 short sentences.
"""


# ── Schemas ───────────────────────────────────────────────────────────────
class SlotState(Record):
    slot_number: str
    status: SlotStatus

class ActiveBooking(Record):
    slot_number: str
    booked_by: str
    vehicle_plate: Optional[str] = None
    expected_arrival_time: Optional[str] = None
    expected_departure_time: Optional[str] = None

class AssistantRequest(Record):
    parking_land_id: str
    current_slot_statuses: List[SlotState] = Field(default_factory=list)
    active_bookings: List[ActiveBooking] = Field(default_factory=list)
    recent_events: str = ""

class AssistantResponse(Record):
    recommendations: List[str] = Field(default_factory=list, max_length=MAX_RECOMMENDATIONS)
    fallback: bool = False


class _ModelOutput(BaseModel):
    recommendations: List[str] = Field(..., min_length=1)

    @field_validator("recommendations")
    @classmethod
    def _clean(cls, value: List[str]) -> List[str]:
        cleaned = [r.strip() for r in value if r and r.strip()]
        if not cleaned:
            raise ValueError("no usable recommendation")
        return cleaned[:MAX_RECOMMENDATIONS]


# ── Prompt ────────────────────────────────────────────────────────────────
def render_prompt(req: AssistantRequest) -> str:
    lines = [f"Parking Land ID: {req.parking_land_id}", "", "Current Parking Slot Statuses:"]
    for s in req.current_slot_statuses:
        lines.append(f"- Slot: {s.slot_number}, Status: {s.status.value}")
    if not req.current_slot_statuses:
        lines.append("- (no slots reported)")

    lines += ["", "Active and Upcoming Bookings:"]
    for b in req.active_bookings:
        lines.append(f"- Slot: {b.slot_number}")
        if b.vehicle_plate:
            lines.append(f"  Vehicle: {b.vehicle_plate}")
        lines.append(f"  Booked by: {b.booked_by}")
        if b.expected_arrival_time:
            lines.append(f"  Expected Arrival: {b.expected_arrival_time}")
        if b.expected_departure_time:
            lines.append(f"  Expected Departure: {b.expected_departure_time}")
    if not req.active_bookings:
        lines.append("- (none)")

    lines += ["", "Recent Events/Observations:",
              req.recent_events.strip() or "No recent events reported.", "",
              "Based on the information above, provide up to 3 concise, "
              "actionable recommendations or alerts for the guard."]
    return "\n".join(lines)


# ── Fallback rules ────────────────────────────────────────────────────────
def fallback_recommendations(req: AssistantRequest) -> AssistantResponse:
    """Three fixed messages derived from the request's occupancy counts."""
    occ = OccupancySummary.from_statuses(s.status for s in req.current_slot_statuses)
    in_use = occ.total - occ.available

    if occ.total and occ.occupancy_rate >= HIGH_OCCUPANCY:
        flow = (f"High occupancy ({in_use}/{occ.total} slots in use): hold walk-in "
                f"vehicles at the entrance and direct them to the {occ.available} free slot(s).")
    else:
        flow = (f"Occupancy is normal ({in_use}/{occ.total} slots in use): keep the "
                f"{occ.available} free slot(s) clear and guide arrivals straight to them.")

    if occ.booked:
        arrivals = (f"{occ.booked} booked slot(s) awaiting arrival: verify booking QR "
                    f"codes at the gate before letting vehicles in.")
    else:
        arrivals = "No bookings are waiting for arrival: prioritise walk-in customers."

    patrol = (f"Patrol the {occ.occupied} occupied slot(s) and check that parked "
              f"plates match the log.")

    return AssistantResponse(recommendations=[flow, arrivals, patrol], fallback=True)


def build_request(store: ParkStore, land_id: str, recent_events: str = "") -> AssistantRequest:
    """Snapshot a land's slots and booked-slot details from the mirror."""
    slots = store.slots_for(land_id)
    bookings = {b.id: b for b in list(store.bookings)}

    active = []
    for s in slots:
        if s.status != SlotStatus.BOOKED:
            continue
        booking = bookings.get(s.current_booking_id or "")
        active.append(ActiveBooking(
            slot_number=s.slot_number,
            booked_by=s.booked_by or "Unknown User",
            vehicle_plate=s.current_vehicle,
            expected_arrival_time=booking.start_time.isoformat() if booking else None,
            expected_departure_time=booking.end_time.isoformat() if booking else s.booked_until,
        ))

    return AssistantRequest(
        parking_land_id=land_id,
        current_slot_statuses=[SlotState(slot_number=s.slot_number, status=s.status) for s in slots],
        active_bookings=active,
        recent_events=recent_events,
    )


# ── Assistant ─────────────────────────────────────────────────────────────
class GuardAssistant:
    def __init__(self, client=None, model: str = _GROQ_MODEL):
        self._model = model
        self._client = client
        if client is None:
            self._init_groq()

    def _init_groq(self):
        if not _GROQ_KEY or _GROQ_KEY.startswith("gsk_XXX"):
            logger.warning("No valid GROQ_API_KEY – guard assistant in offline mode")
            return
        try:
            from groq import Groq
            self._client = Groq(api_key=_GROQ_KEY, timeout=_TIMEOUT, max_retries=0)
            logger.info(f"Groq client ready (model: {self._model})")
        except Exception as e:
            logger.error(f"Groq init failed: {e}")

    @property
    def online(self) -> bool:
        return self._client is not None

    def recommend(self, request) -> AssistantResponse:
        """Recommendations for ``request``; never raises on model failure."""
        if not isinstance(request, AssistantRequest):
            request = AssistantRequest.model_validate(request)
        if self._client is None:
            return fallback_recommendations(request)
        try:
            recommendations = self._generate(request)
        except Exception as e:
            logger.warning(f"Guard assistant failed, using fallback rules: {e}")
            return fallback_recommendations(request)
        return AssistantResponse(recommendations=recommendations)

    def _generate(self, request: AssistantRequest) -> List[str]:
        resp = self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user",   "content": render_prompt(request)},
            ],
            temperature=0.2,
            max_tokens=300,
            response_format={"type": "json_object"},
        )
        content = resp.choices[0].message.content or ""
        return _ModelOutput.model_validate_json(content).recommendations
