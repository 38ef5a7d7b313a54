from __future__ import annotations

import copy
import re
import time
from enum import Enum
from typing import Any


class TimeOfDay(str, Enum):
    MORNING = "Morning"
    AFTERNOON = "Afternoon"
    EVENING = "Evening"
    NIGHT = "Night"


TIME_SLOTS = [TimeOfDay.MORNING, TimeOfDay.AFTERNOON, TimeOfDay.EVENING, TimeOfDay.NIGHT]

CONDITIONS = ["Alzheimer's", "Dementia", "Vision Loss", "General Aging"]
DEFAULT_CONDITION = "Alzheimer's"

REMINDER_PREFERENCES = {"voice", "notification", "both"}

MEDICINE_COLORS = ["blue", "red", "green", "amber", "yellow"]
CONFIDENCE_LEVELS = ["high", "low"]

MOCK_PRESCRIPTION_DATA: dict[str, Any] = {
    "medicines": [
        {
            "id": "1",
            "name": "Amoxicillin 500mg",
            "dosage": "1 Tablet",
            "timing": ["Morning", "Evening"],
            "instructions": "Take after meals. Do not skip doses.",
            "icon": "pill",
            "color": "blue",
            "confidence": "high",
        },
        {
            "id": "2",
            "name": "Paracetamol 650mg",
            "dosage": "1 Tablet",
            "timing": ["Afternoon"],
            "instructions": "Only if fever is present.",
            "icon": "capsule",
            "color": "red",
            "confidence": "high",
        },
        {
            "id": "3",
            "name": "Vitamin D3",
            "dosage": "1 Capsule",
            "timing": ["Morning"],
            "instructions": "Take once daily with breakfast.",
            "icon": "circle",
            "color": "yellow",
            "confidence": "high",
        },
    ],
    "summary": (
        "You have 3 medicines to take. The most important ones are Amoxicillin for your infection "
        "and Vitamin D3 for your bones. Remember to eat before taking the Amoxicillin."
    ),
}

NO_DATA_ANALYSIS = {"medicines": [], "summary": "No data found."}


def clean_text(value: Any) -> str:
    text = str(value or "").strip()
    return re.sub(r"\s+", " ", text)


def parse_slot(value: Any) -> TimeOfDay | None:
    text = clean_text(value).lower()
    for slot in TIME_SLOTS:
        if slot.value.lower() == text:
            return slot
    return None


def current_slot(hour: int) -> TimeOfDay:
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def medicine_label(medicine: dict[str, Any]) -> str:
    return f"{clean_text(medicine.get('dosage'))} of {clean_text(medicine.get('name'))}"


def taken_key(medicine_id: str, slot: TimeOfDay) -> str:
    return f"{medicine_id}-{slot.value}"


def medicines_for_slot(medicines: list[dict[str, Any]], slot: TimeOfDay) -> list[dict[str, Any]]:
    return [m for m in medicines if slot.value in (m.get("timing") or [])]


def _short_list(value: Any, limit: int = 6) -> list[str]:
    if isinstance(value, str):
        value = [s.strip() for s in re.split(r"[,\n;]+", value) if s.strip()]
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value[:limit]:
        txt = clean_text(item)
        if txt:
            out.append(txt)
    return out


def normalize_medicine(raw: dict[str, Any], idx: int, *, id_stamp: int | None = None) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    name = clean_text(raw.get("name"))
    if not name:
        return None

    timing: list[str] = []
    raw_timing = raw.get("timing")
    if isinstance(raw_timing, str):
        raw_timing = [raw_timing]
    if isinstance(raw_timing, list):
        for item in raw_timing:
            slot = parse_slot(item)
            if slot and slot.value not in timing:
                timing.append(slot.value)
    # Keep slot order stable for the schedule cards.
    timing.sort(key=lambda v: [s.value for s in TIME_SLOTS].index(v))

    color = clean_text(raw.get("color")).lower()
    if color not in MEDICINE_COLORS:
        color = "blue"
    confidence = clean_text(raw.get("confidence")).lower()
    if confidence not in CONFIDENCE_LEVELS:
        confidence = "low" if not timing else "high"

    stamp = id_stamp if id_stamp is not None else int(time.time() * 1000)
    med: dict[str, Any] = {
        "id": clean_text(raw.get("id")) or f"med-{idx}-{stamp}",
        "name": name,
        "dosage": clean_text(raw.get("dosage")) or "1 Tablet",
        "timing": timing,
        "instructions": clean_text(raw.get("instructions")),
        "icon": clean_text(raw.get("icon")) or "pill",
        "color": color,
        "confidence": confidence,
    }
    drug_class = clean_text(raw.get("drug_class") or raw.get("drugClass"))
    if drug_class:
        med["drug_class"] = drug_class
    side_effects = _short_list(raw.get("side_effects") or raw.get("sideEffects"))
    if side_effects:
        med["side_effects"] = side_effects
    interactions = clean_text(raw.get("interactions"))
    if interactions:
        med["interactions"] = interactions
    return med


def normalize_analysis(raw: dict[str, Any], *, source: str, assign_ids: bool = True) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    stamp = int(time.time() * 1000)
    medicines: list[dict[str, Any]] = []
    raw_medicines = raw.get("medicines")
    if isinstance(raw_medicines, list):
        for idx, item in enumerate(raw_medicines):
            if assign_ids and isinstance(item, dict):
                item = {k: v for k, v in item.items() if k != "id"}
            med = normalize_medicine(item, idx, id_stamp=stamp)
            if med:
                medicines.append(med)

    out: dict[str, Any] = {
        "medicines": medicines,
        "summary": clean_text(raw.get("summary")) or NO_DATA_ANALYSIS["summary"],
        "source": source,
    }
    for key, alt in (("patient_name", "patientName"), ("doctor_name", "doctorName"), ("date", "date")):
        value = clean_text(raw.get(key) or raw.get(alt))
        if value:
            out[key] = value
    return out


def mock_analysis() -> dict[str, Any]:
    return normalize_analysis(copy.deepcopy(MOCK_PRESCRIPTION_DATA), source="mock", assign_ids=False)
