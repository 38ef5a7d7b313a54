from __future__ import annotations

from typing import Any

from care_models import TimeOfDay, medicines_for_slot

SLOT_KEYWORDS: list[tuple[str, TimeOfDay]] = [
    ("morning", TimeOfDay.MORNING),
    ("afternoon", TimeOfDay.AFTERNOON),
    ("evening", TimeOfDay.EVENING),
    ("night", TimeOfDay.NIGHT),
    ("subah", TimeOfDay.MORNING),
    ("dopahar", TimeOfDay.AFTERNOON),
    ("shaam", TimeOfDay.EVENING),
    ("raat", TimeOfDay.NIGHT),
]

GROUP_WORDS = ("all", "sari", "pills", "medicine")
TAKEN_WORDS = ("take", "took", "done", "li gayi", "khali")
NEXT_WORDS = ("next", "agla", "kya hai")

SLOT_NAMES_HI = {
    TimeOfDay.MORNING: "सुबह",
    TimeOfDay.AFTERNOON: "दोपहर",
    TimeOfDay.EVENING: "शाम",
    TimeOfDay.NIGHT: "रात",
}


def _feedback(kind: str, lang: str, **kw: str) -> str:
    hindi = lang == "hi"
    if kind == "slot":
        if hindi:
            return f"{SLOT_NAMES_HI.get(kw['slot_enum'], kw['slot'])} की सभी दवाएं ले ली गई हैं।"
        return f"Marked all {kw['slot']} medications as taken."
    if kind == "medicine":
        return f"{kw['name']} को रिकॉर्ड कर लिया गया है।" if hindi else f"Marked {kw['name']} as taken."
    if kind == "next":
        return "आपकी अगली खुराक डैशबोर्ड पर दिखाई गई है।" if hindi else "Your next dose is visible on the dashboard."
    return "क्षमा करें, मुझे समझ नहीं आया।" if hindi else "Sorry, I didn't catch that command."


def _match_slot(lower_text: str) -> TimeOfDay | None:
    for keyword, slot in SLOT_KEYWORDS:
        if keyword in lower_text:
            return slot
    return None


def _match_medicine(lower_text: str, medicines: list[dict[str, Any]]) -> dict[str, Any] | None:
    for med in medicines:
        name = str(med.get("name", "")).lower()
        if not name:
            continue
        if name in lower_text:
            return med
        if any(len(word) > 3 and word in lower_text for word in name.split(" ")):
            return med
    return None


def process_command(
    text: str,
    medicines: list[dict[str, Any]],
    current_time: TimeOfDay,
    lang: str = "en",
) -> dict[str, Any]:
    """
    Interpret one recognized utterance.

    Returns {"action", "marks", "feedback"} where marks is a list of
    (medicine_id, slot) pairs the caller should record as taken.
    """
    lower_text = str(text or "").lower()

    slot = _match_slot(lower_text)
    if slot and any(word in lower_text for word in GROUP_WORDS):
        slot_meds = medicines_for_slot(medicines, slot)
        if slot_meds:
            return {
                "action": "mark_slot",
                "slot": slot.value,
                "marks": [(str(m.get("id")), slot) for m in slot_meds],
                "feedback": _feedback("slot", lang, slot=slot.value, slot_enum=slot),
            }

    if any(word in lower_text for word in TAKEN_WORDS):
        found = _match_medicine(lower_text, medicines)
        if found:
            return {
                "action": "mark_medicine",
                "slot": current_time.value,
                "marks": [(str(found.get("id")), current_time)],
                "feedback": _feedback("medicine", lang, name=str(found.get("name", ""))),
            }

    if any(word in lower_text for word in NEXT_WORDS):
        return {"action": "next_dose", "slot": None, "marks": [], "feedback": _feedback("next", lang)}

    return {"action": "unknown", "slot": None, "marks": [], "feedback": _feedback("unknown", lang)}
