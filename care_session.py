from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable

from care_models import (
    CONDITIONS,
    DEFAULT_CONDITION,
    REMINDER_PREFERENCES,
    TIME_SLOTS,
    TimeOfDay,
    clean_text,
    current_slot,
    medicines_for_slot,
    mock_analysis,
    parse_slot,
    taken_key,
)
from care_storage import CareStorage
from gemini_service import GeminiKeyError, GeminiService, GeminiServiceError
from speech_bridge import BrowserSpeechBridge, SpeechUnsupportedError
from voice_fsm import (
    CallState,
    IncomingCallSession,
    ReadAloudAssistant,
    VoiceCommandCenter,
    VoiceInteractionMachine,
)

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "AI session expired. Please reconnect to continue."
CALL_IN_PROGRESS_MESSAGE = "A reminder call is in progress."
RECENT_ALERT_LIMIT = 10
CONNECTION_TROUBLE_MESSAGE = (
    "I'm having a little trouble connecting. Please check with your doctor if you're feeling unwell."
)


class CareStep(str, Enum):
    ONBOARDING = "ONBOARDING"
    UPLOAD = "UPLOAD"
    PROCESSING = "PROCESSING"
    DASHBOARD = "DASHBOARD"


class CareSessionController:
    """
    View state for one signed-in caregiver: profile, current analysis,
    dose checklist, companion chat and the voice features layered on top.
    """

    CHAT_OWNER = "chatbot"

    def __init__(
        self,
        user: dict[str, Any],
        *,
        gemini: GeminiService,
        storage: CareStorage,
        bridge: BrowserSpeechBridge | None = None,
        max_silence_restarts: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = RLock()
        self._user = dict(user)
        self._gemini = gemini
        self._storage = storage
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._bridge = bridge or BrowserSpeechBridge()
        self._voice = VoiceInteractionMachine(
            self._bridge,
            self._bridge,
            max_silence_restarts=max_silence_restarts,
        )
        self._read_aloud = ReadAloudAssistant(self._voice)
        self._commands = VoiceCommandCenter(
            self._voice,
            medicines_provider=self._medicines,
            slot_provider=self.current_slot,
            on_mark_taken=self._mark_taken_locked,
        )

        self._step = CareStep.ONBOARDING
        self._patient_info: dict[str, str] = {"age": "", "condition": DEFAULT_CONDITION}
        self._analysis: dict[str, Any] | None = None
        self._reminder_pref: str | None = None
        self._taken_keys: set[str] = set()
        self._call: IncomingCallSession | None = None
        self._messages: list[dict[str, Any]] = []
        self._is_typing = False
        self._needs_reconnect = False
        self._needs_api_key = False
        self._last_error = ""
        self._alert_seq = 0
        self._recent_alerts: list[dict[str, Any]] = storage.recent_alerts(self.user_id, limit=RECENT_ALERT_LIMIT)
        self._history: list[dict[str, str]] = []

        self._record_event("INIT", self._step.value, "Care session opened.")

    @property
    def user_id(self) -> str:
        return str(self._user.get("id", ""))

    @property
    def bridge(self) -> BrowserSpeechBridge:
        return self._bridge

    def current_slot(self) -> TimeOfDay:
        return current_slot(self._clock().hour)

    def status(self) -> dict:
        with self._lock:
            return self._snapshot()

    # Onboarding and upload
    def save_patient_info(self, payload: dict[str, Any]) -> dict:
        with self._lock:
            if self._step == CareStep.PROCESSING:
                return self._response(False, "Please wait until the prescription has been read.")
            age = clean_text(payload.get("age"))
            condition = clean_text(payload.get("condition")) or self._patient_info["condition"]
            try:
                age_value = int(age)
            except (TypeError, ValueError):
                return self._response(False, "Patient age is required.")
            if not 1 <= age_value <= 120:
                return self._response(False, "Patient age must be between 1 and 120.")
            if condition not in CONDITIONS:
                return self._response(False, f"Condition must be one of: {', '.join(CONDITIONS)}.")

            self._patient_info = {"age": str(age_value), "condition": condition}
            if self._step == CareStep.ONBOARDING:
                self._transition(CareStep.UPLOAD, "Patient profile created.")
            return self._response(True, "Profile saved. Scan the prescription next.")

    def begin_upload(self) -> dict:
        with self._lock:
            if self._step == CareStep.ONBOARDING:
                return self._response(False, "Create the patient profile first.")
            if self._step == CareStep.PROCESSING:
                return self._response(False, "Already reading a prescription.")
            if self._step != CareStep.UPLOAD:
                self._transition(CareStep.UPLOAD, "New scan requested.")
            return self._response(True, "Ready for a new prescription photo.")

    def analyze_prescription(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> dict:
        with self._lock:
            if self._step == CareStep.ONBOARDING:
                return self._response(False, "Create the patient profile first.")
            if self._step == CareStep.PROCESSING:
                return self._response(False, "Already reading a prescription.")
            if not image_bytes:
                return self._response(False, "A prescription photo is required.")

            self._transition(CareStep.PROCESSING, "Reading the prescription.")
            message = "Prescription analyzed."
            try:
                analysis = self._gemini.analyze_prescription(image_bytes, mime_type, self._patient_info)
            except GeminiKeyError as exc:
                self._needs_api_key = True
                self._last_error = str(exc)
                self._transition(CareStep.UPLOAD, "AI key missing or expired.")
                return self._response(False, "Connect an API key to read prescriptions.")
            except GeminiServiceError as exc:
                logger.warning("Prescription analysis failed, using sample plan: %s", exc)
                self._last_error = str(exc)
                analysis = mock_analysis()
                message = "Could not read the prescription clearly. Showing a sample care plan."

            self._needs_api_key = False
            self._load_analysis(analysis)
            self._transition(
                CareStep.DASHBOARD,
                f"Care plan ready with {len(analysis.get('medicines', []))} medicines ({analysis.get('source')}).",
            )
            return self._response(True, message)

    # Dashboard
    def mark_taken(self, medicine_id: str, slot: Any) -> dict:
        with self._lock:
            if not self._analysis:
                return self._response(False, "No care plan yet.")
            slot_enum = parse_slot(slot)
            if slot_enum is None:
                return self._response(False, "Slot must be Morning, Afternoon, Evening or Night.")
            med = self._find_medicine(medicine_id)
            if not med:
                return self._response(False, "Medicine not found in the care plan.")
            if slot_enum.value not in med.get("timing", []):
                return self._response(False, f"{med['name']} is not scheduled for {slot_enum.value}.")
            if not self._mark_taken_locked(str(med["id"]), slot_enum):
                return self._response(True, "Already marked as taken.")
            return self._response(True, f"Marked {med['name']} as taken.")

    def set_reminder_preference(self, preference: Any) -> dict:
        with self._lock:
            pref = clean_text(preference).lower()
            if pref not in REMINDER_PREFERENCES:
                return self._response(False, "Preference must be voice, notification or both.")
            self._reminder_pref = pref
            return self._response(True, f"Reminders set to {pref}.")

    # Companion chat
    def send_chat_message(self, text: Any) -> dict:
        with self._lock:
            if not self._analysis:
                return self._response(False, "Scan a prescription before chatting.")
            message = clean_text(text)
            if not message or self._is_typing:
                return self._response(False, "Message ignored.")

            self._append_message(message, sender="user")
            self._is_typing = True
            try:
                result = self._gemini.ask_question(message, self._analysis["medicines"], self._patient_info)
            except GeminiKeyError as exc:
                self._last_error = str(exc)
                self._needs_reconnect = True
                self._append_message(SESSION_EXPIRED_MESSAGE, sender="ai")
                return self._response(False, SESSION_EXPIRED_MESSAGE)
            except GeminiServiceError as exc:
                self._last_error = str(exc)
                self._append_message(CONNECTION_TROUBLE_MESSAGE, sender="ai")
                return self._response(False, CONNECTION_TROUBLE_MESSAGE)
            finally:
                self._is_typing = False

            self._needs_reconnect = False
            self._append_message(result["text"], sender="ai", sources=result.get("sources") or [])
            self._say(result["text"])
            return self._response(True, "Reply received.")

    def reconnect(self, api_key: str | None = None) -> dict:
        with self._lock:
            if api_key:
                self._gemini.configure(api_key)
            if not self._gemini.has_api_key():
                return self._response(False, "No API key configured. Select an API key to reconnect.")
            self._needs_reconnect = False
            self._needs_api_key = False
            self._last_error = ""
            if self._analysis:
                self._append_message("I'm back online. What would you like to ask?", sender="ai")
            return self._response(True, "Reconnected.")

    # Voice features
    def trigger_call(self) -> dict:
        with self._lock:
            if self._call and self._call.state != CallState.ENDED:
                return self._response(False, "A reminder call is already in progress.")
            self._call = IncomingCallSession(
                self._voice,
                medicines=self._medicines(),
                slot=self.current_slot(),
                on_confirm=self._confirm_call_doses,
                on_missed=self._record_missed_doses,
                lang=self._commands.lang,
                clock=self._clock,
            )
            self._record_event(self._step.value, self._step.value, "Reminder call ringing.")
            return self._response(True, "Incoming voice reminder.")

    def accept_call(self) -> dict:
        with self._lock:
            if not self._call:
                return self._response(False, "No reminder call is ringing.")
            result = self._call.accept()
            return self._response(result["ok"], result["message"])

    def decline_call(self) -> dict:
        with self._lock:
            if not self._call:
                return self._response(False, "No reminder call is active.")
            result = self._call.decline()
            return self._response(result["ok"], result["message"])

    def end_call(self) -> dict:
        with self._lock:
            if not self._call:
                return self._response(False, "No reminder call is active.")
            result = self._call.end()
            return self._response(result["ok"], result["message"])

    def read_aloud(self) -> dict:
        with self._lock:
            if not self._analysis:
                return self._response(False, "No care plan to read yet.")
            if self._call_answered():
                return self._response(False, CALL_IN_PROGRESS_MESSAGE)
            result = self._read_aloud.speak(self._analysis.get("summary", ""))
            return self._response(result["ok"], result["message"])

    def stop_read_aloud(self) -> dict:
        with self._lock:
            result = self._read_aloud.stop()
            return self._response(result["ok"], result["message"])

    def toggle_voice_command(self, lang: str | None = None) -> dict:
        with self._lock:
            if lang:
                self._commands.set_language(lang)
            if self._call_answered():
                return self._response(False, CALL_IN_PROGRESS_MESSAGE)
            result = self._commands.toggle()
            return self._response(result["ok"], result["message"])

    def set_voice_language(self, lang: Any) -> dict:
        with self._lock:
            self._commands.set_language(str(lang or ""))
            return self._response(True, f"Voice language set to {self._commands.lang}.")

    def run_voice_command(self, transcript: Any) -> dict:
        with self._lock:
            text = clean_text(transcript)
            if not text:
                return self._response(False, "Say or type a command.")
            if self._call_answered():
                return self._response(False, CALL_IN_PROGRESS_MESSAGE)
            result = self._commands.handle_transcript(text)
            response = self._response(result["ok"], result["message"])
            response["command"] = result
            return response

    def speech_commands(self, since: Any = 0) -> dict:
        return self._bridge.commands_since(since)

    def handle_speech_event(self, payload: dict[str, Any]) -> dict:
        with self._lock:
            event = clean_text(payload.get("event")).lower()
            utterance_id = clean_text(payload.get("utterance_id"))
            recognition_id = clean_text(payload.get("recognition_id"))
            error = clean_text(payload.get("error"))

            if event == "capabilities":
                self._bridge.report_capabilities(
                    synthesis=bool(payload.get("synthesis", True)),
                    recognition=bool(payload.get("recognition", True)),
                )
                return self._response(True, "Speech capabilities recorded.")

            handlers: dict[str, Callable[[], bool]] = {
                "speech_start": lambda: self._voice.handle_speech_start(utterance_id),
                "speech_end": lambda: self._voice.handle_speech_end(utterance_id),
                "speech_error": lambda: self._voice.handle_speech_error(utterance_id, error),
                "recognition_start": lambda: self._voice.handle_recognition_start(recognition_id),
                "recognition_result": lambda: self._voice.handle_recognition_result(
                    recognition_id, str(payload.get("transcript", ""))
                ),
                "recognition_end": lambda: self._voice.handle_recognition_end(recognition_id),
                "recognition_error": lambda: self._voice.handle_recognition_error(recognition_id, error),
            }
            handler = handlers.get(event)
            if handler is None:
                return self._response(False, f"Unknown speech event: {event or 'missing'}.")
            handled = handler()
            response = self._response(True, "Speech event applied." if handled else "Stale speech event ignored.")
            response["handled"] = handled
            return response

    # Grounded lookups
    def health_alerts(self) -> dict:
        with self._lock:
            try:
                result = self._gemini.get_global_health_alerts()
            except GeminiServiceError as exc:
                self._last_error = str(exc)
                self._needs_reconnect = isinstance(exc, GeminiKeyError)
                return self._response(False, "Health alerts are unavailable right now.")
            response = self._response(True, "Health alerts loaded.")
            response["alerts"] = result
            return response

    def nearby_support(self, lat: Any, lng: Any) -> dict:
        with self._lock:
            try:
                lat_f, lng_f = float(lat), float(lng)
            except (TypeError, ValueError):
                return self._error_response("invalid_coordinates", "lat and lng must be numeric.")
            if not (-90 <= lat_f <= 90 and -180 <= lng_f <= 180):
                return self._error_response("invalid_coordinates", "lat/lng out of range.")
            try:
                result = self._gemini.get_nearby_support(lat_f, lng_f)
            except GeminiServiceError as exc:
                self._last_error = str(exc)
                self._needs_reconnect = isinstance(exc, GeminiKeyError)
                return self._response(False, "Nearby pharmacies are unavailable right now.")
            response = self._response(True, "Nearby pharmacies loaded.")
            response["pharmacies"] = result
            return response

    def reset(self) -> dict:
        with self._lock:
            self._voice.stop()
            self._patient_info = {"age": "", "condition": DEFAULT_CONDITION}
            self._analysis = None
            self._reminder_pref = None
            self._taken_keys = set()
            self._call = None
            self._messages = []
            self._is_typing = False
            self._needs_reconnect = False
            self._needs_api_key = False
            self._last_error = ""
            self._transition(CareStep.ONBOARDING, "Manual reset.")
            return self._response(True, "Care session reset.")

    # Internal helpers
    def _medicines(self) -> list[dict[str, Any]]:
        return list((self._analysis or {}).get("medicines", []))

    def _find_medicine(self, medicine_id: Any) -> dict[str, Any] | None:
        target = clean_text(medicine_id)
        for med in self._medicines():
            if str(med.get("id")) == target:
                return med
        return None

    def _load_analysis(self, analysis: dict[str, Any]) -> None:
        if self._call and self._call.state != CallState.ENDED:
            self._call.end()
        self._call = None
        self._voice.stop()
        self._analysis = analysis
        self._taken_keys = set()
        self._messages = []
        self._needs_reconnect = False
        summary = str(analysis.get("summary", "")).rstrip(". ")
        welcome = (
            f"I've analyzed your prescription. {summary}. "
            "How are you feeling right now? Any new dizziness or headaches?"
        )
        self._append_message(welcome, sender="ai", message_id="welcome")
        self._say(welcome)

    def _mark_taken_locked(self, medicine_id: str, slot: TimeOfDay) -> bool:
        med = self._find_medicine(medicine_id)
        if not med:
            return False
        key = taken_key(str(med["id"]), slot)
        if key in self._taken_keys:
            return False
        self._taken_keys.add(key)
        self._record_alert(med, slot, "taken")
        return True

    def _confirm_call_doses(self, medicines: list[dict[str, Any]], slot: TimeOfDay) -> None:
        for med in medicines:
            self._mark_taken_locked(str(med.get("id")), slot)

    def _record_missed_doses(self, medicines: list[dict[str, Any]], slot: TimeOfDay, outcome: str) -> None:
        for med in medicines:
            if taken_key(str(med.get("id")), slot) in self._taken_keys:
                continue
            self._record_alert(med, slot, "missed")
        self._record_event(self._step.value, self._step.value, f"Reminder call ended without confirmation ({outcome}).")

    def _record_alert(self, med: dict[str, Any], slot: TimeOfDay, status: str) -> None:
        self._alert_seq += 1
        alert = {
            "id": f"alert-{int(time.time() * 1000)}-{self._alert_seq}",
            "medicine_name": str(med.get("name", "")),
            "status": status,
            "time": slot.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._storage.append_alert(self.user_id, alert)
        except OSError as exc:
            logger.error("Could not write caregiver alert: %s", exc)
            return
        self._recent_alerts.insert(0, dict(alert, user_id=self._storage.safe_user_id(self.user_id)))
        del self._recent_alerts[RECENT_ALERT_LIMIT:]

    def _call_answered(self) -> bool:
        return bool(self._call and self._call.state == CallState.ANSWERED)

    def _say(self, text: str) -> None:
        # An answered call owns the speaker and microphone.
        if self._call_answered():
            return
        try:
            self._voice.speak(text, rate=0.9, owner=self.CHAT_OWNER)
        except SpeechUnsupportedError:
            return

    def _append_message(
        self,
        text: str,
        *,
        sender: str,
        sources: list[dict[str, str]] | None = None,
        message_id: str | None = None,
    ) -> None:
        message: dict[str, Any] = {
            "id": message_id or str(int(time.time() * 1000) + len(self._messages)),
            "text": text,
            "sender": sender,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if sources:
            message["sources"] = sources
        self._messages.append(message)

    def _schedule(self) -> list[dict[str, Any]]:
        cards: list[dict[str, Any]] = []
        for slot in TIME_SLOTS:
            meds = []
            for med in medicines_for_slot(self._medicines(), slot):
                item = dict(med)
                item["is_taken"] = taken_key(str(med["id"]), slot) in self._taken_keys
                meds.append(item)
            cards.append(
                {
                    "time": slot.value,
                    "medicines": meds,
                    "summary": f"{len(meds)} Medicines" if meds else "No medicines scheduled",
                }
            )
        return cards

    def _transition(self, to_state: CareStep, note: str) -> None:
        from_state = self._step.value
        self._step = to_state
        self._record_event(from_state, to_state.value, note)

    def _record_event(self, from_state: str, to_state: str, note: str) -> None:
        self._history.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "from": from_state,
                "to": to_state,
                "note": note,
            }
        )
        if len(self._history) > 100:
            del self._history[:-100]
        logger.debug("[%s] %s -> %s: %s", self.user_id, from_state, to_state, note)

    def _snapshot(self) -> dict:
        show_call = bool(self._call and self._call.state != CallState.ENDED)
        return {
            "user": dict(self._user),
            "step": self._step.value,
            "patient_info": dict(self._patient_info),
            "analysis": self._analysis,
            "schedule": self._schedule() if self._analysis else [],
            "taken_keys": sorted(self._taken_keys),
            "current_slot": self.current_slot().value,
            "reminder_preference": self._reminder_pref,
            "chat": {
                "messages": list(self._messages),
                "is_typing": self._is_typing,
                "needs_reconnect": self._needs_reconnect,
                "is_speaking": self._voice.speaking_owner == self.CHAT_OWNER,
            },
            "show_call_ui": show_call,
            "call": self._call.status() if self._call else None,
            "read_aloud": self._read_aloud.status(),
            "voice_command": self._commands.status(),
            "voice": self._voice.status(),
            "speech_capabilities": {
                "synthesis": self._bridge.synthesis_supported,
                "recognition": self._bridge.recognition_supported,
            },
            "has_api_key": self._gemini.has_api_key(),
            "needs_api_key": self._needs_api_key,
            "last_error": self._last_error,
            "caregiver_alerts": list(self._recent_alerts),
            "can_save_profile": self._step != CareStep.PROCESSING,
            "can_upload": self._step == CareStep.UPLOAD,
            "can_chat": self._analysis is not None and not self._is_typing,
            "can_trigger_call": not show_call,
            "history": self._history[-30:],
        }

    def _response(self, ok: bool, message: str) -> dict:
        response = self._snapshot()
        response["ok"] = ok
        response["message"] = message
        return response

    def _error_response(self, code: str, message: str) -> dict:
        response = self._response(False, message)
        response["error"] = code
        return response


class CareSessionRegistry:
    """One controller per signed-in user, created on first use."""

    def __init__(
        self,
        *,
        gemini: GeminiService,
        storage: CareStorage,
        max_silence_restarts: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = RLock()
        self._gemini = gemini
        self._storage = storage
        self._max_silence_restarts = max_silence_restarts
        self._clock = clock
        self._sessions: dict[str, CareSessionController] = {}

    def get(self, user: dict[str, Any]) -> CareSessionController:
        user_id = str(user.get("id", ""))
        with self._lock:
            controller = self._sessions.get(user_id)
            if controller is None:
                controller = CareSessionController(
                    user,
                    gemini=self._gemini,
                    storage=self._storage,
                    max_silence_restarts=self._max_silence_restarts,
                    clock=self._clock,
                )
                self._sessions[user_id] = controller
            return controller

    def drop(self, user_id: str) -> None:
        with self._lock:
            controller = self._sessions.pop(str(user_id), None)
        if controller is not None:
            controller.reset()
