from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from care_models import TimeOfDay, clean_text, medicine_label, medicines_for_slot
from speech_bridge import SpeechRecognizer, SpeechSynthesizer, SpeechUnsupportedError, speech_lang
from voice_commands import process_command

logger = logging.getLogger(__name__)

TTS_UNSUPPORTED_MESSAGE = "Sorry, your browser doesn't support text to speech!"
STT_UNSUPPORTED_MESSAGE = "Voice commands not supported in this browser."


class VoiceState(str, Enum):
    IDLE = "IDLE"
    SPEAKING = "SPEAKING"
    LISTENING = "LISTENING"


class VoiceInteractionMachine:
    """
    Sequences speech synthesis and recognition for one user.

    Every utterance and recognition run gets a fresh id; browser callbacks
    carrying any other id are stale and dropped. Handlers invoked from a
    callback may call speak()/start_listening() freely: those calls are
    queued and run once the callback that triggered them has finished
    updating state.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        recognizer: SpeechRecognizer,
        *,
        max_silence_restarts: int = 2,
    ) -> None:
        self._synth = synthesizer
        self._recognizer = recognizer
        self._max_silence_restarts = max(0, int(max_silence_restarts))
        self._state = VoiceState.IDLE
        self._utterance_seq = 0
        self._recognition_seq = 0
        self._utterance: dict[str, Any] | None = None
        self._recognition: dict[str, Any] | None = None
        self._dispatch_depth = 0
        self._deferred: list[Callable[[], Any]] = []
        self._history: list[dict[str, str]] = []
        self.last_transcript = ""
        self.last_error = ""
        self.gave_up = False

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def speaking_owner(self) -> str:
        if self._state == VoiceState.SPEAKING and self._utterance:
            return str(self._utterance.get("owner", ""))
        return ""

    @property
    def listening_owner(self) -> str:
        if self._state == VoiceState.LISTENING and self._recognition:
            return str(self._recognition.get("owner", ""))
        return ""

    def pending_listen_owner(self) -> str:
        if self._utterance and self._utterance.get("listen_after"):
            return str(self._utterance["listen_after"].get("owner", ""))
        return ""

    # Commands
    def speak(
        self,
        text: str,
        *,
        rate: float = 0.9,
        pitch: float = 1.0,
        lang: str = "en-US",
        owner: str = "assistant",
        listen_after: dict[str, Any] | None = None,
        on_complete: Callable[[], Any] | None = None,
        on_interrupted: Callable[[], Any] | None = None,
    ) -> str | None:
        clean = clean_text(text)
        if not clean:
            raise ValueError("Nothing to speak.")
        if self._dispatch_depth:
            self._deferred.append(
                lambda: self.speak(
                    clean,
                    rate=rate,
                    pitch=pitch,
                    lang=lang,
                    owner=owner,
                    listen_after=listen_after,
                    on_complete=on_complete,
                    on_interrupted=on_interrupted,
                )
            )
            return None

        interrupted = self._cancel_activity(owner)
        self._utterance_seq += 1
        utterance_id = f"utt-{self._utterance_seq}"
        try:
            self._synth.speak(utterance_id, clean, rate=rate, pitch=pitch, lang=lang)
        except SpeechUnsupportedError as exc:
            self.last_error = str(exc)
            self._transition(VoiceState.IDLE, f"{owner}: speech synthesis unavailable.")
            self._notify(interrupted)
            raise
        self._utterance = {
            "id": utterance_id,
            "owner": owner,
            "text": clean,
            "started": False,
            "listen_after": dict(listen_after) if listen_after else None,
            "on_complete": on_complete,
            "on_interrupted": on_interrupted,
        }
        self.gave_up = False
        self._transition(VoiceState.SPEAKING, f"{owner}: speaking {utterance_id}.")
        self._notify(interrupted)
        return utterance_id

    def start_listening(
        self,
        *,
        lang: str = "en-US",
        keep_listening: bool = False,
        owner: str = "assistant",
        on_transcript: Callable[[str], Any] | None = None,
        on_give_up: Callable[[], Any] | None = None,
        on_interrupted: Callable[[], Any] | None = None,
    ) -> str | None:
        request = {
            "lang": lang,
            "keep_listening": keep_listening,
            "owner": owner,
            "on_transcript": on_transcript,
            "on_give_up": on_give_up,
            "on_interrupted": on_interrupted,
        }
        if self._dispatch_depth:
            self._deferred.append(lambda: self.start_listening(**request))
            return None
        if self._state == VoiceState.SPEAKING and self._utterance:
            # Picked up again by handle_speech_end.
            interrupted: list[Callable[[], Any]] = []
            pending = self._utterance.get("listen_after")
            if pending and str(pending.get("owner", "")) != owner:
                self._collect_interrupted(pending, interrupted)
            self._utterance["listen_after"] = request
            self._notify(interrupted)
            return None
        return self._begin_listening(request, restarts=0)

    def stop_listening(self) -> None:
        if self._utterance:
            self._utterance["listen_after"] = None
        if self._recognition:
            self._recognition = None
            self._recognizer.stop()
        if self._state == VoiceState.LISTENING:
            self._transition(VoiceState.IDLE, "Listening stopped.")

    def stop(self) -> None:
        self._deferred.clear()
        self._cancel_activity()
        if self._state != VoiceState.IDLE:
            self._transition(VoiceState.IDLE, "Voice activity stopped.")

    # Browser callbacks
    def handle_speech_start(self, utterance_id: str) -> bool:
        if not self._is_current_utterance(utterance_id):
            return False
        self._utterance["started"] = True
        return True

    def handle_speech_end(self, utterance_id: str) -> bool:
        if not self._is_current_utterance(utterance_id):
            return False
        utterance = self._utterance
        self._utterance = None
        self._transition(VoiceState.IDLE, f"Finished speaking {utterance_id}.")
        listen_after = utterance.get("listen_after")
        if listen_after:
            self._deferred.insert(0, lambda: self._begin_listening(listen_after, restarts=0))
        self._dispatch(utterance.get("on_complete"))
        return True

    def handle_speech_error(self, utterance_id: str, error: str = "") -> bool:
        if not self._is_current_utterance(utterance_id):
            return False
        interrupted: list[Callable[[], Any]] = []
        self._collect_interrupted(self._utterance, interrupted)
        self._utterance = None
        self.last_error = clean_text(error) or "speech_error"
        self._transition(VoiceState.IDLE, f"Speech {utterance_id} failed: {self.last_error}.")
        self._notify(interrupted)
        return True

    def handle_recognition_start(self, recognition_id: str) -> bool:
        if not self._is_current_recognition(recognition_id):
            return False
        self._recognition["started"] = True
        return True

    def handle_recognition_result(self, recognition_id: str, transcript: str) -> bool:
        if not self._is_current_recognition(recognition_id):
            return False
        text = clean_text(transcript)
        if not text:
            return True
        recognition = self._recognition
        recognition["got_result"] = True
        self.last_transcript = text
        self._dispatch(recognition.get("on_transcript"), text)
        return True

    def handle_recognition_end(self, recognition_id: str) -> bool:
        if not self._is_current_recognition(recognition_id):
            return False
        recognition = self._recognition
        self._recognition = None
        if not recognition.get("keep_listening"):
            self._transition(VoiceState.IDLE, f"Recognition {recognition_id} ended.")
            return True

        restarts = 0 if recognition.get("got_result") else int(recognition.get("restarts", 0)) + 1
        if restarts > self._max_silence_restarts:
            self.gave_up = True
            self._transition(VoiceState.IDLE, f"No response after {restarts - 1} restarts; giving up.")
            self._dispatch(recognition.get("on_give_up"))
            return True

        self._begin_listening(recognition["request"], restarts=restarts)
        return True

    def handle_recognition_error(self, recognition_id: str, error: str = "") -> bool:
        if not self._is_current_recognition(recognition_id):
            return False
        code = clean_text(error).lower() or "recognition_error"
        if code == "no-speech":
            # Browser follows with an end event, which counts as silence.
            return True
        interrupted: list[Callable[[], Any]] = []
        self._collect_interrupted(self._recognition, interrupted)
        self._recognition = None
        self.last_error = code
        self._transition(VoiceState.IDLE, f"Recognition {recognition_id} failed: {code}.")
        self._notify(interrupted)
        return True

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "is_speaking": self._state == VoiceState.SPEAKING,
            "is_listening": self._state == VoiceState.LISTENING,
            "speaking_owner": self.speaking_owner,
            "listening_owner": self.listening_owner,
            "utterance_id": (self._utterance or {}).get("id", ""),
            "recognition_id": (self._recognition or {}).get("id", ""),
            "silence_restarts": int((self._recognition or {}).get("restarts", 0)),
            "last_transcript": self.last_transcript,
            "last_error": self.last_error,
            "gave_up": self.gave_up,
            "history": self._history[-20:],
        }

    # Internal helpers
    def _begin_listening(self, request: dict[str, Any], *, restarts: int) -> str:
        owner = str(request.get("owner", "assistant"))
        interrupted: list[Callable[[], Any]] = []
        if self._recognition:
            if str(self._recognition.get("owner", "")) != owner:
                self._collect_interrupted(self._recognition, interrupted)
            self._recognition = None
            self._recognizer.stop()
        self._recognition_seq += 1
        recognition_id = f"rec-{self._recognition_seq}"
        try:
            self._recognizer.start(recognition_id, lang=str(request.get("lang", "en-US")), continuous=False)
        except SpeechUnsupportedError as exc:
            self.last_error = str(exc)
            self._transition(VoiceState.IDLE, "Speech recognition unavailable.")
            self._notify(interrupted)
            raise
        self._recognition = {
            "id": recognition_id,
            "owner": owner,
            "keep_listening": bool(request.get("keep_listening")),
            "on_transcript": request.get("on_transcript"),
            "on_give_up": request.get("on_give_up"),
            "on_interrupted": request.get("on_interrupted"),
            "request": request,
            "restarts": restarts,
            "started": False,
            "got_result": False,
        }
        self.gave_up = False
        note = f"Listening ({recognition_id})." if not restarts else f"Silence; restarted listening ({recognition_id})."
        self._transition(VoiceState.LISTENING, note)
        self._notify(interrupted)
        return recognition_id

    def _cancel_activity(self, owner: str | None = None) -> list[Callable[[], Any]]:
        """Cut current speech and recognition; return notices owed to other owners."""
        interrupted: list[Callable[[], Any]] = []
        if self._utterance:
            if owner is not None and str(self._utterance.get("owner", "")) != owner:
                self._collect_interrupted(self._utterance, interrupted)
            self._utterance = None
            self._synth.cancel()
        if self._recognition:
            if owner is not None and str(self._recognition.get("owner", "")) != owner:
                self._collect_interrupted(self._recognition, interrupted)
            self._recognition = None
            self._recognizer.stop()
        return interrupted

    @staticmethod
    def _collect_interrupted(record: dict[str, Any] | None, out: list[Callable[[], Any]]) -> None:
        if not record:
            return
        for source in (record, record.get("listen_after") or {}):
            callback = source.get("on_interrupted")
            if callback is not None and callback not in out:
                out.append(callback)

    def _notify(self, callbacks: list[Callable[[], Any]]) -> None:
        for callback in callbacks:
            self._dispatch(callback)

    def _is_current_utterance(self, utterance_id: str) -> bool:
        if self._utterance and self._utterance.get("id") == str(utterance_id or ""):
            return True
        logger.debug("Ignoring stale speech callback for %s.", utterance_id)
        return False

    def _is_current_recognition(self, recognition_id: str) -> bool:
        if self._recognition and self._recognition.get("id") == str(recognition_id or ""):
            return True
        logger.debug("Ignoring stale recognition callback for %s.", recognition_id)
        return False

    def _dispatch(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        self._dispatch_depth += 1
        try:
            if callback is not None:
                callback(*args)
        finally:
            self._dispatch_depth -= 1
        if not self._dispatch_depth:
            self._flush_deferred()

    def _flush_deferred(self) -> None:
        while self._deferred:
            action = self._deferred.pop(0)
            try:
                action()
            except SpeechUnsupportedError as exc:
                logger.warning("Deferred voice action skipped: %s", exc)

    def _transition(self, to_state: VoiceState, note: str) -> None:
        from_state = self._state.value
        self._state = to_state
        self._history.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "from": from_state,
                "to": to_state.value,
                "note": note,
            }
        )
        if len(self._history) > 50:
            del self._history[:-50]
        logger.debug("Voice %s -> %s: %s", from_state, to_state.value, note)


class ReadAloudAssistant:
    OWNER = "read_aloud"

    def __init__(self, machine: VoiceInteractionMachine, *, rate: float = 0.9, pitch: float = 1.1) -> None:
        self._machine = machine
        self._rate = rate
        self._pitch = pitch

    @property
    def is_playing(self) -> bool:
        return self._machine.speaking_owner == self.OWNER

    def speak(self, text: str, on_complete: Callable[[], Any] | None = None) -> dict[str, Any]:
        if self.is_playing:
            return {"ok": False, "message": "Already reading the schedule."}
        if not clean_text(text):
            return {"ok": False, "message": "There is nothing to read yet."}
        try:
            self._machine.speak(text, rate=self._rate, pitch=self._pitch, owner=self.OWNER, on_complete=on_complete)
        except SpeechUnsupportedError:
            return {"ok": False, "message": TTS_UNSUPPORTED_MESSAGE}
        return {"ok": True, "message": "Reading Schedule..."}

    def stop(self) -> dict[str, Any]:
        if not self.is_playing:
            return {"ok": False, "message": "Nothing is being read aloud."}
        self._machine.stop()
        return {"ok": True, "message": "Stopped reading."}

    def status(self) -> dict[str, Any]:
        playing = self.is_playing
        return {
            "is_playing": playing,
            "label": "Reading Schedule..." if playing else "Read Aloud Schedule",
            "can_hang_up": playing,
        }


class CallState(str, Enum):
    RINGING = "RINGING"
    ANSWERED = "ANSWERED"
    ENDED = "ENDED"


# Recognizers return native script for hi-IN / te-IN, and Devanagari vowel
# signs are not \w, so matching is done on whitespace tokens, not \b.
CONFIRM_WORDS = {
    "yes", "yeah", "yep", "taken", "took", "done", "okay", "ok", "confirm", "confirmed",
    "haan", "ha", "ji",
    "हाँ", "हां", "हा", "जी", "ठीक",
    "అవును", "సరే", "తీసుకున్నాను",
}
CONFIRM_PHRASES = ("li gayi", "le li", "ले ली", "ले लिया", "ली गई", "ले ली है")
DENY_WORDS = {
    "no", "not", "nahi", "later", "wait",
    "नहीं", "नही", "बाद", "रुको",
    "లేదు", "వద్దు", "తర్వాత",
}
_TOKEN_SPLIT = re.compile(r"[\s,.!?।;:]+")


def is_confirmation(transcript: str) -> bool:
    tokens = [t for t in _TOKEN_SPLIT.split(clean_text(transcript).lower()) if t]
    if not tokens or DENY_WORDS.intersection(tokens):
        return False
    if CONFIRM_WORDS.intersection(tokens):
        return True
    padded = f" {' '.join(tokens)} "
    return any(f" {phrase} " in padded for phrase in CONFIRM_PHRASES)


class IncomingCallSession:
    """Scripted reminder call: ring, speak the dose, wait for a spoken yes."""

    OWNER = "incoming_call"
    CALLER_NAME = "Smart Care Assistant"
    REPROMPT_TEXT = "Please say yes once you have taken your medicine."
    THANK_YOU_TEXT = "Thank you. I have marked your medicine as taken. Goodbye."
    RATE = 0.75

    def __init__(
        self,
        machine: VoiceInteractionMachine,
        *,
        medicines: list[dict[str, Any]],
        slot: TimeOfDay,
        on_confirm: Callable[[list[dict[str, Any]], TimeOfDay], Any],
        on_missed: Callable[[list[dict[str, Any]], TimeOfDay, str], Any],
        lang: str = "en",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._machine = machine
        self._medicines = list(medicines or [])
        self._slot = slot
        self._on_confirm = on_confirm
        self._on_missed = on_missed
        self._lang = lang
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = CallState.RINGING
        self._answered_at: datetime | None = None
        self._ended_at: datetime | None = None
        self._confirmed = False
        self._outcome = ""
        self._heard: list[str] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def due_medicines(self) -> list[dict[str, Any]]:
        return medicines_for_slot(self._medicines, self._slot) or list(self._medicines)

    @property
    def medicine_info(self) -> str:
        if self._medicines:
            return medicine_label(self._medicines[0])
        return "Your Daily Dose"

    def reminder_text(self) -> str:
        labels = " and ".join(medicine_label(m) for m in self.due_medicines) or "your daily dose"
        return (
            f"Hello. It is time for your medicine. You should take {labels}. "
            "I'll stay on the line until you confirm."
        )

    def accept(self) -> dict[str, Any]:
        if self._state != CallState.RINGING:
            return {"ok": False, "message": "The call is not ringing."}
        self._state = CallState.ANSWERED
        self._answered_at = self._clock()
        try:
            self._machine.speak(
                self.reminder_text(),
                rate=self.RATE,
                lang=speech_lang(self._lang),
                owner=self.OWNER,
                on_interrupted=self._on_interrupted,
                listen_after=self._listen_request(),
            )
        except SpeechUnsupportedError:
            return {"ok": True, "message": TTS_UNSUPPORTED_MESSAGE}
        return {"ok": True, "message": "Call accepted."}

    def decline(self) -> dict[str, Any]:
        if self._state != CallState.RINGING:
            return self.end()
        self._finish(outcome="ignored")
        return {"ok": True, "message": "Reminder call ignored."}

    def end(self) -> dict[str, Any]:
        if self._state == CallState.ENDED:
            return {"ok": False, "message": "The call has already ended."}
        if self._state == CallState.RINGING:
            return self.decline()
        self._machine.stop()
        self._finish(outcome="confirmed" if self._confirmed else "hung_up")
        return {"ok": True, "message": "Call ended."}

    def elapsed_seconds(self) -> int:
        if self._answered_at is None:
            return 0
        until = self._ended_at or self._clock()
        return max(0, int((until - self._answered_at).total_seconds()))

    def status_label(self) -> str:
        if self._state == CallState.RINGING:
            return "Incoming Voice Reminder..."
        if self._state == CallState.ANSWERED:
            elapsed = self.elapsed_seconds()
            return f"Care Session • {elapsed // 60}:{elapsed % 60:02d}"
        return "Call Ended"

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "caller_name": self.CALLER_NAME,
            "medicine_info": self.medicine_info,
            "slot": self._slot.value,
            "status_label": self.status_label(),
            "elapsed_seconds": self.elapsed_seconds(),
            "confirmed": self._confirmed,
            "outcome": self._outcome,
            "heard": self._heard[-5:],
            "is_speaking": self._machine.speaking_owner == self.OWNER,
            "is_listening": self._machine.listening_owner == self.OWNER,
        }

    def _listen_request(self) -> dict[str, Any]:
        return {
            "lang": speech_lang(self._lang),
            "keep_listening": True,
            "owner": self.OWNER,
            "on_transcript": self._on_transcript,
            "on_give_up": self._on_give_up,
            "on_interrupted": self._on_interrupted,
        }

    def _on_transcript(self, transcript: str) -> None:
        if self._state != CallState.ANSWERED or self._confirmed:
            return
        self._heard.append(transcript)
        if not is_confirmation(transcript):
            self._machine.speak(
                self.REPROMPT_TEXT,
                rate=self.RATE,
                lang=speech_lang(self._lang),
                owner=self.OWNER,
                on_interrupted=self._on_interrupted,
                listen_after=self._listen_request(),
            )
            return
        self._confirmed = True
        self._on_confirm(self.due_medicines, self._slot)
        self._machine.speak(
            self.THANK_YOU_TEXT,
            rate=self.RATE,
            lang=speech_lang(self._lang),
            owner=self.OWNER,
            on_interrupted=self._on_interrupted,
            on_complete=lambda: self._finish(outcome="confirmed"),
        )

    def _on_give_up(self) -> None:
        if self._state == CallState.ANSWERED and not self._confirmed:
            self._finish(outcome="no_response")

    def _on_interrupted(self) -> None:
        if self._state == CallState.ANSWERED:
            self._finish(outcome="confirmed" if self._confirmed else "interrupted")

    def _finish(self, *, outcome: str) -> None:
        if self._state == CallState.ENDED:
            return
        self._state = CallState.ENDED
        self._ended_at = self._clock()
        self._outcome = outcome
        if not self._confirmed:
            self._on_missed(self.due_medicines, self._slot, outcome)


class VoiceCommandCenter:
    OWNER = "voice_command"

    def __init__(
        self,
        machine: VoiceInteractionMachine,
        *,
        medicines_provider: Callable[[], list[dict[str, Any]]],
        slot_provider: Callable[[], TimeOfDay],
        on_mark_taken: Callable[[str, TimeOfDay], Any],
        lang: str = "en",
    ) -> None:
        self._machine = machine
        self._medicines_provider = medicines_provider
        self._slot_provider = slot_provider
        self._on_mark_taken = on_mark_taken
        self.lang = lang
        self.transcript = ""
        self.feedback = ""

    @property
    def is_listening(self) -> bool:
        return self._machine.listening_owner == self.OWNER

    def set_language(self, lang: str) -> None:
        code = clean_text(lang).lower()
        self.lang = code if code in {"en", "hi", "te"} else "en"

    def toggle(self) -> dict[str, Any]:
        if self.is_listening:
            self._machine.stop_listening()
            return {"ok": True, "message": "Voice Command"}
        try:
            self._machine.start_listening(
                lang=speech_lang(self.lang),
                keep_listening=False,
                owner=self.OWNER,
                on_transcript=self.handle_transcript,
            )
        except SpeechUnsupportedError:
            return {"ok": False, "message": STT_UNSUPPORTED_MESSAGE}
        return {"ok": True, "message": "Listening..."}

    def handle_transcript(self, transcript: str) -> dict[str, Any]:
        self.transcript = clean_text(transcript)
        result = process_command(self.transcript, self._medicines_provider(), self._slot_provider(), self.lang)
        for medicine_id, slot in result["marks"]:
            self._on_mark_taken(medicine_id, slot)
        self.feedback = result["feedback"]
        try:
            self._machine.speak(self.feedback, rate=0.9, lang=speech_lang(self.lang), owner=self.OWNER)
        except SpeechUnsupportedError:
            logger.info("Voice command feedback not spoken: synthesis unavailable.")
        return {
            "ok": result["action"] != "unknown",
            "message": self.feedback,
            "action": result["action"],
            "marked": [{"medicine_id": mid, "slot": slot.value} for mid, slot in result["marks"]],
        }

    def status(self) -> dict[str, Any]:
        return {
            "is_listening": self.is_listening,
            "label": "Listening..." if self.is_listening else "Voice Command",
            "lang": self.lang,
            "transcript": self.transcript,
            "feedback": self.feedback,
        }
