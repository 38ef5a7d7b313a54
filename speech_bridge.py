from __future__ import annotations

from threading import RLock
from typing import Any, Protocol

SPEECH_LANGS = {"en": "en-US", "hi": "hi-IN", "te": "te-IN"}


def speech_lang(lang: str) -> str:
    return SPEECH_LANGS.get(str(lang or "").strip().lower(), "en-US")


class SpeechUnsupportedError(RuntimeError):
    """The page reported that a speech capability is missing."""


class SpeechSynthesizer(Protocol):
    def speak(self, utterance_id: str, text: str, *, rate: float, pitch: float, lang: str) -> None: ...

    def cancel(self) -> None: ...


class SpeechRecognizer(Protocol):
    def start(self, recognition_id: str, *, lang: str, continuous: bool = False) -> None: ...

    def stop(self) -> None: ...


class BrowserSpeechBridge:
    """
    Drives the page's speechSynthesis / SpeechRecognition objects.

    Commands are appended to a numbered queue the page polls with
    commands_since(); the page posts the matching callbacks back to the
    event endpoint, tagged with the utterance / recognition id it was given.
    """

    def __init__(self, *, max_commands: int = 200) -> None:
        self._lock = RLock()
        self._seq = 0
        self._commands: list[dict[str, Any]] = []
        self._max_commands = max(10, int(max_commands))
        self.synthesis_supported = True
        self.recognition_supported = True

    def report_capabilities(self, *, synthesis: bool, recognition: bool) -> None:
        with self._lock:
            self.synthesis_supported = bool(synthesis)
            self.recognition_supported = bool(recognition)

    def speak(self, utterance_id: str, text: str, *, rate: float, pitch: float, lang: str) -> None:
        if not self.synthesis_supported:
            raise SpeechUnsupportedError("Speech synthesis is not available in this browser.")
        self._push(
            {
                "kind": "speak",
                "utterance_id": utterance_id,
                "text": text,
                "rate": rate,
                "pitch": pitch,
                "lang": lang,
            }
        )

    def cancel(self) -> None:
        if self.synthesis_supported:
            self._push({"kind": "cancel"})

    def start(self, recognition_id: str, *, lang: str, continuous: bool = False) -> None:
        if not self.recognition_supported:
            raise SpeechUnsupportedError("Speech recognition is not available in this browser.")
        self._push(
            {
                "kind": "listen",
                "recognition_id": recognition_id,
                "lang": lang,
                "continuous": bool(continuous),
                "interim_results": False,
            }
        )

    def stop(self) -> None:
        if self.recognition_supported:
            self._push({"kind": "stop_listening"})

    def commands_since(self, seq: int = 0) -> dict[str, Any]:
        with self._lock:
            try:
                after = int(seq)
            except (TypeError, ValueError):
                after = 0
            pending = [dict(c) for c in self._commands if c["seq"] > after]
            return {"seq": self._seq, "commands": pending}

    def _push(self, command: dict[str, Any]) -> None:
        with self._lock:
            self._seq += 1
            command["seq"] = self._seq
            self._commands.append(command)
            if len(self._commands) > self._max_commands:
                del self._commands[: -self._max_commands]
