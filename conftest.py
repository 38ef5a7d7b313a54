from __future__ import annotations

import json
from datetime import datetime
from types import SimpleNamespace
from typing import Any

import pytest

from care_config import CareSettings
from care_session import CareSessionController
from care_storage import CareStorage
from gemini_service import GeminiService
from speech_bridge import SpeechUnsupportedError
from voice_fsm import VoiceInteractionMachine

MORNING = datetime(2026, 3, 2, 9, 15)


class FakeSpeech:
    """Records synthesizer / recognizer calls instead of talking to a browser."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.synthesis_supported = True
        self.recognition_supported = True

    def speak(self, utterance_id: str, text: str, *, rate: float, pitch: float, lang: str) -> None:
        if not self.synthesis_supported:
            raise SpeechUnsupportedError("no synthesis")
        self.calls.append(("speak", utterance_id, text, rate, pitch, lang))

    def cancel(self) -> None:
        self.calls.append(("cancel",))

    def start(self, recognition_id: str, *, lang: str, continuous: bool = False) -> None:
        if not self.recognition_supported:
            raise SpeechUnsupportedError("no recognition")
        self.calls.append(("listen", recognition_id, lang, continuous))

    def stop(self) -> None:
        self.calls.append(("stop_listening",))

    def kinds(self) -> list[str]:
        return [c[0] for c in self.calls]

    def spoken(self) -> list[str]:
        return [c[2] for c in self.calls if c[0] == "speak"]


class FakeModels:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: list[Any] = []

    def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.responses:
            return SimpleNamespace(text="", candidates=[])
        result = self.responses.pop(0)
        if callable(result):
            result = result(kwargs)
        if isinstance(result, Exception):
            raise result
        return result


class FakeGenaiClient:
    def __init__(self) -> None:
        self.models = FakeModels()

    def queue_text(self, text: str, chunks: list[Any] | None = None) -> None:
        candidate = SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=chunks or []))
        self.models.responses.append(SimpleNamespace(text=text, candidates=[candidate]))

    def queue_json(self, payload: dict[str, Any]) -> None:
        self.queue_text(json.dumps(payload))

    def queue_call(self, handler: Any) -> None:
        """Queue a callable that receives the request kwargs and returns the response."""
        self.models.responses.append(handler)

    def queue_error(self, exc: Exception) -> None:
        self.models.responses.append(exc)


@pytest.fixture
def speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def machine(speech: FakeSpeech) -> VoiceInteractionMachine:
    return VoiceInteractionMachine(speech, speech, max_silence_restarts=2)


@pytest.fixture
def settings(tmp_path) -> CareSettings:
    return CareSettings(
        gemini_api_key="test-key",
        thinking_budget=0,
        data_dir=tmp_path / "data",
        secret_key="test-secret",
    )


@pytest.fixture
def fake_client() -> FakeGenaiClient:
    return FakeGenaiClient()


@pytest.fixture
def gemini(settings: CareSettings, fake_client: FakeGenaiClient) -> GeminiService:
    return GeminiService(settings, client_factory=lambda api_key: fake_client)


@pytest.fixture
def storage(settings: CareSettings) -> CareStorage:
    return CareStorage(settings.data_dir)


@pytest.fixture
def user(storage: CareStorage) -> dict[str, Any]:
    return storage.login("Maya Rao")


@pytest.fixture
def controller(user, gemini, storage) -> CareSessionController:
    return CareSessionController(user, gemini=gemini, storage=storage, clock=lambda: MORNING)
