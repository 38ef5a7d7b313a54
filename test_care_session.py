from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from care_session import (
    CALL_IN_PROGRESS_MESSAGE,
    CONNECTION_TROUBLE_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    CareSessionController,
    CareSessionRegistry,
    CareStep,
)
from voice_fsm import TTS_UNSUPPORTED_MESSAGE


@pytest.fixture
def dashboard(controller, fake_client):
    """Controller on the dashboard with the sample plan (ids 1, 2, 3)."""
    controller.save_patient_info({"age": "79", "condition": "Dementia"})
    fake_client.queue_text("unreadable")
    controller.analyze_prescription(b"photo", "image/jpeg")
    return controller


def _speech_event(controller, event, **extra):
    return controller.handle_speech_event(dict(extra, event=event))


def _current_utterance(controller):
    return controller.status()["voice"]["utterance_id"]


def _current_recognition(controller):
    return controller.status()["voice"]["recognition_id"]


class TestOnboarding:
    def test_starts_on_onboarding(self, controller):
        status = controller.status()
        assert status["step"] == "ONBOARDING"
        assert status["user"]["name"] == "Maya Rao"
        assert status["patient_info"]["condition"] == "Alzheimer's"

    @pytest.mark.parametrize(
        "payload",
        [{}, {"age": "abc"}, {"age": "0"}, {"age": "130"}, {"age": "70", "condition": "Flu"}],
    )
    def test_profile_validation(self, controller, payload):
        result = controller.save_patient_info(payload)
        assert result["ok"] is False
        assert result["step"] == "ONBOARDING"

    def test_profile_moves_to_upload(self, controller):
        result = controller.save_patient_info({"age": " 82 ", "condition": "Vision Loss"})
        assert result["ok"] is True
        assert result["step"] == "UPLOAD"
        assert result["patient_info"] == {"age": "82", "condition": "Vision Loss"}

    def test_scan_requires_profile(self, controller):
        assert controller.analyze_prescription(b"photo")["ok"] is False
        assert controller.begin_upload()["ok"] is False


class TestPrescriptionScan:
    def test_successful_scan_loads_dashboard_and_speaks_welcome(self, controller, fake_client):
        controller.save_patient_info({"age": "79", "condition": "Dementia"})
        fake_client.queue_json(
            {"medicines": [{"name": "Donepezil 5mg", "dosage": "1 Tablet", "timing": ["Night"],
                            "instructions": "At bedtime", "color": "green"}],
             "summary": "One medicine at night."}
        )

        result = controller.analyze_prescription(b"photo", "image/png")

        assert result["ok"] is True
        assert result["step"] == "DASHBOARD"
        assert result["analysis"]["source"] == "gemini"
        night = [card for card in result["schedule"] if card["time"] == "Night"][0]
        assert night["summary"] == "1 Medicines"
        assert result["chat"]["messages"][0]["id"] == "welcome"
        assert "One medicine at night." in result["chat"]["messages"][0]["text"]
        commands = controller.speech_commands(0)["commands"]
        assert commands[-1]["kind"] == "speak"
        assert commands[-1]["text"].startswith("I've analyzed your prescription.")

    def test_failed_scan_shows_sample_plan(self, dashboard):
        status = dashboard.status()
        assert status["step"] == "DASHBOARD"
        assert status["analysis"]["source"] == "mock"
        assert [m["id"] for m in status["analysis"]["medicines"]] == ["1", "2", "3"]
        assert status["last_error"]

    def test_missing_key_returns_to_upload(self, controller, gemini):
        controller.save_patient_info({"age": "79"})
        gemini.configure("")

        result = controller.analyze_prescription(b"photo")

        assert result["ok"] is False
        assert result["step"] == "UPLOAD"
        assert result["needs_api_key"] is True

    def test_new_scan_from_dashboard(self, dashboard):
        result = dashboard.begin_upload()
        assert result["ok"] is True
        assert result["step"] == CareStep.UPLOAD.value


class TestDoseTracking:
    def test_mark_taken_is_idempotent_and_alerts_caregiver(self, dashboard, storage):
        first = dashboard.mark_taken("1", "Morning")
        second = dashboard.mark_taken("1", "morning")

        assert first["ok"] is True
        assert second["message"] == "Already marked as taken."
        assert "1-Morning" in second["taken_keys"]
        alerts = storage.recent_alerts(dashboard.user_id)
        assert len(alerts) == 1
        assert alerts[0]["status"] == "taken"
        assert alerts[0]["medicine_name"] == "Amoxicillin 500mg"

        morning = [c for c in second["schedule"] if c["time"] == "Morning"][0]
        assert [m["is_taken"] for m in morning["medicines"]] == [True, False]

    def test_mark_taken_rejects_unscheduled_slot(self, dashboard):
        assert dashboard.mark_taken("2", "Morning")["ok"] is False
        assert dashboard.mark_taken("99", "Morning")["ok"] is False
        assert dashboard.mark_taken("1", "Brunch")["ok"] is False

    def test_reminder_preference(self, dashboard):
        assert dashboard.set_reminder_preference("Both")["reminder_preference"] == "both"
        assert dashboard.set_reminder_preference("sms")["ok"] is False

    def test_caregiver_alerts_are_kept_in_memory(self, dashboard, storage, monkeypatch):
        def reread(*args, **kwargs):
            raise AssertionError("dose log read again")

        monkeypatch.setattr(storage, "recent_alerts", reread)
        result = dashboard.mark_taken("1", "Morning")

        assert [a["medicine_name"] for a in result["caregiver_alerts"]] == ["Amoxicillin 500mg"]
        assert result["caregiver_alerts"][0]["user_id"] == "maya-rao"
        assert dashboard.status()["caregiver_alerts"] == result["caregiver_alerts"]

    def test_new_session_loads_logged_alerts(self, dashboard, user, gemini, storage):
        dashboard.mark_taken("1", "Morning")
        dashboard.mark_taken("3", "Morning")

        fresh = CareSessionController(user, gemini=gemini, storage=storage)

        alerts = fresh.status()["caregiver_alerts"]
        assert [a["medicine_name"] for a in alerts] == ["Vitamin D3", "Amoxicillin 500mg"]


class TestCompanionChat:
    def test_reply_with_sources_is_spoken(self, dashboard, fake_client):
        chunk = SimpleNamespace(web=SimpleNamespace(uri="https://example.org", title="Source"), maps=None)
        fake_client.queue_text("Amoxicillin can upset the stomach. Any nausea?", chunks=[chunk])

        result = dashboard.send_chat_message("Side effects?")

        assert result["ok"] is True
        user_msg, ai_msg = result["chat"]["messages"][-2:]
        assert user_msg["sender"] == "user"
        assert ai_msg["sources"][0]["uri"] == "https://example.org"
        assert result["chat"]["is_speaking"] is True

    def test_empty_message_ignored(self, dashboard):
        before = len(dashboard.status()["chat"]["messages"])
        assert dashboard.send_chat_message("   ")["ok"] is False
        assert len(dashboard.status()["chat"]["messages"]) == before

    def test_expired_key_asks_to_reconnect(self, dashboard, fake_client):
        fake_client.queue_error(
            genai_errors.ClientError(401, {"error": {"code": 401, "message": "API key not valid.", "status": "UNAUTHENTICATED"}})
        )
        result = dashboard.send_chat_message("hello")

        assert result["chat"]["messages"][-1]["text"] == SESSION_EXPIRED_MESSAGE
        assert result["chat"]["needs_reconnect"] is True

        reconnected = dashboard.reconnect("fresh-key")
        assert reconnected["ok"] is True
        assert reconnected["chat"]["needs_reconnect"] is False

    def test_other_failures_show_trouble_message(self, dashboard, fake_client):
        fake_client.queue_error(RuntimeError("connection reset"))
        result = dashboard.send_chat_message("hello")
        assert result["chat"]["messages"][-1]["text"] == CONNECTION_TROUBLE_MESSAGE
        assert result["chat"]["needs_reconnect"] is False

    def test_message_sent_while_waiting_for_reply_is_ignored(self, dashboard, fake_client):
        nested = []

        def reply(request):
            nested.append(dashboard.send_chat_message("second question"))
            return SimpleNamespace(text="First answer.", candidates=[])

        fake_client.queue_call(reply)
        before = len(dashboard.status()["chat"]["messages"])

        result = dashboard.send_chat_message("first question")

        assert nested[0]["ok"] is False
        assert nested[0]["message"] == "Message ignored."
        assert nested[0]["chat"]["is_typing"] is True
        assert [m["text"] for m in result["chat"]["messages"][before:]] == ["first question", "First answer."]
        assert result["chat"]["is_typing"] is False


class TestReminderCall:
    def test_spoken_confirmation_marks_due_doses(self, dashboard, storage):
        assert dashboard.trigger_call()["show_call_ui"] is True
        assert dashboard.trigger_call()["ok"] is False

        dashboard.accept_call()
        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))
        assert dashboard.status()["call"]["is_listening"] is True

        _speech_event(dashboard, "recognition_result", recognition_id=_current_recognition(dashboard), transcript="yes")
        status = dashboard.status()
        assert {"1-Morning", "3-Morning"} <= set(status["taken_keys"])

        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))
        status = dashboard.status()
        assert status["call"]["state"] == "ENDED"
        assert status["show_call_ui"] is False
        assert {a["status"] for a in storage.recent_alerts(dashboard.user_id)} == {"taken"}

    def test_declined_call_logs_missed_doses(self, dashboard, storage):
        dashboard.mark_taken("1", "Morning")
        dashboard.trigger_call()
        dashboard.decline_call()

        missed = [a for a in storage.recent_alerts(dashboard.user_id) if a["status"] == "missed"]
        assert [a["medicine_name"] for a in missed] == ["Vitamin D3"]

    def test_no_call_to_answer(self, dashboard):
        assert dashboard.accept_call()["ok"] is False
        assert dashboard.end_call()["ok"] is False

    def test_other_voice_features_wait_for_answered_call(self, dashboard):
        dashboard.trigger_call()
        dashboard.accept_call()

        for result in (
            dashboard.read_aloud(),
            dashboard.toggle_voice_command("en"),
            dashboard.run_voice_command("I took all morning pills"),
        ):
            assert result["ok"] is False
            assert result["message"] == CALL_IN_PROGRESS_MESSAGE

        status = dashboard.status()
        assert status["call"]["state"] == "ANSWERED"
        assert status["call"]["is_speaking"] is True
        assert status["taken_keys"] == []

    def test_chat_reply_is_not_spoken_over_call(self, dashboard, fake_client):
        dashboard.trigger_call()
        dashboard.accept_call()
        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))
        fake_client.queue_text("Take it with a full glass of water.")

        result = dashboard.send_chat_message("With food?")

        assert result["ok"] is True
        assert result["chat"]["messages"][-1]["text"] == "Take it with a full glass of water."
        assert result["chat"]["is_speaking"] is False
        assert result["call"]["state"] == "ANSWERED"
        assert result["call"]["is_listening"] is True

    def test_failed_recognition_ends_call_and_logs_missed(self, dashboard, storage):
        dashboard.trigger_call()
        dashboard.accept_call()
        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))

        _speech_event(
            dashboard, "recognition_error",
            recognition_id=_current_recognition(dashboard), error="not-allowed",
        )

        status = dashboard.status()
        assert status["call"]["state"] == "ENDED"
        assert status["call"]["outcome"] == "interrupted"
        missed = [a["medicine_name"] for a in storage.recent_alerts(dashboard.user_id) if a["status"] == "missed"]
        assert sorted(missed) == ["Amoxicillin 500mg", "Vitamin D3"]
        assert dashboard.read_aloud()["ok"] is True


class TestVoiceFeatures:
    def test_read_aloud_and_stop(self, dashboard):
        assert dashboard.read_aloud()["read_aloud"]["is_playing"] is True
        assert dashboard.read_aloud()["ok"] is False
        assert dashboard.stop_read_aloud()["read_aloud"]["is_playing"] is False

    def test_read_aloud_without_synthesis(self, dashboard):
        _speech_event(dashboard, "capabilities", synthesis=False, recognition=True)
        result = dashboard.read_aloud()
        assert result["ok"] is False
        assert result["message"] == TTS_UNSUPPORTED_MESSAGE

    def test_listening_waits_for_welcome_to_finish(self, dashboard):
        result = dashboard.toggle_voice_command("en")
        assert result["voice_command"]["is_listening"] is False
        assert result["voice"]["state"] == "SPEAKING"

        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))
        assert dashboard.status()["voice_command"]["is_listening"] is True

    def test_spoken_voice_command(self, dashboard):
        _speech_event(dashboard, "speech_end", utterance_id=_current_utterance(dashboard))
        result = dashboard.toggle_voice_command("en")
        assert result["voice_command"]["is_listening"] is True

        _speech_event(
            dashboard, "recognition_result",
            recognition_id=_current_recognition(dashboard), transcript="I took all morning pills",
        )
        status = dashboard.status()
        assert {"1-Morning", "3-Morning"} <= set(status["taken_keys"])
        assert status["voice_command"]["feedback"] == "Marked all Morning medications as taken."

    def test_typed_voice_command_in_hindi(self, dashboard):
        assert dashboard.set_voice_language("hi")["voice_command"]["lang"] == "hi"
        result = dashboard.run_voice_command("dopahar ki sari dawai")
        assert result["command"]["action"] == "mark_slot"
        assert "2-Afternoon" in result["taken_keys"]

    def test_stale_and_unknown_events(self, dashboard):
        stale = _speech_event(dashboard, "speech_end", utterance_id="utt-999")
        assert stale["ok"] is True
        assert stale["handled"] is False
        assert _speech_event(dashboard, "explode")["ok"] is False


class TestGroundedLookups:
    def test_health_alerts(self, dashboard, fake_client):
        fake_client.queue_text("- Recall of X")
        result = dashboard.health_alerts()
        assert result["alerts"]["text"] == "- Recall of X"

    def test_pharmacies_validate_coordinates(self, dashboard):
        result = dashboard.nearby_support("abc", "1")
        assert result["ok"] is False
        assert result["error"] == "invalid_coordinates"
        assert dashboard.nearby_support("95", "1")["error"] == "invalid_coordinates"


def test_reset(dashboard):
    result = dashboard.reset()
    assert result["step"] == "ONBOARDING"
    assert result["analysis"] is None
    assert result["chat"]["messages"] == []


def test_registry_reuses_controllers(gemini, storage, user):
    registry = CareSessionRegistry(gemini=gemini, storage=storage)
    first = registry.get(user)
    assert registry.get(user) is first
    registry.drop(user["id"])
    assert registry.get(user) is not first
