from __future__ import annotations

import base64
import logging
from typing import Any

from flask import Flask, jsonify, render_template, request, session

from care_config import CareSettings
from care_session import CareSessionController, CareSessionRegistry
from care_storage import CareStorage
from gemini_service import GeminiService

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/heic", "image/heif"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def decode_image_data_url(data_url: str) -> tuple[bytes, str]:
    if "," not in data_url:
        raise ValueError("Invalid image payload.")
    header, encoded = data_url.split(",", 1)
    if "base64" not in header:
        raise ValueError("Image payload must be base64 encoded.")
    if not header.startswith("data:image/"):
        raise ValueError("Image payload must be an image.")
    mime_type = header[len("data:"):].split(";", 1)[0]
    try:
        image_bytes = base64.b64decode(encoded, validate=True)
    except ValueError as exc:
        raise ValueError("Could not decode image payload.") from exc
    if not image_bytes:
        raise ValueError("Image payload is empty.")
    return image_bytes, mime_type


def create_app(
    settings: CareSettings | None = None,
    *,
    gemini: GeminiService | None = None,
    storage: CareStorage | None = None,
) -> Flask:
    settings = settings or CareSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

    gemini = gemini or GeminiService(settings)
    storage = storage or CareStorage(settings.data_dir)
    sessions = CareSessionRegistry(
        gemini=gemini,
        storage=storage,
        max_silence_restarts=settings.max_silence_restarts,
    )
    app.extensions["smartcare"] = {"gemini": gemini, "storage": storage, "sessions": sessions}

    def _current() -> CareSessionController | None:
        user = storage.load_user(session.get("user_id", ""))
        if not user:
            return None
        return sessions.get(user)

    def _not_signed_in():
        return jsonify(ok=False, message="Please sign in first."), 401

    def _bad_json(controller: CareSessionController):
        return jsonify(controller.status() | {"ok": False, "message": "Request JSON must be an object."}), 400

    def _json_payload() -> Any:
        return request.get_json(silent=True) or {}

    @app.get("/")
    def home():
        return render_template("index.html")

    @app.get("/health")
    def health():
        return jsonify(status="ok")

    # Mock authentication
    @app.post("/api/login")
    def api_login():
        payload = _json_payload()
        if not isinstance(payload, dict):
            return jsonify(ok=False, message="Request JSON must be an object."), 400
        try:
            user = storage.login(str(payload.get("name", "")))
        except ValueError as exc:
            return jsonify(ok=False, message=str(exc)), 400
        session["user_id"] = user["id"]
        logger.info("User %s signed in.", user["id"])
        return jsonify(sessions.get(user).status() | {"ok": True, "message": f"Welcome, {user['name']}."})

    @app.post("/api/logout")
    def api_logout():
        user_id = session.pop("user_id", None)
        if user_id:
            sessions.drop(user_id)
        return jsonify(ok=True, message="Signed out.")

    @app.get("/api/me")
    @app.get("/api/status")
    def api_status():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.status())

    # Onboarding and prescription scan
    @app.post("/api/profile")
    def api_profile():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.save_patient_info(payload))

    @app.post("/api/prescription/new-scan")
    def api_new_scan():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.begin_upload())

    @app.post("/api/prescription/analyze")
    def api_analyze_prescription():
        controller = _current()
        if controller is None:
            return _not_signed_in()

        upload = request.files.get("file")
        if upload is not None:
            image_bytes = upload.read()
            mime_type = str(upload.mimetype or "image/jpeg")
        else:
            payload = _json_payload()
            if not isinstance(payload, dict):
                return _bad_json(controller)
            try:
                image_bytes, mime_type = decode_image_data_url(str(payload.get("data_url", "")))
            except ValueError as exc:
                return jsonify(controller.status() | {"ok": False, "message": str(exc)}), 400

        if mime_type not in ALLOWED_IMAGE_TYPES:
            return jsonify(controller.status() | {"ok": False, "message": f"Unsupported image type: {mime_type}."}), 400
        if not image_bytes:
            return jsonify(controller.status() | {"ok": False, "message": "Prescription image is empty."}), 400
        return jsonify(controller.analyze_prescription(image_bytes, mime_type))

    # Dashboard
    @app.get("/api/schedule")
    def api_schedule():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        status = controller.status()
        return jsonify(
            schedule=status["schedule"],
            current_slot=status["current_slot"],
            taken_keys=status["taken_keys"],
        )

    @app.post("/api/schedule/taken")
    def api_mark_taken():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.mark_taken(payload.get("medicine_id"), payload.get("slot")))

    @app.post("/api/reminder-preference")
    def api_reminder_preference():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.set_reminder_preference(payload.get("preference")))

    # Companion chat
    @app.post("/api/chat")
    def api_chat():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.send_chat_message(payload.get("text")))

    @app.post("/api/chat/reconnect")
    def api_chat_reconnect():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.reconnect(payload.get("api_key") or None))

    @app.get("/api/ai/key")
    def api_key_status():
        return jsonify(has_api_key=gemini.has_api_key())

    @app.post("/api/ai/key")
    def api_key_set():
        if _current() is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return jsonify(ok=False, message="Request JSON must be an object."), 400
        api_key = str(payload.get("api_key", "")).strip()
        if not api_key:
            return jsonify(ok=False, message="api_key is required."), 400
        gemini.configure(api_key)
        return jsonify(ok=True, message="API key saved.", has_api_key=gemini.has_api_key())

    # Reminder call
    @app.post("/api/call/trigger")
    def api_call_trigger():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.trigger_call())

    @app.post("/api/call/accept")
    def api_call_accept():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.accept_call())

    @app.post("/api/call/decline")
    def api_call_decline():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.decline_call())

    @app.post("/api/call/end")
    def api_call_end():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.end_call())

    # Read-aloud and voice commands
    @app.post("/api/voice/read-aloud")
    def api_read_aloud():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.read_aloud())

    @app.post("/api/voice/stop")
    def api_voice_stop():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.stop_read_aloud())

    @app.post("/api/voice/command/toggle")
    def api_voice_command_toggle():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.toggle_voice_command(payload.get("lang")))

    @app.post("/api/voice/language")
    def api_voice_language():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.set_voice_language(payload.get("lang")))

    @app.post("/api/voice/command")
    def api_voice_command():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.run_voice_command(payload.get("text")))

    # Browser speech bridge
    @app.get("/api/speech/commands")
    def api_speech_commands():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.speech_commands(request.args.get("since", 0)))

    @app.post("/api/speech/events")
    def api_speech_events():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.handle_speech_event(payload))

    @app.post("/api/speech/capabilities")
    def api_speech_capabilities():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        payload = _json_payload()
        if not isinstance(payload, dict):
            return _bad_json(controller)
        return jsonify(controller.handle_speech_event(dict(payload, event="capabilities")))

    # Grounded lookups
    @app.get("/api/health-alerts")
    def api_health_alerts():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.health_alerts())

    @app.get("/api/pharmacies")
    def api_pharmacies():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        result = controller.nearby_support(request.args.get("lat"), request.args.get("lng"))
        if result.get("error") == "invalid_coordinates":
            return jsonify(result), 400
        return jsonify(result)

    @app.get("/api/caregiver/alerts")
    def api_caregiver_alerts():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        try:
            limit = int(request.args.get("limit", 20))
        except (TypeError, ValueError):
            limit = 20
        return jsonify(alerts=storage.recent_alerts(controller.user_id, limit=limit))

    @app.post("/api/reset")
    def api_reset():
        controller = _current()
        if controller is None:
            return _not_signed_in()
        return jsonify(controller.reset())

    return app


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
