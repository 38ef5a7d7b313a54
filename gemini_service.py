from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from care_config import CareSettings
from care_models import CONFIDENCE_LEVELS, MEDICINE_COLORS, NO_DATA_ANALYSIS, TIME_SLOTS, normalize_analysis

logger = logging.getLogger(__name__)

CHAT_FALLBACK_TEXT = (
    "I'm sorry, I'm having trouble connecting to medical databases. Please check with your pharmacist."
)
ALERTS_FALLBACK_TEXT = "Scanning for health alerts..."
PHARMACY_FALLBACK_TEXT = "Locating local pharmacies..."

_KEY_ERROR_MARKERS = (
    "api key not found",
    "api_key_invalid",
    "api key not valid",
    "requested entity was not found",
    "permission_denied",
)


class GeminiServiceError(RuntimeError):
    """The AI call failed for a reason other than the key."""


class GeminiKeyError(GeminiServiceError):
    """No usable API key: missing, invalid, or the AI session expired."""


def build_prescription_system_instruction(patient_info: dict[str, Any] | None = None) -> str:
    patient_info = patient_info or {}
    condition = str(patient_info.get("condition", "")).strip() or "unknown"
    age = str(patient_info.get("age", "")).strip() or "unknown"
    return (
        "YOU ARE A CLINICAL PHARMACIST & OCR SPECIALIST.\n\n"
        "1. OCR ACCURACY: The image might be blurry or handwritten. Use your medical knowledge to correct "
        "spelling. (e.g., \"Amoxcil\" -> \"Amoxicillin\").\n"
        "2. CLINICAL REASONING: Verify that the dosage makes sense for the drug (e.g., 500mg is typical for "
        "Amoxicillin, but not for Lisinopril).\n"
        "3. SAFETY PROFILE: For every medicine, extract:\n"
        "   - Common side effects (relevant to seniors).\n"
        "   - Interactions (especially with other meds in the list).\n"
        "   - Drug Class (e.g., NSAID, Statin, Beta-blocker).\n"
        "4. LATIN DECODING: PO=by mouth, QHS=bedtime, BID=twice daily, TID=thrice daily.\n"
        "5. CONFIDENCE: Mark confidence \"low\" for any medicine whose name or dosage you could not read clearly.\n\n"
        f"PATIENT CONTEXT: {condition}, Age: {age}."
    )


PRESCRIPTION_USER_PROMPT = (
    "Read this prescription. Return JSON for medicines, side effects, and a simple 2-sentence "
    "voice-friendly summary for a senior."
)

CHAT_SYSTEM_INSTRUCTION = (
    "You are a medical companion for seniors.\n"
    "1. Explain side effects and interactions using simple language.\n"
    "2. ALWAYS use Google Search to check the latest clinical findings for the drug class.\n"
    "3. MANDATORY: End every single message with a clarifying question about the patient's symptoms "
    "(e.g., \"Are you feeling more sleepy than usual?\").\n"
    "4. Include a disclaimer that you are an AI."
)

HEALTH_ALERTS_PROMPT = (
    "What are the most critical medical news, FDA drug recalls, or public health alerts from the last 7 days? "
    "Summarize in 3 bullet points for a public safety dashboard."
)

NEARBY_PHARMACIES_PROMPT = (
    "Find 3 pharmacies nearby. List their names and a one-sentence summary of why they are a good choice "
    "(e.g. 24 hours, highly rated)."
)


def build_prescription_schema() -> types.Schema:
    medicine = types.Schema(
        type=types.Type.OBJECT,
        properties={
            "name": types.Schema(type=types.Type.STRING),
            "dosage": types.Schema(type=types.Type.STRING),
            "timing": types.Schema(
                type=types.Type.ARRAY,
                items=types.Schema(type=types.Type.STRING, enum=[slot.value for slot in TIME_SLOTS]),
            ),
            "instructions": types.Schema(type=types.Type.STRING),
            "color": types.Schema(type=types.Type.STRING, enum=list(MEDICINE_COLORS)),
            "confidence": types.Schema(type=types.Type.STRING, enum=list(CONFIDENCE_LEVELS)),
            "drugClass": types.Schema(type=types.Type.STRING),
            "sideEffects": types.Schema(type=types.Type.ARRAY, items=types.Schema(type=types.Type.STRING)),
            "interactions": types.Schema(type=types.Type.STRING),
        },
        required=["name", "dosage", "timing", "instructions", "color"],
    )
    return types.Schema(
        type=types.Type.OBJECT,
        properties={
            "medicines": types.Schema(type=types.Type.ARRAY, items=medicine),
            "summary": types.Schema(type=types.Type.STRING),
        },
    )


def build_question_contents(query: str, medicines: list[dict[str, Any]], patient_info: dict[str, Any] | None) -> str:
    condition = str((patient_info or {}).get("condition", "")).strip() or "unknown"
    return (
        f"User Query: {query}\n"
        f"Patient Context: {condition}\n"
        f"Active Meds: {json.dumps(medicines, ensure_ascii=False)}"
    )


def extract_json_candidate(text: str) -> dict[str, Any] | None:
    raw = str(text or "").strip()
    if not raw:
        return None

    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except json.JSONDecodeError:
        pass

    fence = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", raw, flags=re.S | re.I)
    if fence:
        try:
            obj = json.loads(fence.group(1))
            return obj if isinstance(obj, dict) else None
        except json.JSONDecodeError:
            pass

    start = raw.find("{")
    end = raw.rfind("}")
    if start >= 0 and end > start:
        try:
            obj = json.loads(raw[start : end + 1])
            return obj if isinstance(obj, dict) else None
        except json.JSONDecodeError:
            return None
    return None


def response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text
    for cand in getattr(response, "candidates", None) or []:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) if content else None
        if parts:
            combined = "".join(str(getattr(p, "text", "") or "") for p in parts)
            if combined.strip():
                return combined
    return ""


def grounding_sources(response: Any) -> list[dict[str, str]]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    sources: list[dict[str, str]] = []
    for chunk in chunks:
        for kind in ("web", "maps"):
            ref = getattr(chunk, kind, None)
            uri = str(getattr(ref, "uri", "") or "").strip() if ref else ""
            if not uri:
                continue
            sources.append(
                {
                    "kind": kind,
                    "title": str(getattr(ref, "title", "") or "").strip() or uri,
                    "uri": uri,
                }
            )
    return sources


def _is_key_error(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    if code in (401, 403):
        return True
    message = str(getattr(exc, "message", "") or exc).lower()
    return any(marker in message for marker in _KEY_ERROR_MARKERS)


class GeminiService:
    """
    Thin collaborator over the google-genai SDK.

    A fresh client is created per call so a key swapped in through
    configure() takes effect on the next request.
    """

    def __init__(
        self,
        settings: CareSettings | None = None,
        *,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._settings = settings or CareSettings.from_env()
        self._api_key = self._settings.gemini_api_key
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))

    def has_api_key(self) -> bool:
        return bool(self._api_key) and self._settings.gemini_enabled

    def configure(self, api_key: str) -> None:
        self._api_key = str(api_key or "").strip()
        logger.info("Gemini API key %s.", "updated" if self._api_key else "cleared")

    def _client(self) -> Any:
        if not self.has_api_key():
            raise GeminiKeyError("API key not found. Select an API key to enable prescription reading.")
        return self._client_factory(self._api_key)

    def _generate(self, operation: str, **kwargs: Any) -> Any:
        client = self._client()
        try:
            return client.models.generate_content(**kwargs)
        except genai_errors.APIError as exc:
            logger.error("%s failed: %s", operation, exc)
            if _is_key_error(exc):
                raise GeminiKeyError(str(exc)) from exc
            raise GeminiServiceError(str(exc)) from exc
        except Exception as exc:
            logger.error("%s failed: %s", operation, exc)
            raise GeminiServiceError(f"{type(exc).__name__}: {exc}") from exc

    def analyze_prescription(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        patient_info: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not image_bytes:
            raise ValueError("Prescription image is empty.")
        config_kwargs: dict[str, Any] = {
            "system_instruction": build_prescription_system_instruction(patient_info),
            "response_mime_type": "application/json",
            "response_schema": build_prescription_schema(),
        }
        if self._settings.thinking_budget:
            config_kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=self._settings.thinking_budget)

        response = self._generate(
            "Prescription analysis",
            model=self._settings.vision_model,
            contents=[
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type or "image/jpeg"),
                PRESCRIPTION_USER_PROMPT,
            ],
            config=types.GenerateContentConfig(**config_kwargs),
        )
        text = response_text(response)
        if not text.strip():
            return normalize_analysis(dict(NO_DATA_ANALYSIS), source="gemini")
        parsed = extract_json_candidate(text)
        if parsed is None:
            raise GeminiServiceError("Prescription analysis returned invalid JSON.")
        analysis = normalize_analysis(parsed, source="gemini")
        analysis["model"] = self._settings.vision_model
        return analysis

    def ask_question(
        self,
        query: str,
        medicines: list[dict[str, Any]],
        patient_info: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = self._generate(
            "Companion chat",
            model=self._settings.chat_model,
            contents=build_question_contents(query, medicines, patient_info),
            config=types.GenerateContentConfig(
                system_instruction=CHAT_SYSTEM_INSTRUCTION,
                tools=[types.Tool(google_search=types.GoogleSearch())],
            ),
        )
        return {
            "text": response_text(response) or CHAT_FALLBACK_TEXT,
            "sources": grounding_sources(response),
        }

    def get_global_health_alerts(self) -> dict[str, Any]:
        response = self._generate(
            "Health alerts",
            model=self._settings.chat_model,
            contents=HEALTH_ALERTS_PROMPT,
            config=types.GenerateContentConfig(tools=[types.Tool(google_search=types.GoogleSearch())]),
        )
        return {
            "text": response_text(response) or ALERTS_FALLBACK_TEXT,
            "sources": grounding_sources(response),
        }

    def get_nearby_support(self, lat: float, lng: float) -> dict[str, Any]:
        response = self._generate(
            "Nearby pharmacies",
            model=self._settings.maps_model,
            contents=NEARBY_PHARMACIES_PROMPT,
            config=types.GenerateContentConfig(
                tools=[types.Tool(google_maps=types.GoogleMaps())],
                tool_config=types.ToolConfig(
                    retrieval_config=types.RetrievalConfig(
                        lat_lng=types.LatLng(latitude=float(lat), longitude=float(lng)),
                    )
                ),
            ),
        )
        return {
            "text": response_text(response) or PHARMACY_FALLBACK_TEXT,
            "sources": grounding_sources(response),
        }
