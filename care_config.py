from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_FALSE_VALUES = {"0", "false", "no", "off"}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in _FALSE_VALUES


def env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except (TypeError, ValueError):
        return default


def env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip() or default


@dataclass
class CareSettings:
    gemini_api_key: str = ""
    gemini_enabled: bool = True
    vision_model: str = "gemini-3-pro-preview"
    chat_model: str = "gemini-3-flash-preview"
    maps_model: str = "gemini-2.5-flash"
    thinking_budget: int = 12000
    data_dir: Path = Path("data")
    secret_key: str = "smartcare-dev-secret"
    max_silence_restarts: int = 2
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "CareSettings":
        base_dir = Path(__file__).resolve().parent
        return cls(
            gemini_api_key=env_str("GEMINI_API_KEY") or env_str("API_KEY"),
            gemini_enabled=env_flag("ENABLE_GEMINI", True),
            vision_model=env_str("GEMINI_VISION_MODEL", cls.vision_model),
            chat_model=env_str("GEMINI_CHAT_MODEL", cls.chat_model),
            maps_model=env_str("GEMINI_MAPS_MODEL", cls.maps_model),
            thinking_budget=max(0, env_int("GEMINI_THINKING_BUDGET", cls.thinking_budget)),
            data_dir=Path(env_str("SMARTCARE_DATA_DIR", str(base_dir / "data"))),
            secret_key=env_str("SMARTCARE_SECRET_KEY", cls.secret_key),
            max_silence_restarts=max(0, env_int("SMARTCARE_MAX_SILENCE_RESTARTS", cls.max_silence_restarts)),
            log_level=env_str("SMARTCARE_LOG_LEVEL", cls.log_level).upper(),
        )
