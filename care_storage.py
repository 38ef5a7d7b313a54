from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class CareStorage:
    """
    File storage for the parts of a care session that outlive a page reload.

    Files:
      <data>/users/<user_id>.json       mock-auth user records
      <data>/logs/dose_log.jsonl        caregiver alerts (taken / missed)

    Prescription analyses live only in memory.
    """

    def __init__(self, data_dir: str | Path | None = None) -> None:
        self.data_dir = Path(data_dir or Path(__file__).resolve().parent / "data")
        self.users_dir = self.data_dir / "users"
        self.logs_dir = self.data_dir / "logs"
        self.dose_log_file = self.logs_dir / "dose_log.jsonl"
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        self.users_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def safe_user_id(self, value: Any) -> str:
        return re.sub(r"[^a-zA-Z0-9_-]", "", str(value or "")).strip()

    def build_user_id(self, name: str) -> str:
        slug = re.sub(r"[^a-z0-9]+", "-", str(name or "").lower()).strip("-")
        return slug or "user"

    def _user_path(self, user_id: str) -> Path:
        return self.users_dir / f"{self.safe_user_id(user_id)}.json"

    def load_user(self, user_id: str) -> dict[str, Any] | None:
        safe_id = self.safe_user_id(user_id)
        if not safe_id:
            return None
        path = self._user_path(safe_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def login(self, name: str) -> dict[str, Any]:
        clean_name = re.sub(r"\s+", " ", str(name or "")).strip()
        if not clean_name:
            raise ValueError("Name is required to sign in.")
        user_id = self.build_user_id(clean_name)
        existing = self.load_user(user_id) or {}
        now_iso = self._now_iso()
        user = {
            "id": user_id,
            "name": clean_name,
            "email": f"{clean_name.lower().replace(' ', '')}@care.com",
            "created_at": str(existing.get("created_at", "")).strip() or now_iso,
            "last_login_at": now_iso,
        }
        self._user_path(user_id).write_text(json.dumps(user, indent=2, ensure_ascii=False), encoding="utf-8")
        return user

    def append_alert(self, user_id: str, alert: dict[str, Any]) -> None:
        entry = dict(alert)
        entry["user_id"] = self.safe_user_id(user_id)
        if not entry["user_id"]:
            return
        with self.dose_log_file.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def recent_alerts(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        safe_id = self.safe_user_id(user_id)
        if not safe_id or not self.dose_log_file.exists():
            return []
        alerts: list[dict[str, Any]] = []
        for line in self.dose_log_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict) and entry.get("user_id") == safe_id:
                alerts.append(entry)
        return alerts[-max(1, int(limit)):][::-1]
