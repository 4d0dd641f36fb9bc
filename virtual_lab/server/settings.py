from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

_DEFAULT_DB_PATH = Path.home() / ".virtual_lab" / "virtual_lab.db"

DEFAULTS: dict[str, Any] = {
    # External completion provider (Gemini generateContent)
    "ai.provider": "gemini",
    "ai.model": "gemini-pro",
    "ai.base_url": "https://generativelanguage.googleapis.com/v1beta/models",
    "ai.timeout": 10,
    "ai.temperature": 0.7,
    "ai.max_output_tokens": 1024,
    "lab.default_language": "javascript",
    # Second join for an occupied role: "reconnect" | "reject"
    "lab.role_collision": "reconnect",
    # Seconds before an empty room is evicted from memory (0 = never)
    "lab.idle_ttl": 0,
    "server.send_timeout": 10,
    "server.max_message_bytes": 1024 * 1024,
}

ROLE_COLLISION_CHOICES = ("reconnect", "reject")
PROVIDER_CHOICES = ("gemini",)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SettingsStore:
    """Lab settings persisted as JSON values beside the session tables.

    Unset keys read as ``DEFAULTS``; deleting a key restores its default.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def _stored(self, *keys: str) -> dict[str, Any]:
        query = "SELECT key, value FROM settings"
        if keys:
            query += f" WHERE key IN ({', '.join('?' for _ in keys)})"
        with self._lock:
            rows = self._conn.execute(query, keys).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def get(self, key: str, default: Any = ...) -> Any:
        stored = self._stored(key)
        if key in stored:
            return stored[key]
        return DEFAULTS.get(key) if default is ... else default

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, updates: dict[str, Any]) -> None:
        rows = [(key, json.dumps(value)) for key, value in updates.items()]
        with self._lock:
            self._conn.executemany(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                rows,
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()

    def get_all(self) -> dict[str, Any]:
        return {**DEFAULTS, **self._stored()}

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Defaults, then stored values, then command-line overrides."""
        result = self.get_all()
        if cli_overrides:
            result.update({k: v for k, v in cli_overrides.items() if v is not None})
        return result


def validate_setting(key: str, value: Any) -> str | None:
    """Return an error string for a bad key/value pair, or None."""
    if key not in DEFAULTS:
        return f"Unknown settings key: {key}"
    if key == "lab.role_collision" and value not in ROLE_COLLISION_CHOICES:
        return f"lab.role_collision must be one of {list(ROLE_COLLISION_CHOICES)}"
    if key == "ai.provider" and value not in PROVIDER_CHOICES:
        return f"ai.provider must be one of {list(PROVIDER_CHOICES)}"
    default = DEFAULTS[key]
    if isinstance(default, (int, float)) and not isinstance(default, bool):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return f"{key} must be a non-negative number"
    elif isinstance(default, str) and not isinstance(value, str):
        return f"{key} must be a string"
    return None
