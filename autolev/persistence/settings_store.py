from __future__ import annotations

from typing import Dict

from autolev.core.user_settings import UserSettings
from autolev.persistence.db import DB, utc_now_iso


class SettingsStore:
    """Per-user settings as a flat key/value document in sqlite."""

    def __init__(self, db: DB):
        self.db = db

    def load_document(self, user_id: str) -> Dict[str, str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM user_settings WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return {r["key"]: r["value"] for r in rows}

    def load(self, user_id: str) -> UserSettings:
        """Stored settings, or defaults for a user seen for the first time."""
        doc = self.load_document(user_id)
        return UserSettings.from_document(doc) if doc else UserSettings()

    def save(self, user_id: str, user_settings: UserSettings) -> None:
        now = utc_now_iso()
        doc = user_settings.to_document()
        with self.db.connect() as conn:
            conn.execute("DELETE FROM user_settings WHERE user_id = ?", (user_id,))
            conn.executemany(
                "INSERT INTO user_settings(user_id, key, value, updated_at) VALUES (?,?,?,?)",
                [(user_id, k, v, now) for k, v in doc.items()],
            )
