from __future__ import annotations

import json
import os
import sqlite3
import time
from typing import Any, Dict, List, Optional


# State groups, one per field group of an autopsy record.
LOGS = "autopsy-logs"
ANALYSIS = "autopsy-analysis"
EVENTS = "autopsy-event"
PULL_REQUESTS = "autopsy-pr"
STATUS = "autopsy-status"


class AutopsyStateStore:
    """
    Persistent keyed register (SQLite) for autopsy state.

    Every (group, key) pair holds exactly one JSON value. Writes are upserts, so
    re-running a stage for the same job id replaces the previous value instead of
    accumulating entries (last write wins).
    """

    def __init__(self, *, db_path: str) -> None:
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10.0)
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS state (
                    grp TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    updated_ts_unix REAL NOT NULL,
                    PRIMARY KEY (grp, key)
                )
                """
            )

    def set(self, group: str, key: str, value: Dict[str, Any]) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO state (grp, key, value_json, updated_ts_unix) VALUES (?, ?, ?, ?)
                ON CONFLICT(grp, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_ts_unix = excluded.updated_ts_unix
                """,
                (group, key, json.dumps(value, ensure_ascii=False, default=str), time.time()),
            )

    def get(self, group: str, key: str) -> Optional[Dict[str, Any]]:
        with self._connect() as con:
            row = con.execute("SELECT value_json FROM state WHERE grp = ? AND key = ?", (group, key)).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    def get_all(self, key: str) -> Dict[str, Dict[str, Any]]:
        """Every group stored for one key (job id)."""
        with self._connect() as con:
            rows = con.execute("SELECT grp, value_json FROM state WHERE key = ?", (key,)).fetchall()
        return {r["grp"]: json.loads(r["value_json"]) for r in rows}

    def count(self, group: str, key: Optional[str] = None) -> int:
        with self._connect() as con:
            if key is None:
                row = con.execute("SELECT COUNT(*) AS n FROM state WHERE grp = ?", (group,)).fetchone()
            else:
                row = con.execute("SELECT COUNT(*) AS n FROM state WHERE grp = ? AND key = ?", (group, key)).fetchone()
        return int(row["n"])

    def keys(self, group: str, *, limit: int = 100) -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT key FROM state WHERE grp = ? ORDER BY updated_ts_unix DESC LIMIT ?", (group, int(limit))
            ).fetchall()
        return [r["key"] for r in rows]
