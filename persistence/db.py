"""SQLite persistence layer for the helpdesk assistant.

Holds the small pieces of durable state the assistant needs: plain settings
records (global toggles, per-project enablement, non-secret LLM config),
encrypted secrets, per-requester rate-limit windows, and an audit log of
conversation interactions.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

DB_FILENAME = "helpdesk.db"
DEFAULT_DB_DIR = Path("data")

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """The storage capability components receive by injection."""

    def get_setting(self, key: str, default: Any = None) -> Any: ...

    def set_setting(self, key: str, value: Any) -> None: ...

    def get_secret(self, key: str) -> Optional[str]: ...

    def set_secret(self, key: str, value: str) -> None: ...

    def get_rate_window(self, requester_id: str) -> Optional[tuple[int, int]]: ...

    def set_rate_window(self, requester_id: str, window_start_ms: int, count: int) -> None: ...

    def log_interaction(
        self,
        *,
        requester_id: Optional[str],
        session_id: Optional[str],
        message_text: str,
        intent: Optional[str],
        success: bool,
        issue_key: Optional[str] = None,
        error: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> int: ...

    def fetch_recent_interactions(self, *, limit: int = 50) -> Iterable[InteractionRecord]: ...


@dataclass
class InteractionRecord:
    interaction_id: int
    timestamp: str
    requester_id: Optional[str]
    session_id: Optional[str]
    message_text: str
    intent: Optional[str]
    success: bool
    issue_key: Optional[str]
    error: Optional[str]
    extra: dict[str, Any]


class Database:
    """Thread-safe SQLite wrapper implementing :class:`Storage`."""

    def __init__(self, secret_key: str | bytes, db_path: Optional[Path] = None) -> None:
        self.db_path = self._resolve_db_path(db_path)
        key = secret_key.encode() if isinstance(secret_key, str) else secret_key
        self._fernet = Fernet(key)
        self._connection_lock = threading.Lock()
        self._ensure_schema()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        if db_path is not None:
            return Path(db_path)

        base_dir = DEFAULT_DB_DIR
        base_dir.mkdir(parents=True, exist_ok=True)
        return base_dir / DB_FILENAME

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        with self._connection_lock:
            connection = sqlite3.connect(self.db_path)
            connection.row_factory = sqlite3.Row
            try:
                yield connection
                connection.commit()
            except Exception:
                connection.rollback()
                raise
            finally:
                connection.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS secrets (
                    key TEXT PRIMARY KEY,
                    ciphertext TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    requester_id TEXT PRIMARY KEY,
                    window_start_ms INTEGER NOT NULL,
                    count INTEGER NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS interactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT DEFAULT CURRENT_TIMESTAMP,
                    requester_id TEXT,
                    session_id TEXT,
                    message_text TEXT NOT NULL,
                    intent TEXT,
                    success INTEGER NOT NULL,
                    issue_key TEXT,
                    error TEXT,
                    extra_json TEXT
                )
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_interactions_timestamp
                ON interactions(timestamp DESC)
                """
            )

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._connect() as conn:
            row = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value_json"])

    def set_setting(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value_json) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
                """,
                (key, json.dumps(value)),
            )
        logger.debug("db_setting_saved", extra={"setting": key})

    def get_secret(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT ciphertext FROM secrets WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return self._fernet.decrypt(row["ciphertext"].encode()).decode()
        except InvalidToken:
            logger.error("db_secret_undecryptable", extra={"entry": key})
            return None

    def set_secret(self, key: str, value: str) -> None:
        ciphertext = self._fernet.encrypt(value.encode()).decode()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO secrets (key, ciphertext) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET ciphertext = excluded.ciphertext
                """,
                (key, ciphertext),
            )
        logger.info("db_secret_saved", extra={"entry": key})

    def get_rate_window(self, requester_id: str) -> Optional[tuple[int, int]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT window_start_ms, count FROM rate_limits WHERE requester_id = ?",
                (requester_id,),
            ).fetchone()
        if row is None:
            return None
        return int(row["window_start_ms"]), int(row["count"])

    def set_rate_window(self, requester_id: str, window_start_ms: int, count: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rate_limits (requester_id, window_start_ms, count) VALUES (?, ?, ?)
                ON CONFLICT(requester_id) DO UPDATE SET
                    window_start_ms = excluded.window_start_ms,
                    count = excluded.count
                """,
                (requester_id, window_start_ms, count),
            )

    def log_interaction(
        self,
        *,
        requester_id: Optional[str],
        session_id: Optional[str],
        message_text: str,
        intent: Optional[str],
        success: bool,
        issue_key: Optional[str] = None,
        error: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> int:
        extra_json = json.dumps(extra or {}, default=str)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO interactions (
                    requester_id, session_id, message_text, intent, success,
                    issue_key, error, extra_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    requester_id,
                    session_id,
                    message_text,
                    intent,
                    1 if success else 0,
                    issue_key,
                    error,
                    extra_json,
                ),
            )
            interaction_id = cursor.lastrowid or -1

        logger.debug(
            "db_interaction_logged",
            extra={"interaction_id": interaction_id, "intent": intent},
        )
        return int(interaction_id)

    def fetch_recent_interactions(self, *, limit: int = 50) -> Iterable[InteractionRecord]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, timestamp, requester_id, session_id, message_text, intent,
                       success, issue_key, error, extra_json
                FROM interactions
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()
        for row in rows:
            yield InteractionRecord(
                interaction_id=row["id"],
                timestamp=row["timestamp"],
                requester_id=row["requester_id"],
                session_id=row["session_id"],
                message_text=row["message_text"],
                intent=row["intent"],
                success=bool(row["success"]),
                issue_key=row["issue_key"],
                error=row["error"],
                extra=json.loads(row["extra_json"] or "{}"),
            )
