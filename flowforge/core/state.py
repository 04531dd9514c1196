"""SQLite keyed persistence.

The engine persists a single JSON blob (workflows, templates, credentials)
under a configurable key, plus one blob per durable memory session. There are
no migrations: a blob is restored exactly as it was written.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flowforge.core.models import utc_now

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """Encodes the engine's persisted values.

    Workflows, records and memory messages are stored as pydantic models
    (dumped with their wire aliases, so items keep their ``json`` key);
    timestamps become ISO strings and paths become plain strings.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Database:
    """SQLite key/value store for engine state."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv (
        key TEXT PRIMARY KEY,
        value JSON NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """

    BUSY_TIMEOUT = 30.0

    def __init__(self, db_path: str | Path = ".flowforge/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection, committing on success and rolling back on error.

        The CLI and a running studio may share one state file, so writers
        wait up to BUSY_TIMEOUT seconds for the lock.
        """
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"State file {self.db_path} still locked after {self.BUSY_TIMEOUT:.0f}s: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_blob(self, key: str) -> Any | None:
        """Return the decoded value stored under key, or None."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    def put_blob(self, key: str, value: Any) -> None:
        """Insert or replace the value stored under key."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, _safe_json_dumps(value), utc_now().isoformat()),
            )
        logger.debug(f"Persisted state key '{key}'")

    def delete_blob(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return cursor.rowcount > 0
