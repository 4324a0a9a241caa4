from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import orjson

from cyclesafe.core.time import utc_now_iso

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Keys (shared by every producer; values are JSON)
# ──────────────────────────────────────────────────────────────

COORDS_KEY = "cs.coords"
ADDRESS_KEY = "cs.address"
LAST_GEOCODE_CELL_KEY = "cs.loc.lastGeocodeCell"

ALERTS_LIST_KEY = "cs.alerts.list"
ALERTS_TOTAL_KEY = "cs.alerts.total"
ALERTS_UPDATED_AT_KEY = "cs.alerts.updatedAt"

WEATHER_ALERTS_KEY = "cs.weather.alerts"

FEED_CACHE_KEY = "cs.vic.feedCache"


KeyListener = Callable[[str, Any], None]


# ──────────────────────────────────────────────────────────────
# Store interface
# ──────────────────────────────────────────────────────────────

class KeyValueStore:
    """
    Durable per-key JSON store shared by several producers.

    Writes are per-key overwrites with no cross-key transactions. Reads fail
    soft: a missing or undecodable value comes back as None. Subscribers are
    notified in-process after each write to their key; other processes
    sharing the same backing file only see changes on their next read.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[KeyListener]] = {}

    # backend hooks
    def _read(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def _write(self, key: str, blob: bytes) -> None:
        raise NotImplementedError

    def _remove(self, key: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def get_json(self, key: str) -> Any:
        raw = self._read(key)
        if raw is None:
            return None
        try:
            return orjson.loads(raw)
        except (orjson.JSONDecodeError, TypeError):
            logger.warning("[store] ignoring corrupt value for %s", key)
            return None

    def set_json(self, key: str, value: Any) -> int:
        blob = orjson.dumps(value)
        self._write(key, blob)
        self._notify(key, value)
        return len(blob)

    def delete(self, key: str) -> None:
        self._remove(key)
        self._notify(key, None)

    def subscribe(self, key: str, fn: KeyListener) -> Callable[[], None]:
        self._subs.setdefault(key, []).append(fn)

        def unsubscribe() -> None:
            subs = self._subs.get(key) or []
            if fn in subs:
                subs.remove(fn)

        return unsubscribe

    def _notify(self, key: str, value: Any) -> None:
        for fn in list(self._subs.get(key) or []):
            try:
                fn(key, value)
            except Exception:
                logger.exception("[store] subscriber for %s failed", key)


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, bytes] = {}

    def _read(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def _write(self, key: str, blob: bytes) -> None:
        self._data[key] = blob

    def _remove(self, key: str) -> None:
        self._data.pop(key, None)


# ──────────────────────────────────────────────────────────────
# SQLite backend
# ──────────────────────────────────────────────────────────────

def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Open a RW SQLite connection with sane pragmas.

    IMPORTANT:
    - SQLite will NOT create parent directories.
    - WAL mode requires the directory to be writable (creates -wal/-shm).
    """
    if path != ":memory:":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            updated_at TEXT NOT NULL,
            value_json BLOB NOT NULL
        );
        """
    )
    conn.commit()


class SqliteKeyValueStore(KeyValueStore):
    def __init__(self, conn: sqlite3.Connection) -> None:
        super().__init__()
        self.conn = conn
        ensure_schema(conn)

    def _read(self, key: str) -> Optional[bytes]:
        cur = self.conn.execute("SELECT value_json FROM kv_store WHERE key=?;", (key,))
        row = cur.fetchone()
        if not row:
            return None
        return row[0]

    def _write(self, key: str, blob: bytes) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO kv_store (key, updated_at, value_json)
            VALUES (?, ?, ?);
            """,
            (key, utc_now_iso(), blob),
        )
        self.conn.commit()

    def _remove(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv_store WHERE key=?;", (key,))
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()
