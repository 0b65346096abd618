from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

log = logging.getLogger(__name__)

MEMORY_URI = "file:ugc_tracker_memdb?mode=memory&cache=shared"

# A shared-cache in-memory database disappears when its last connection closes.
_memory_keepalive: sqlite3.Connection | None = None

def sqlite_path_from_url(db_url: str) -> Path | str:
    """Parse a SQLAlchemy-like sqlite URL.

    Supported:
      - sqlite:///relative/path.db
      - sqlite:////absolute/path.db
      - sqlite:///:memory:
    """
    if db_url == "sqlite:///:memory:":
        return ":memory:"
    prefix = "sqlite:///"
    if not db_url.startswith(prefix):
        raise ValueError(f"Only sqlite DB_URL is supported. Got: {db_url}")
    path_str = db_url[len(prefix):]
    return Path(path_str)

def _connect_memory() -> sqlite3.Connection:
    global _memory_keepalive
    if _memory_keepalive is None:
        _memory_keepalive = sqlite3.connect(MEMORY_URI, uri=True, check_same_thread=False)
    return sqlite3.connect(MEMORY_URI, uri=True, timeout=30, check_same_thread=False)

def _connect_file(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    return conn

def connect_sqlite(db_url: str) -> sqlite3.Connection:
    db_path = sqlite_path_from_url(db_url)
    if isinstance(db_path, Path):
        try:
            conn = _connect_file(db_path)
        except (OSError, sqlite3.OperationalError) as e:
            log.warning("SQLite file %s unavailable (%r), falling back to in-memory database", db_path, e)
            conn = _connect_memory()
    else:
        conn = _connect_memory()

    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn

def is_memory_connection(conn: sqlite3.Connection) -> bool:
    row = conn.execute("PRAGMA database_list").fetchone()
    return not (row and row[2])
