from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import orjson


# ──────────────────────────────────────────────────────────────
# Connections
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


# ──────────────────────────────────────────────────────────────
# Schema
# ──────────────────────────────────────────────────────────────

def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS discovery_tiles (
            tile_key TEXT PRIMARY KEY,
            updated_at TEXT NOT NULL,
            record_json BLOB NOT NULL
        );
        """
    )
    conn.commit()


# ──────────────────────────────────────────────────────────────
# Tile records
# ──────────────────────────────────────────────────────────────

def put_tile_record(
    conn: sqlite3.Connection,
    *,
    tile_key: str,
    updated_at: str,
    record: dict,
) -> int:
    blob = orjson.dumps(record)
    conn.execute(
        """
        INSERT INTO discovery_tiles (tile_key, updated_at, record_json)
        VALUES (?, ?, ?)
        ON CONFLICT(tile_key) DO UPDATE SET
          updated_at=excluded.updated_at,
          record_json=excluded.record_json;
        """,
        (tile_key, updated_at, blob),
    )
    conn.commit()
    return len(blob)


def get_tile_record(conn: sqlite3.Connection, tile_key: str) -> Optional[dict]:
    cur = conn.execute("SELECT record_json FROM discovery_tiles WHERE tile_key=?;", (tile_key,))
    row = cur.fetchone()
    if not row:
        return None
    return orjson.loads(row[0])
