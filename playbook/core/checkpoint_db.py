"""
Lightweight SQLite DB for workflow checkpoints.

Creates the DB file at the configured path (relative to project root unless
absolute). Table: checkpoints (id, session_id, sequence, state_json, created_at).
Rows are never updated; later checkpoints for a session supersede earlier ones.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root
_ROOT = Path(__file__).resolve().parent.parent.parent
_TABLE = "checkpoints"


def resolve_db_path(path: str | Path) -> Path:
    p = Path(path)
    return p if p.is_absolute() else _ROOT / p


def _get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(db_path))


def init_db(db_path: Path) -> None:
    """Create the checkpoints table and its lookup index if they do not exist."""
    conn = _get_conn(db_path)
    try:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                state_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{_TABLE}_session_seq ON {_TABLE} (session_id, sequence)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_checkpoint(db_path: Path, session_id: str, sequence: int, state_json: str) -> str:
    """Insert one checkpoint row. Returns the created_at timestamp (ISO, UTC)."""
    created_at = datetime.now(timezone.utc).isoformat()
    conn = _get_conn(db_path)
    try:
        conn.execute(
            f"INSERT INTO {_TABLE} (session_id, sequence, state_json, created_at) VALUES (?, ?, ?, ?)",
            (session_id, int(sequence), state_json, created_at),
        )
        conn.commit()
        logger.info("[checkpoint_db] inserted session_id=%s sequence=%d", session_id[:16], sequence)
    finally:
        conn.close()
    return created_at


def fetch_latest(db_path: Path, session_id: str) -> tuple[str, int, str, str] | None:
    """Return (session_id, sequence, state_json, created_at) with the highest sequence, or None."""
    conn = _get_conn(db_path)
    try:
        cur = conn.execute(
            f"SELECT session_id, sequence, state_json, created_at FROM {_TABLE} "
            "WHERE session_id = ? ORDER BY sequence DESC, id DESC LIMIT 1",
            (session_id,),
        )
        row = cur.fetchone()
    finally:
        conn.close()
    return tuple(row) if row else None


def fetch_all(db_path: Path, session_id: str) -> list[tuple[str, int, str, str]]:
    """Return all checkpoints for a session, highest sequence first."""
    conn = _get_conn(db_path)
    try:
        cur = conn.execute(
            f"SELECT session_id, sequence, state_json, created_at FROM {_TABLE} "
            "WHERE session_id = ? ORDER BY sequence DESC, id DESC",
            (session_id,),
        )
        return [tuple(row) for row in cur.fetchall()]
    finally:
        conn.close()


def delete_session(db_path: Path, session_id: str) -> int:
    """Delete all checkpoints of a session. Returns the number of rows removed."""
    conn = _get_conn(db_path)
    try:
        cur = conn.execute(f"DELETE FROM {_TABLE} WHERE session_id = ?", (session_id,))
        conn.commit()
        removed = cur.rowcount
        logger.info("[checkpoint_db] cleared session_id=%s rows=%d", session_id[:16], removed)
        return removed
    finally:
        conn.close()
