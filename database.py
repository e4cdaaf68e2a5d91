"""
database.py
-----------
US Core Conformance Engine — Launch session store
-------------------------------------------------
SQLite persistence for SMART standalone launch sessions.  A launch is
started in one request and resumed by the browser callback in another, so
the AuthSession has to outlive the process memory of the first request.
Rows are keyed by the OAuth ``state`` nonce, which is the only correlation
the callback carries.

Table: launch_sessions
  - One row per launch; ``payload`` holds the AuthSession as JSON.
  - status transitions: init → wait → exchanging → completed | failed.

Test results are not stored here; they are returned to the caller.

DB file: launch_sessions.sqlite  (same directory as this module), or the
``LAUNCH_DB_PATH`` setting.

Public API:
    init_db()                    — Create the table + index if absent. Idempotent.
    get_connection()             — Context-manager yielding an open sqlite3.Connection.
    save_launch_session()        — INSERT or UPDATE one session by state nonce.
    get_launch_session()         — SELECT one session by state nonce.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional, Union

from schemas import AuthSession, LaunchStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DB location: alongside this module
# ---------------------------------------------------------------------------
_DB_PATH: Path = Path(__file__).parent / "launch_sessions.sqlite"

PathLike = Union[str, Path]

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_DDL = """
CREATE TABLE IF NOT EXISTS launch_sessions (
    state       TEXT    PRIMARY KEY,
    status      TEXT    NOT NULL DEFAULT 'init',
    client_id   TEXT    NOT NULL DEFAULT '',
    payload     TEXT    NOT NULL,

    -- Audit timestamps (ISO-8601 UTC)
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ls_status ON launch_sessions (status);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

def init_db(db_path: Optional[PathLike] = None) -> None:
    """
    Create the launch_sessions table and its index if they do not exist.

    Safe to call multiple times — uses ``IF NOT EXISTS`` throughout.

    Args:
        db_path: Override the default DB file location.  Useful in tests.

    Raises:
        sqlite3.Error: if the underlying SQLite operation fails.
    """
    path = db_path or _DB_PATH
    with sqlite3.connect(str(path)) as conn:
        conn.executescript(_DDL)
        conn.commit()
    logger.info("launch_sessions DB ready at '%s'.", path)


@contextmanager
def get_connection(
    db_path: Optional[PathLike] = None,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.  The schema is created on first use.

    Args:
        db_path: Override the default DB file location.

    Yields:
        sqlite3.Connection: with ``row_factory = sqlite3.Row`` set.

    Raises:
        sqlite3.Error: propagated after rollback.
    """
    path = db_path or _DB_PATH
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        conn.executescript(_DDL)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------

def save_launch_session(session: AuthSession, db_path: Optional[PathLike] = None) -> AuthSession:
    """
    Insert or update ``session`` under its state nonce.

    Args:
        session: Session to store.
        db_path: Override the default DB file location.

    Returns:
        AuthSession: The stored session with ``updated_at`` refreshed.
    """
    stored = session.model_copy(update={"updated_at": _now()})
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO launch_sessions (state, status, client_id, payload, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(state) DO UPDATE SET
                status     = excluded.status,
                payload    = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (
                stored.state,
                stored.status.value,
                stored.config.client_id,
                stored.model_dump_json(),
                stored.created_at,
                stored.updated_at,
            ),
        )
    logger.debug("launch_sessions: saved state=%s status=%s", stored.state, stored.status.value)
    return stored


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------

def get_launch_session(state: Optional[str], db_path: Optional[PathLike] = None) -> Optional[AuthSession]:
    """
    Return the session stored under ``state``, or None when unknown.
    """
    if not state:
        return None
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT payload FROM launch_sessions WHERE state = ?", (state,)
        ).fetchone()
    if row is None:
        return None
    return AuthSession.model_validate_json(row["payload"])
