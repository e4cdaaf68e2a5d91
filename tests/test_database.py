"""
test_database.py
----------------
US Core Conformance Engine — Test Suite for database.py
-------------------------------------------------------
Tests cover:
    - init_db is idempotent
    - save_launch_session inserts, then updates by state nonce
    - get_launch_session round-trips the AuthSession, None for unknown
    - the status column follows the stored session

Run:
    pytest tests/test_database.py -v --tb=short

Project: US Core Conformance Engine
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from schemas import AuthSession, LaunchConfig, LaunchStatus, TokenSet


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "sessions.sqlite"
    database.init_db(path)
    return path


def _session(state="abc", status=LaunchStatus.WAIT):
    config = LaunchConfig(
        client_id="my-app",
        authorize_endpoint="http://www.example.com/auth/authorize",
        token_endpoint="http://www.example.com/auth/token",
        redirect_uri="http://localhost:8000/redirect",
        fhir_server="http://www.example.com/fhir",
    )
    return AuthSession(state=state, config=config, status=status)


def test_init_db_is_idempotent(db_path):
    database.init_db(db_path)
    database.init_db(db_path)
    with database.get_connection(db_path) as conn:
        tables = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    assert [row["name"] for row in tables] == ["launch_sessions"]


def test_save_and_get_round_trip(db_path):
    saved = database.save_launch_session(_session(), db_path)
    loaded = database.get_launch_session("abc", db_path)
    assert loaded == saved
    assert loaded.config.client_id == "my-app"


def test_save_updates_existing_row(db_path):
    database.save_launch_session(_session(), db_path)
    completed = _session(status=LaunchStatus.COMPLETED).model_copy(
        update={"token": TokenSet(access_token="tok", patient="example")}
    )
    database.save_launch_session(completed, db_path)

    loaded = database.get_launch_session("abc", db_path)
    assert loaded.status == LaunchStatus.COMPLETED
    assert loaded.token.access_token == "tok"
    with database.get_connection(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) AS n FROM launch_sessions").fetchone()["n"]
    assert count == 1


def test_unknown_state_returns_none(db_path):
    assert database.get_launch_session("missing", db_path) is None
    assert database.get_launch_session(None, db_path) is None


def test_status_column_tracks_session(db_path):
    database.save_launch_session(_session("one"), db_path)
    database.save_launch_session(_session("one", LaunchStatus.FAILED), db_path)
    with database.get_connection(db_path) as conn:
        row = conn.execute("SELECT status FROM launch_sessions WHERE state = ?", ("one",)).fetchone()
    assert row["status"] == "failed"
    assert database.get_launch_session("one", db_path).status == LaunchStatus.FAILED


def test_connection_rolls_back_on_error(db_path):
    with pytest.raises(RuntimeError):
        with database.get_connection(db_path) as conn:
            conn.execute(
                "INSERT INTO launch_sessions (state, payload, created_at, updated_at) VALUES ('x', '{}', 'a', 'b')"
            )
            raise RuntimeError("boom")
    assert database.get_launch_session("x", db_path) is None
