"""Shared fixtures for changesync tests."""

import sqlite3

import pytest

from changesync.delta import Delta, Session
from changesync.graph import GraphStore

PLAYER_SCHEMA = """
CREATE TABLE IF NOT EXISTS player (
    id TEXT PRIMARY KEY,
    name TEXT,
    score INTEGER
);
"""

TEAM_SCHEMA = """
CREATE TABLE IF NOT EXISTS team (
    id TEXT PRIMARY KEY,
    name TEXT
);

CREATE TABLE IF NOT EXISTS member (
    id TEXT PRIMARY KEY,
    name TEXT,
    team_id TEXT REFERENCES team(id)
);
"""


def open_store() -> GraphStore:
    """Create an in-memory GraphStore with the player table."""
    store = GraphStore(":memory:")
    store.connect()
    store.migrate(PLAYER_SCHEMA)
    return store


def insert_player(player_id: str, name: str, score: int):
    """Build a commit mutation inserting one player."""
    def mutation(conn: sqlite3.Connection) -> None:
        conn.execute(
            "INSERT INTO player (id, name, score) VALUES (?, ?, ?)",
            (player_id, name, score),
        )
    return mutation


def set_score(player_id: str, score: int):
    """Build a commit mutation updating a player's score."""
    def mutation(conn: sqlite3.Connection) -> None:
        conn.execute("UPDATE player SET score = ? WHERE id = ?", (score, player_id))
    return mutation


def players(store: GraphStore) -> list[tuple]:
    """All player rows, ordered by id."""
    with store.read() as conn:
        rows = conn.execute("SELECT id, name, score FROM player ORDER BY id").fetchall()
    return [tuple(row) for row in rows]


def members(conn: sqlite3.Connection) -> list[tuple]:
    """All member rows, ordered by id."""
    rows = conn.execute("SELECT id, name, team_id FROM member ORDER BY id").fetchall()
    return [tuple(row) for row in rows]


def capture(*statements: str, setup: str = "") -> Delta:
    """Record ``statements`` against a scratch player table."""
    conn = sqlite3.connect(":memory:", isolation_level=None)
    conn.executescript(PLAYER_SCHEMA + setup)
    with Session(conn) as session:
        for statement in statements:
            conn.execute(statement)
        delta = session.changeset()
    conn.close()
    return delta


@pytest.fixture
def store():
    """Create an in-memory graph store."""
    store = open_store()
    yield store
    store.close()


@pytest.fixture
def other_store():
    """A second device's graph store."""
    store = open_store()
    yield store
    store.close()
