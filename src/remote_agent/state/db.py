"""SQLite schema and connection helper for durable coordination state."""

from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".remote-agent" / "state.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS codebases (
    id             TEXT PRIMARY KEY,
    name           TEXT NOT NULL,
    repository_url TEXT,
    default_cwd    TEXT NOT NULL,
    commands_json  TEXT NOT NULL DEFAULT '{}',
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id                       TEXT PRIMARY KEY,
    platform_type            TEXT NOT NULL,
    platform_conversation_id TEXT NOT NULL,
    codebase_id              TEXT REFERENCES codebases(id),
    cwd                      TEXT,
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL,
    UNIQUE(platform_type, platform_conversation_id)
);

CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    codebase_id     TEXT REFERENCES codebases(id),
    resume_token    TEXT,
    active          INTEGER NOT NULL DEFAULT 1,
    metadata_json   TEXT NOT NULL DEFAULT '{}',
    started_at      TEXT NOT NULL,
    ended_at        TEXT
);

CREATE TABLE IF NOT EXISTS command_templates (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    content     TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_codebase ON conversations(codebase_id);
CREATE INDEX IF NOT EXISTS idx_sessions_conversation ON sessions(conversation_id, active);
"""

CURRENT_SCHEMA_VERSION = 5

# List of (target_version, sql) tuples. Each migration upgrades from target_version-1.
MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            rowid      INTEGER PRIMARY KEY CHECK (rowid = 1),
            version    INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );
        INSERT OR REPLACE INTO schema_version (rowid, version, applied_at)
        VALUES (1, 1, datetime('now'));
        """,
    ),
    (
        2,
        """
        ALTER TABLE conversations ADD COLUMN worktree_path TEXT;
        UPDATE schema_version SET version = 2, applied_at = datetime('now') WHERE rowid = 1;
        """,
    ),
    (
        3,
        """
        CREATE INDEX IF NOT EXISTS idx_conversations_worktree
            ON conversations(worktree_path) WHERE worktree_path IS NOT NULL;
        UPDATE schema_version SET version = 3, applied_at = datetime('now') WHERE rowid = 1;
        """,
    ),
    (
        4,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT NOT NULL REFERENCES conversations(id),
            sender          TEXT NOT NULL,
            content         TEXT NOT NULL,
            created_at      TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
        UPDATE schema_version SET version = 4, applied_at = datetime('now') WHERE rowid = 1;
        """,
    ),
    (
        5,
        """
        UPDATE sessions SET active = 0, ended_at = datetime('now')
        WHERE active = 1 AND rowid NOT IN (
            SELECT MAX(rowid) FROM sessions WHERE active = 1 GROUP BY conversation_id
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
            ON sessions(conversation_id) WHERE active = 1;
        UPDATE schema_version SET version = 5, applied_at = datetime('now') WHERE rowid = 1;
        """,
    ),
]


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version, or 0 if the table doesn't exist."""
    try:
        row = conn.execute("SELECT version FROM schema_version WHERE rowid = 1").fetchone()
        return row[0] if row else 0
    except sqlite3.OperationalError:
        return 0


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Run any pending schema migrations."""
    current = _get_schema_version(conn)

    if current > CURRENT_SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than the code supports "
            f"(max {CURRENT_SCHEMA_VERSION}). Please upgrade remote-agent."
        )

    if current == CURRENT_SCHEMA_VERSION:
        return

    for target_version, sql in MIGRATIONS:
        if target_version > current:
            conn.executescript(sql)

    conn.commit()


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create a short-lived SQLite connection with WAL mode and busy timeout.

    The connection runs in autocommit mode so callers control transactions
    explicitly with ``BEGIN IMMEDIATE`` where a read-then-write must be atomic.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), timeout=5, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path | str = DEFAULT_DB_PATH) -> None:
    """Initialize the database schema and run any pending migrations."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        _run_migrations(conn)
    finally:
        conn.close()
