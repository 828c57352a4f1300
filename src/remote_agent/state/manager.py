"""StateManager: all DB read/write operations for codebases, conversations and sessions."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from remote_agent.state.db import DEFAULT_DB_PATH, get_connection, init_db
from remote_agent.state.models import (
    CodebaseRecord,
    CommandDefinition,
    CommandTemplateRecord,
    ConversationRecord,
    MessageRecord,
    SessionMetadata,
    SessionRecord,
)


_SENTINEL = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


class StateManager:
    """Durable store shared by every request; holds no in-process state of its own."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)
        init_db(self._db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection holding the write lock until commit or rollback."""
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # -- Codebase registry --------------------------------------------------

    def create_codebase(
        self,
        name: str,
        default_cwd: str,
        repository_url: str | None = None,
        commands: dict[str, CommandDefinition] | None = None,
    ) -> CodebaseRecord:
        """Insert a new codebase record."""
        now = _now_iso()
        record = CodebaseRecord(
            id=_new_id(),
            name=name,
            repository_url=repository_url,
            default_cwd=default_cwd,
            commands=commands or {},
            created_at=now,
            updated_at=now,
        )
        conn = self._conn()
        try:
            conn.execute(
                """INSERT INTO codebases
                   (id, name, repository_url, default_cwd, commands_json, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.name,
                    record.repository_url,
                    record.default_cwd,
                    _dump_commands(record.commands),
                    now,
                    now,
                ),
            )
        finally:
            conn.close()
        return record

    def get_codebase(self, codebase_id: str) -> CodebaseRecord | None:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM codebases WHERE id = ?", (codebase_id,)).fetchone()
            return CodebaseRecord.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def find_codebase_by_repository_url(self, repository_url: str) -> CodebaseRecord | None:
        """Match a repository URL with or without a trailing ``.git``."""
        bare = repository_url[:-4] if repository_url.endswith(".git") else repository_url
        conn = self._conn()
        try:
            row = conn.execute(
                """SELECT * FROM codebases WHERE repository_url IN (?, ?)
                   ORDER BY created_at LIMIT 1""",
                (bare, bare + ".git"),
            ).fetchone()
            return CodebaseRecord.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def find_codebase_by_default_cwd(self, default_cwd: str) -> CodebaseRecord | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM codebases WHERE default_cwd = ? ORDER BY created_at LIMIT 1",
                (default_cwd,),
            ).fetchone()
            return CodebaseRecord.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def list_codebases(self) -> list[CodebaseRecord]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM codebases ORDER BY name").fetchall()
            return [CodebaseRecord.from_row(dict(r)) for r in rows]
        finally:
            conn.close()

    def update_codebase_commands(
        self, codebase_id: str, commands: dict[str, CommandDefinition]
    ) -> None:
        """Replace the whole command map. Raises IndexError if not found."""
        conn = self._conn()
        try:
            cursor = conn.execute(
                "UPDATE codebases SET commands_json = ?, updated_at = ? WHERE id = ?",
                (_dump_commands(commands), _now_iso(), codebase_id),
            )
            if cursor.rowcount == 0:
                raise IndexError(f"Codebase {codebase_id} not found")
        finally:
            conn.close()

    def register_command(
        self, codebase_id: str, name: str, command: CommandDefinition
    ) -> None:
        """Add or overwrite a single named command."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT commands_json FROM codebases WHERE id = ?", (codebase_id,)
            ).fetchone()
            if row is None:
                raise IndexError(f"Codebase {codebase_id} not found")
            commands = json.loads(row["commands_json"] or "{}")
            commands[name] = command.model_dump()
            conn.execute(
                "UPDATE codebases SET commands_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(commands), _now_iso(), codebase_id),
            )

    def delete_codebase(self, codebase_id: str) -> None:
        """Delete a codebase and null out every reference to it."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE conversations SET codebase_id = NULL, updated_at = ? WHERE codebase_id = ?",
                (_now_iso(), codebase_id),
            )
            conn.execute(
                "UPDATE sessions SET codebase_id = NULL WHERE codebase_id = ?",
                (codebase_id,),
            )
            conn.execute("DELETE FROM codebases WHERE id = ?", (codebase_id,))

    # -- Conversation store -------------------------------------------------

    def get_or_create_conversation(
        self,
        platform_type: str,
        platform_conversation_id: str,
        parent_conversation_id: str | None = None,
    ) -> ConversationRecord:
        """Return the conversation for a surface-native id, creating it on first sight.

        A newly created conversation with a parent inherits the parent's
        codebase and working directory.
        """
        existing = self.get_conversation_by_platform_id(platform_type, platform_conversation_id)
        if existing is not None:
            return existing

        now = _now_iso()
        with self._transaction() as conn:
            codebase_id = cwd = None
            if parent_conversation_id:
                parent = conn.execute(
                    """SELECT codebase_id, cwd FROM conversations
                       WHERE platform_type = ? AND platform_conversation_id = ?""",
                    (platform_type, parent_conversation_id),
                ).fetchone()
                if parent is not None:
                    codebase_id, cwd = parent["codebase_id"], parent["cwd"]
            # Another request may have created it between the lookup and the lock.
            conn.execute(
                """INSERT OR IGNORE INTO conversations
                   (id, platform_type, platform_conversation_id, codebase_id, cwd,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (_new_id(), platform_type, platform_conversation_id, codebase_id, cwd, now, now),
            )

        created = self.get_conversation_by_platform_id(platform_type, platform_conversation_id)
        assert created is not None
        return created

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            return ConversationRecord(**dict(row)) if row else None
        finally:
            conn.close()

    def get_conversation_by_platform_id(
        self, platform_type: str, platform_conversation_id: str
    ) -> ConversationRecord | None:
        conn = self._conn()
        try:
            row = conn.execute(
                """SELECT * FROM conversations
                   WHERE platform_type = ? AND platform_conversation_id = ?""",
                (platform_type, platform_conversation_id),
            ).fetchone()
            return ConversationRecord(**dict(row)) if row else None
        finally:
            conn.close()

    def update_conversation(
        self,
        conversation_id: str,
        *,
        codebase_id: str | None | object = _SENTINEL,
        cwd: str | None | object = _SENTINEL,
        worktree_path: str | None | object = _SENTINEL,
    ) -> None:
        """Partial update of a conversation. Raises IndexError if not found."""
        sets: list[str] = []
        params: list[object] = []
        if codebase_id is not _SENTINEL:
            sets.append("codebase_id = ?")
            params.append(codebase_id)
        if cwd is not _SENTINEL:
            sets.append("cwd = ?")
            params.append(cwd)
        if worktree_path is not _SENTINEL:
            sets.append("worktree_path = ?")
            params.append(worktree_path)
        if not sets:
            return
        sets.append("updated_at = ?")
        params.append(_now_iso())
        params.append(conversation_id)
        sql = f"UPDATE conversations SET {', '.join(sets)} WHERE id = ?"
        conn = self._conn()
        try:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                raise IndexError(f"Conversation {conversation_id} not found")
        finally:
            conn.close()

    def release_worktree(self, conversation_id: str, reset_cwd: str | None) -> int:
        """Drop a conversation's worktree reference and count who still holds it.

        Clearing the reference and counting the remaining referents happen in
        one write transaction, so two concurrent releases of a shared worktree
        observe each other and exactly one of them sees zero.

        Returns the number of other conversations still referencing the path,
        or -1 if the conversation had no worktree.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT worktree_path FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                raise IndexError(f"Conversation {conversation_id} not found")
            path = row["worktree_path"]
            if path is None:
                return -1
            conn.execute(
                """UPDATE conversations SET worktree_path = NULL, cwd = ?, updated_at = ?
                   WHERE id = ?""",
                (reset_cwd, _now_iso(), conversation_id),
            )
            remaining = conn.execute(
                "SELECT COUNT(*) FROM conversations WHERE worktree_path = ?", (path,)
            ).fetchone()[0]
        return remaining

    # -- Sessions -----------------------------------------------------------

    def create_session(
        self,
        conversation_id: str,
        codebase_id: str | None,
        metadata: SessionMetadata | None = None,
    ) -> SessionRecord:
        """Start a new active session, ending any session still active.

        Deactivation of the old session and insertion of its replacement are
        one transaction; a failure leaves the previous session untouched.
        """
        now = _now_iso()
        record = SessionRecord(
            id=_new_id(),
            conversation_id=conversation_id,
            codebase_id=codebase_id,
            metadata=metadata or SessionMetadata(),
            started_at=now,
        )
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sessions SET active = 0, ended_at = ? WHERE conversation_id = ? AND active = 1",
                (now, conversation_id),
            )
            conn.execute(
                """INSERT INTO sessions
                   (id, conversation_id, codebase_id, resume_token, active, metadata_json, started_at)
                   VALUES (?, ?, ?, NULL, 1, ?, ?)""",
                (
                    record.id,
                    conversation_id,
                    codebase_id,
                    record.metadata.model_dump_json(),
                    now,
                ),
            )
        return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            return SessionRecord.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def get_active_session(self, conversation_id: str) -> SessionRecord | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM sessions WHERE conversation_id = ? AND active = 1",
                (conversation_id,),
            ).fetchone()
            return SessionRecord.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def list_sessions(
        self, conversation_id: str | None = None, active_only: bool = False, limit: int = 50
    ) -> list[SessionRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if active_only:
            clauses.append("active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM sessions {where} ORDER BY started_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
            return [SessionRecord.from_row(dict(r)) for r in rows]
        finally:
            conn.close()

    def deactivate_session(self, session_id: str) -> bool:
        """End a session. Returns False if it was not active."""
        conn = self._conn()
        try:
            cursor = conn.execute(
                "UPDATE sessions SET active = 0, ended_at = ? WHERE id = ? AND active = 1",
                (_now_iso(), session_id),
            )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def update_resume_token(self, session_id: str, resume_token: str) -> None:
        conn = self._conn()
        try:
            cursor = conn.execute(
                "UPDATE sessions SET resume_token = ? WHERE id = ?",
                (resume_token, session_id),
            )
            if cursor.rowcount == 0:
                raise IndexError(f"Session {session_id} not found")
        finally:
            conn.close()

    def update_session_metadata(self, session_id: str, metadata: SessionMetadata) -> None:
        conn = self._conn()
        try:
            cursor = conn.execute(
                "UPDATE sessions SET metadata_json = ? WHERE id = ?",
                (metadata.model_dump_json(), session_id),
            )
            if cursor.rowcount == 0:
                raise IndexError(f"Session {session_id} not found")
        finally:
            conn.close()

    # -- Command templates --------------------------------------------------

    def upsert_template(self, name: str, content: str, description: str = "") -> CommandTemplateRecord:
        """Insert a global command template, overwriting one with the same name."""
        now = _now_iso()
        conn = self._conn()
        try:
            conn.execute(
                """INSERT INTO command_templates (id, name, description, content, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       description = excluded.description,
                       content = excluded.content,
                       updated_at = excluded.updated_at""",
                (_new_id(), name, description, content, now, now),
            )
        finally:
            conn.close()
        template = self.get_template(name)
        assert template is not None
        return template

    def get_template(self, name: str) -> CommandTemplateRecord | None:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM command_templates WHERE name = ?", (name,)
            ).fetchone()
            return CommandTemplateRecord(**dict(row)) if row else None
        finally:
            conn.close()

    def list_templates(self) -> list[CommandTemplateRecord]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM command_templates ORDER BY name").fetchall()
            return [CommandTemplateRecord(**dict(r)) for r in rows]
        finally:
            conn.close()

    def delete_template(self, name: str) -> bool:
        conn = self._conn()
        try:
            cursor = conn.execute("DELETE FROM command_templates WHERE name = ?", (name,))
            return cursor.rowcount > 0
        finally:
            conn.close()

    # -- Message history ----------------------------------------------------

    def add_message(self, conversation_id: str, sender: str, content: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """INSERT INTO messages (conversation_id, sender, content, created_at)
                   VALUES (?, ?, ?, ?)""",
                (conversation_id, sender, content, _now_iso()),
            )
        finally:
            conn.close()

    def get_message_history(self, conversation_id: str, limit: int = 50) -> list[MessageRecord]:
        """Return the most recent messages, oldest first."""
        conn = self._conn()
        try:
            rows = conn.execute(
                """SELECT * FROM (
                       SELECT * FROM messages WHERE conversation_id = ?
                       ORDER BY id DESC LIMIT ?
                   ) ORDER BY id ASC""",
                (conversation_id, limit),
            ).fetchall()
            return [MessageRecord(**dict(r)) for r in rows]
        finally:
            conn.close()


def _dump_commands(commands: dict[str, CommandDefinition]) -> str:
    return json.dumps({name: cmd.model_dump() for name, cmd in commands.items()})
