"""Session Manager: one resumable agent dialogue per conversation.

Sessions are either active or ended. A request resolves to one of three
transitions: a fresh session, a resume of the active one, or a phase reset
that ends the active session and starts a new one with no resume token.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from remote_agent.state.manager import StateManager
from remote_agent.state.models import (
    ConversationRecord,
    ResumeRequest,
    SessionMetadata,
    SessionRecord,
)

logger = logging.getLogger(__name__)


class SessionTransition(str, enum.Enum):
    CREATED = "created"
    RESUMED = "resumed"
    PHASE_RESET = "phase_reset"


@dataclass(frozen=True)
class SessionResolution:
    session: SessionRecord
    transition: SessionTransition


class SessionManager:
    """Resolve, reset and annotate sessions on top of the state store."""

    def __init__(
        self,
        state: StateManager,
        phase_transitions: dict[str, list[str]] | None = None,
    ) -> None:
        self._state = state
        self._phase_transitions = phase_transitions or {}

    def get_active(self, conversation_id: str) -> SessionRecord | None:
        return self._state.get_active_session(conversation_id)

    def is_phase_reset(self, session: SessionRecord, command_name: str | None) -> bool:
        """True when ``command_name`` is the second half of the workflow the session started."""
        if not command_name:
            return False
        first_halves = self._phase_transitions.get(command_name, [])
        return session.metadata.last_command in first_halves

    def resolve(
        self, conversation: ConversationRecord, command_name: str | None = None
    ) -> SessionResolution:
        active = self.get_active(conversation.id)

        if active is None:
            session = self._state.create_session(conversation.id, conversation.codebase_id)
            logger.info("Created session %s for conversation %s", session.id, conversation.id)
            return SessionResolution(session, SessionTransition.CREATED)

        if self.is_phase_reset(active, command_name):
            session = self._state.create_session(conversation.id, conversation.codebase_id)
            logger.info(
                "Phase reset %s -> %s: ended session %s, started %s",
                active.metadata.last_command,
                command_name,
                active.id,
                session.id,
            )
            return SessionResolution(session, SessionTransition.PHASE_RESET)

        logger.debug("Resuming session %s for conversation %s", active.id, conversation.id)
        return SessionResolution(active, SessionTransition.RESUMED)

    def reset(self, conversation_id: str) -> bool:
        """End the active session, if any. Returns True if one was ended."""
        active = self.get_active(conversation_id)
        if active is None:
            return False
        ended = self._state.deactivate_session(active.id)
        if ended:
            logger.info("Ended session %s for conversation %s", active.id, conversation_id)
        return ended

    def self_heal(self, conversation: ConversationRecord, fallback_cwd: str) -> ConversationRecord:
        """Recover from a working directory that vanished from disk.

        The stale session is ended, the conversation's worktree reference is
        cleared and its cwd points at ``fallback_cwd``. Safe to call repeatedly.
        """
        logger.warning(
            "Working directory %s for conversation %s no longer exists; falling back to %s",
            conversation.cwd or conversation.worktree_path,
            conversation.id,
            fallback_cwd,
        )
        self.reset(conversation.id)
        self._state.update_conversation(conversation.id, cwd=fallback_cwd, worktree_path=None)
        healed = self._state.get_conversation(conversation.id)
        assert healed is not None
        return healed

    def record_resume_token(self, session: SessionRecord, resume_token: str) -> None:
        if resume_token and resume_token != session.resume_token:
            self._state.update_resume_token(session.id, resume_token)

    def record_command(self, session: SessionRecord, command_name: str) -> None:
        current = self._state.get_session(session.id) or session
        metadata = current.metadata.model_copy(update={"last_command": command_name})
        self._state.update_session_metadata(session.id, metadata)

    def request_resume(
        self, conversation: ConversationRecord, digest: str, count: int
    ) -> SessionRecord:
        """Start a fresh session whose first prompt will carry ``digest``."""
        metadata = SessionMetadata(resume_requested=ResumeRequest(count=count, digest=digest))
        session = self._state.create_session(conversation.id, conversation.codebase_id, metadata)
        logger.info(
            "Started session %s with %d messages of history for conversation %s",
            session.id,
            count,
            conversation.id,
        )
        return session

    def consume_resume_context(self, session: SessionRecord) -> str | None:
        """Return a pending history digest once, clearing it from the session."""
        current = self._state.get_session(session.id) or session
        request = current.metadata.resume_requested
        if request is None:
            return None
        self._state.update_session_metadata(
            session.id, current.metadata.model_copy(update={"resume_requested": None})
        )
        return request.digest
