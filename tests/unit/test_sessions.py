"""Tests for the session state machine."""

from __future__ import annotations

import pytest

from remote_agent.config.settings import DEFAULT_PHASE_TRANSITIONS
from remote_agent.core.sessions import SessionManager, SessionTransition


@pytest.fixture
def sessions(state) -> SessionManager:
    return SessionManager(state, DEFAULT_PHASE_TRANSITIONS)


@pytest.fixture
def conversation(state):
    return state.get_or_create_conversation("test", "conv-1")


class TestResolve:
    def test_first_request_creates(self, sessions, conversation):
        resolution = sessions.resolve(conversation)
        assert resolution.transition is SessionTransition.CREATED
        assert resolution.session.resume_token is None

    def test_second_request_resumes(self, sessions, state, conversation):
        first = sessions.resolve(conversation).session
        state.update_resume_token(first.id, "t1")

        resolution = sessions.resolve(conversation, "plan")
        assert resolution.transition is SessionTransition.RESUMED
        assert resolution.session.id == first.id
        assert resolution.session.resume_token == "t1"

    def test_phase_reset_after_plan(self, sessions, state, conversation):
        first = sessions.resolve(conversation, "plan").session
        sessions.record_resume_token(first, "t1")
        sessions.record_command(first, "plan")

        resolution = sessions.resolve(conversation, "execute")
        assert resolution.transition is SessionTransition.PHASE_RESET
        assert resolution.session.id != first.id
        assert resolution.session.resume_token is None
        assert state.get_session(first.id).active is False
        assert state.get_session(first.id).resume_token == "t1"

    @pytest.mark.parametrize(
        "last, current",
        [("plan-feature", "execute"), ("plan-feature-github", "execute-github")],
    )
    def test_configured_transitions(self, sessions, conversation, last, current):
        first = sessions.resolve(conversation).session
        sessions.record_command(first, last)
        assert sessions.resolve(conversation, current).transition is SessionTransition.PHASE_RESET

    def test_execute_without_plan_resumes(self, sessions, conversation):
        first = sessions.resolve(conversation).session
        sessions.record_command(first, "review")
        assert sessions.resolve(conversation, "execute").transition is SessionTransition.RESUMED

    def test_mismatched_workflow_resumes(self, sessions, conversation):
        first = sessions.resolve(conversation).session
        sessions.record_command(first, "plan-feature")
        assert sessions.resolve(conversation, "execute-github").transition is SessionTransition.RESUMED

    def test_custom_transitions(self, state, conversation):
        sessions = SessionManager(state, {"ship": ["design"]})
        first = sessions.resolve(conversation).session
        sessions.record_command(first, "design")
        assert sessions.resolve(conversation, "ship").transition is SessionTransition.PHASE_RESET

    def test_at_most_one_active(self, sessions, state, conversation):
        for command in ("plan", "execute", "plan", "execute"):
            session = sessions.resolve(conversation, command).session
            sessions.record_command(session, command)
        assert len(state.list_sessions(conversation.id, active_only=True)) == 1


class TestReset:
    def test_reset_active(self, sessions, state, conversation):
        session = sessions.resolve(conversation).session
        assert sessions.reset(conversation.id) is True
        assert state.get_session(session.id).ended_at is not None
        assert sessions.get_active(conversation.id) is None

    def test_reset_without_session(self, sessions, conversation):
        assert sessions.reset(conversation.id) is False


class TestSelfHeal:
    def test_self_heal_clears_worktree_and_session(self, sessions, state, conversation):
        state.update_conversation(conversation.id, worktree_path="/gone", cwd="/gone")
        sessions.resolve(conversation)

        healed = sessions.self_heal(state.get_conversation(conversation.id), "/w/project")

        assert healed.worktree_path is None
        assert healed.cwd == "/w/project"
        assert sessions.get_active(conversation.id) is None

    def test_self_heal_is_idempotent(self, sessions, state, conversation):
        state.update_conversation(conversation.id, cwd="/gone")
        sessions.self_heal(state.get_conversation(conversation.id), "/w/project")
        healed = sessions.self_heal(state.get_conversation(conversation.id), "/w/project")
        assert healed.cwd == "/w/project"


class TestMetadata:
    def test_record_command_keeps_resume_request(self, sessions, conversation):
        session = sessions.request_resume(conversation, "digest", 3)
        sessions.record_command(session, "plan")
        assert sessions.consume_resume_context(session) == "digest"

    def test_resume_context_consumed_once(self, sessions, conversation):
        session = sessions.request_resume(conversation, "digest", 3)
        assert sessions.consume_resume_context(session) == "digest"
        assert sessions.consume_resume_context(session) is None

    def test_request_resume_replaces_active(self, sessions, state, conversation):
        old = sessions.resolve(conversation).session
        new = sessions.request_resume(conversation, "digest", 1)
        assert sessions.get_active(conversation.id).id == new.id
        assert state.get_session(old.id).active is False

    def test_record_same_token_is_noop(self, sessions, state, conversation):
        session = sessions.resolve(conversation).session
        sessions.record_resume_token(session, "t1")
        sessions.record_resume_token(state.get_session(session.id), "t1")
        assert state.get_session(session.id).resume_token == "t1"
