"""Integration tests: worktree sharing and reference-counted teardown against real git."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import git
import pytest

from remote_agent.config.settings import DEFAULT_PHASE_TRANSITIONS
from remote_agent.core.errors import WorktreeCreateError
from remote_agent.core.lifecycle import (
    AttachAction,
    TeardownStatus,
    WorkTarget,
    WorktreeLifecycle,
)
from remote_agent.core.sessions import SessionManager
from remote_agent.core.worktrees import WorktreeManager


class FakeLinkedIssues:
    def __init__(self, links: dict[int, list[int]] | None = None) -> None:
        self.links = links or {}
        self.queries: list[int] = []

    async def linked_issues(self, owner: str, repo: str, pr_number: int) -> list[int]:
        self.queries.append(pr_number)
        return self.links.get(pr_number, [])


ISSUE_42 = WorkTarget("acme", "project", 42)
PR_7 = WorkTarget("acme", "project", 7, is_pull_request=True, head_ref="issue-42")


@pytest.fixture
def worktrees() -> WorktreeManager:
    return WorktreeManager()


@pytest.fixture
def sessions(state) -> SessionManager:
    return SessionManager(state, DEFAULT_PHASE_TRANSITIONS)


@pytest.fixture
def resolver() -> FakeLinkedIssues:
    return FakeLinkedIssues({7: [42]})


@pytest.fixture
def lifecycle(state, worktrees, sessions, resolver) -> WorktreeLifecycle:
    return WorktreeLifecycle(state, worktrees, sessions, resolver)


@pytest.fixture
def codebase(state, git_repo):
    return state.create_codebase("project", str(git_repo), "https://github.com/acme/project")


def _conversation(state, codebase, target: WorkTarget, platform_type: str = "github"):
    conv = state.get_or_create_conversation(platform_type, target.conversation_id)
    state.update_conversation(conv.id, codebase_id=codebase.id, cwd=codebase.default_cwd)
    return state.get_conversation(conv.id)


def _attach(state, lifecycle, codebase, target: WorkTarget):
    conv = _conversation(state, codebase, target)
    outcome = asyncio.run(lifecycle.ensure_worktree(conv, codebase, target))
    return state.get_conversation(conv.id), outcome


def _close(state, lifecycle, codebase, target: WorkTarget):
    conv = state.get_conversation_by_platform_id("github", target.conversation_id)
    return asyncio.run(lifecycle.teardown(conv, codebase))


def _pr_at_head(git_repo: Path) -> WorkTarget:
    """PR #7 checked out by commit, so only link lookup can make it share."""
    sha = git.Repo(git_repo).head.commit.hexsha
    return WorkTarget("acme", "project", 7, is_pull_request=True, head_sha=sha)


class TestEnsureWorktree:
    def test_issue_gets_own_worktree(self, state, lifecycle, codebase, worktrees, git_repo):
        conv, outcome = _attach(state, lifecycle, codebase, ISSUE_42)

        assert outcome.action is AttachAction.CREATED
        assert outcome.path.name == "issue-42"
        assert conv.worktree_path == str(outcome.path)
        assert conv.cwd == str(outcome.path)
        assert worktrees.is_worktree(outcome.path)

    def test_second_request_reuses(self, state, lifecycle, codebase):
        _attach(state, lifecycle, codebase, ISSUE_42)
        _, outcome = _attach(state, lifecycle, codebase, ISSUE_42)
        assert outcome.action is AttachAction.REUSED

    def test_attach_resets_session(self, state, lifecycle, codebase, sessions):
        conv = _conversation(state, codebase, ISSUE_42)
        sessions.resolve(conv)
        asyncio.run(lifecycle.ensure_worktree(conv, codebase, ISSUE_42))
        assert sessions.get_active(conv.id) is None

    def test_pr_shares_linked_issue_worktree(self, state, lifecycle, codebase, worktrees, git_repo, resolver):
        issue_conv, _ = _attach(state, lifecycle, codebase, ISSUE_42)

        pr_conv, outcome = _attach(state, lifecycle, codebase, PR_7)

        assert outcome.action is AttachAction.SHARED
        assert outcome.shared_with == 42
        assert pr_conv.worktree_path == issue_conv.worktree_path
        assert len(worktrees.list(git_repo)) == 2
        assert resolver.queries == [7]

    def test_pr_shares_within_own_platform(self, state, lifecycle, codebase, git_repo):
        pr = _pr_at_head(git_repo)
        issue_conv = _conversation(state, codebase, ISSUE_42, "gitea")
        issue = asyncio.run(lifecycle.ensure_worktree(issue_conv, codebase, ISSUE_42))
        pr_conv = _conversation(state, codebase, pr, "gitea")

        outcome = asyncio.run(lifecycle.ensure_worktree(pr_conv, codebase, pr))

        assert outcome.action is AttachAction.SHARED
        assert outcome.path == issue.path

    def test_pr_ignores_other_platform_issue(self, state, lifecycle, codebase, git_repo):
        pr = _pr_at_head(git_repo)
        _attach(state, lifecycle, codebase, ISSUE_42)
        pr_conv = _conversation(state, codebase, pr, "gitea")

        outcome = asyncio.run(lifecycle.ensure_worktree(pr_conv, codebase, pr))

        assert outcome.action is AttachAction.CREATED
        assert outcome.path.name == "pr-7"

    def test_pr_without_linked_worktree_creates(self, state, codebase, worktrees, sessions, git_repo):
        lifecycle = WorktreeLifecycle(state, worktrees, sessions, FakeLinkedIssues({7: [42]}))
        sha = git.Repo(git_repo).head.commit.hexsha
        target = WorkTarget("acme", "project", 7, is_pull_request=True, head_sha=sha)

        _, outcome = _attach(state, lifecycle, codebase, target)

        assert outcome.action is AttachAction.CREATED
        assert outcome.path.name == "pr-7"

    def test_issue_never_queries_links(self, state, lifecycle, codebase, resolver):
        _attach(state, lifecycle, codebase, ISSUE_42)
        assert resolver.queries == []

    def test_create_failure_changes_nothing(self, state, lifecycle, codebase, sessions, worktrees, git_repo):
        worktrees.worktree_path_for(git_repo, 42, False).mkdir(parents=True)
        conv = _conversation(state, codebase, ISSUE_42)
        session = sessions.resolve(conv).session

        with pytest.raises(WorktreeCreateError):
            asyncio.run(lifecycle.ensure_worktree(conv, codebase, ISSUE_42))

        reloaded = state.get_conversation(conv.id)
        assert reloaded.worktree_path is None
        assert reloaded.cwd == codebase.default_cwd
        assert sessions.get_active(conv.id).id == session.id


class TestTeardown:
    @pytest.mark.parametrize("first, second", [(PR_7, ISSUE_42), (ISSUE_42, PR_7)])
    def test_last_referent_removes(self, state, lifecycle, codebase, worktrees, git_repo, first, second):
        _, outcome = _attach(state, lifecycle, codebase, ISSUE_42)
        _attach(state, lifecycle, codebase, PR_7)
        path = outcome.path

        kept = _close(state, lifecycle, codebase, first)
        assert kept.status is TeardownStatus.KEPT_FOR_OTHERS
        assert kept.remaining_referents == 1
        assert path.is_dir()

        removed = _close(state, lifecycle, codebase, second)
        assert removed.status is TeardownStatus.REMOVED
        assert not path.exists()
        assert len(worktrees.list(git_repo)) == 1

    def test_close_releases_state(self, state, lifecycle, codebase, sessions):
        conv, _ = _attach(state, lifecycle, codebase, ISSUE_42)
        session = sessions.resolve(conv).session
        state.update_resume_token(session.id, "t1")

        _close(state, lifecycle, codebase, ISSUE_42)

        reloaded = state.get_conversation(conv.id)
        assert reloaded.worktree_path is None
        assert reloaded.cwd == codebase.default_cwd
        assert state.get_session(session.id).active is False

    def test_uncommitted_changes_kept_with_warning(self, state, lifecycle, codebase):
        conv, outcome = _attach(state, lifecycle, codebase, ISSUE_42)
        (outcome.path / "wip.py").write_text("print('unsaved')\n")

        result = _close(state, lifecycle, codebase, ISSUE_42)

        assert result.status is TeardownStatus.UNCOMMITTED_CHANGES
        assert "uncommitted changes" in result.warning
        assert outcome.path.is_dir()
        assert state.get_conversation(conv.id).worktree_path is None

    def test_already_removed(self, state, lifecycle, codebase):
        _, outcome = _attach(state, lifecycle, codebase, ISSUE_42)
        shutil.rmtree(outcome.path)

        result = _close(state, lifecycle, codebase, ISSUE_42)

        assert result.status is TeardownStatus.ALREADY_REMOVED
        assert result.warning is None

    def test_no_worktree_is_noop(self, state, lifecycle, codebase, sessions):
        conv = _conversation(state, codebase, ISSUE_42)
        session = sessions.resolve(conv).session

        result = asyncio.run(lifecycle.teardown(conv, codebase))

        assert result.status is TeardownStatus.NO_WORKTREE
        assert sessions.get_active(conv.id).id == session.id

    def test_repo_found_from_worktree_without_codebase(self, state, lifecycle, codebase):
        conv, outcome = _attach(state, lifecycle, codebase, ISSUE_42)
        result = asyncio.run(lifecycle.teardown(conv, None))
        assert result.status is TeardownStatus.REMOVED
        assert not outcome.path.exists()
        assert isinstance(result.path, Path)
