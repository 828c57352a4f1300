"""Worktree Lifecycle Coordinator: create-with-sharing and reference-counted teardown.

A worktree is referenced by every conversation whose ``worktree_path``
equals its path. It is removed from disk only when the last referent
releases it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path

from remote_agent.core.errors import RemoveFailure, WorktreeRemoveError
from remote_agent.core.sessions import SessionManager
from remote_agent.core.worktrees import WorktreeManager
from remote_agent.integrations.github import LinkedIssueResolver, build_conversation_id
from remote_agent.state.manager import StateManager
from remote_agent.state.models import CodebaseRecord, ConversationRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkTarget:
    """The issue or pull request a request is about."""

    owner: str
    repo: str
    number: int
    is_pull_request: bool = False
    head_ref: str | None = None
    head_sha: str | None = None

    @property
    def conversation_id(self) -> str:
        return build_conversation_id(self.owner, self.repo, self.number)

    @property
    def branch_name(self) -> str:
        return f"pr-{self.number}" if self.is_pull_request else f"issue-{self.number}"


class AttachAction(str, enum.Enum):
    REUSED = "reused"
    SHARED = "shared"
    CREATED = "created"


@dataclass(frozen=True)
class AttachOutcome:
    path: Path
    action: AttachAction
    shared_with: int | None = None


class TeardownStatus(str, enum.Enum):
    NO_WORKTREE = "no_worktree"
    KEPT_FOR_OTHERS = "kept_for_others"
    REMOVED = "removed"
    ALREADY_REMOVED = "already_removed"
    UNCOMMITTED_CHANGES = "uncommitted_changes"


@dataclass(frozen=True)
class TeardownOutcome:
    status: TeardownStatus
    path: Path | None = None
    remaining_referents: int = 0

    @property
    def warning(self) -> str | None:
        if self.status is TeardownStatus.UNCOMMITTED_CHANGES:
            return (
                f"⚠️ Worktree `{self.path}` has uncommitted changes and was not removed. "
                "Commit or discard them, then delete it manually."
            )
        return None


class WorktreeLifecycle:
    """Decide whether an issue/PR event creates, shares or destroys a worktree."""

    def __init__(
        self,
        state: StateManager,
        worktrees: WorktreeManager,
        sessions: SessionManager,
        linked_issues: LinkedIssueResolver | None = None,
    ) -> None:
        self._state = state
        self._worktrees = worktrees
        self._sessions = sessions
        self._linked_issues = linked_issues

    async def ensure_worktree(
        self,
        conversation: ConversationRecord,
        codebase: CodebaseRecord,
        target: WorkTarget,
    ) -> AttachOutcome:
        """Give the conversation an isolated worktree, sharing a linked issue's when possible.

        Raises:
            WorktreeCreateError: If a new worktree is needed and cannot be
                created. No conversation or session state is changed.
        """
        if conversation.worktree_path:
            return AttachOutcome(Path(conversation.worktree_path), AttachAction.REUSED)

        if target.is_pull_request:
            shared = await self._find_shareable(conversation.platform_type, target)
            if shared is not None:
                path, issue_number = shared
                self._attach(conversation, path)
                logger.info(
                    "PR #%d shares worktree %s with issue #%d", target.number, path, issue_number
                )
                return AttachOutcome(Path(path), AttachAction.SHARED, shared_with=issue_number)

        path = await asyncio.to_thread(
            self._worktrees.create_for_issue,
            codebase.default_cwd,
            target.number,
            target.is_pull_request,
            target.head_ref,
            target.head_sha,
        )
        self._attach(conversation, str(path))
        logger.info("Attached worktree %s to conversation %s", path, conversation.id)
        return AttachOutcome(path, AttachAction.CREATED)

    async def _find_shareable(
        self, platform_type: str, target: WorkTarget
    ) -> tuple[str, int] | None:
        if self._linked_issues is None:
            return None
        numbers = await self._linked_issues.linked_issues(target.owner, target.repo, target.number)
        for number in numbers:
            linked = self._state.get_conversation_by_platform_id(
                platform_type, build_conversation_id(target.owner, target.repo, number)
            )
            if linked is not None and linked.worktree_path:
                return linked.worktree_path, number
        return None

    def _attach(self, conversation: ConversationRecord, path: str) -> None:
        # A session started elsewhere cannot be resumed in the new directory.
        self._sessions.reset(conversation.id)
        self._state.update_conversation(conversation.id, worktree_path=path, cwd=path)

    async def teardown(
        self,
        conversation: ConversationRecord,
        codebase: CodebaseRecord | None,
    ) -> TeardownOutcome:
        """Release the conversation's worktree; remove it if no one else holds it.

        Raises:
            WorktreeRemoveError: For removal failures other than uncommitted
                changes or an already-removed worktree. The conversation's
                reference is released regardless.
        """
        if not conversation.worktree_path:
            return TeardownOutcome(TeardownStatus.NO_WORKTREE)

        path = Path(conversation.worktree_path)
        repo_path = self._repo_path_for(path, codebase)

        self._sessions.reset(conversation.id)
        remaining = self._state.release_worktree(
            conversation.id, reset_cwd=codebase.default_cwd if codebase else None
        )
        if remaining < 0:
            # Released concurrently by another close event.
            return TeardownOutcome(TeardownStatus.NO_WORKTREE)
        if remaining > 0:
            logger.info("Keeping worktree %s: %d other conversation(s) reference it", path, remaining)
            return TeardownOutcome(TeardownStatus.KEPT_FOR_OTHERS, path, remaining)

        try:
            await asyncio.to_thread(self._worktrees.remove, repo_path, path)
        except WorktreeRemoveError as e:
            if e.kind is RemoveFailure.ALREADY_REMOVED:
                logger.info("Worktree %s was already removed", path)
                return TeardownOutcome(TeardownStatus.ALREADY_REMOVED, path)
            if e.kind is RemoveFailure.UNCOMMITTED_CHANGES:
                logger.warning("Worktree %s has uncommitted changes; leaving it on disk", path)
                return TeardownOutcome(TeardownStatus.UNCOMMITTED_CHANGES, path)
            raise

        return TeardownOutcome(TeardownStatus.REMOVED, path)

    def _repo_path_for(self, path: Path, codebase: CodebaseRecord | None) -> Path:
        if codebase is not None:
            return Path(codebase.default_cwd)
        return self._worktrees.canonical_repo_path(path)
