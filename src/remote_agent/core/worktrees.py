"""Worktree Manager: filesystem-level git worktree operations.

Nothing here knows about conversations or sessions. Paths follow the
``<worktree-base>/<project>/issue-<n>`` and ``.../pr-<n>`` convention, where
the base defaults to a ``worktrees`` directory sibling to the canonical
repository.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from remote_agent.core.errors import RemoveFailure, WorktreeCreateError, WorktreeRemoveError

logger = logging.getLogger(__name__)

_UNCOMMITTED_MARKERS = ("modified or untracked", "use --force", "contains modified")
_MISSING_MARKERS = ("is not a working tree", "does not exist", "no such file")


@dataclass(frozen=True)
class WorktreeInfo:
    """One entry of git's worktree ledger."""

    path: Path
    head: str | None = None
    branch: str | None = None
    is_main: bool = False

    @property
    def detached(self) -> bool:
        return self.branch is None


def branch_name_for(number: int, is_pull_request: bool) -> str:
    return f"pr-{number}" if is_pull_request else f"issue-{number}"


def slugify_branch(branch: str) -> str:
    return branch.replace("/", "-")


class WorktreeManager:
    """Create, locate and destroy isolated working copies of a canonical repository."""

    def __init__(self, worktree_base: Path | None = None, timeout: int = 30) -> None:
        self._worktree_base = worktree_base
        self._timeout = timeout

    # -- Paths --------------------------------------------------------------

    def worktree_base(self, repo_path: Path | str) -> Path:
        """Directory holding this repository's worktrees."""
        repo_path = Path(repo_path).resolve()
        base = self._worktree_base.expanduser() if self._worktree_base else repo_path.parent / "worktrees"
        return base.resolve() / repo_path.name

    def worktree_path_for(self, repo_path: Path | str, number: int, is_pull_request: bool) -> Path:
        return self.worktree_base(repo_path) / branch_name_for(number, is_pull_request)

    @staticmethod
    def is_worktree(path: Path | str) -> bool:
        """True only for a linked working copy, never for the main repository.

        A linked worktree has a ``.git`` *file* holding ``gitdir: ...``; the
        main repository has a ``.git`` directory.
        """
        marker = Path(path) / ".git"
        try:
            return marker.is_file() and marker.read_text(encoding="utf-8").startswith("gitdir:")
        except OSError:
            return False

    @classmethod
    def canonical_repo_path(cls, path: Path | str) -> Path:
        """Resolve the main repository behind a worktree; other paths are returned as-is."""
        path = Path(path)
        if not cls.is_worktree(path):
            return path
        gitdir = (path / ".git").read_text(encoding="utf-8").split(":", 1)[1].strip()
        parts = Path(gitdir).parts
        # gitdir: /repo/.git/worktrees/<name>
        if len(parts) >= 3 and parts[-2] == "worktrees" and parts[-3] == ".git":
            return Path(*parts[:-3])
        return path

    # -- Ledger -------------------------------------------------------------

    def list(self, repo_path: Path | str) -> list[WorktreeInfo]:
        """Parse ``git worktree list --porcelain``; the first entry is the main repository."""
        try:
            repo = git.Repo(repo_path)
            output = repo.git.worktree("list", "--porcelain", kill_after_timeout=self._timeout)
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            logger.warning("Could not list worktrees for %s: %s", repo_path, e)
            return []

        entries: list[WorktreeInfo] = []
        current: dict[str, str] = {}

        def flush() -> None:
            if "worktree" in current:
                entries.append(
                    WorktreeInfo(
                        path=Path(current["worktree"]),
                        head=current.get("HEAD"),
                        branch=current.get("branch"),
                        is_main=not entries,
                    )
                )
            current.clear()

        for line in output.splitlines():
            if not line.strip():
                flush()
                continue
            key, _, value = line.partition(" ")
            if key == "branch":
                value = value.removeprefix("refs/heads/")
            current[key] = value
        flush()
        return entries

    def find_by_branch(self, repo_path: Path | str, branch_name: str) -> Path | None:
        """Find a worktree by branch, exact match first, then slug match.

        Worktrees created outside this system may name ``feature/auth`` as
        ``feature-auth``; both sides are slugified for the second pass.
        """
        worktrees = [wt for wt in self.list(repo_path) if wt.branch and not wt.is_main]

        for wt in worktrees:
            if wt.branch == branch_name:
                return wt.path

        slug = slugify_branch(branch_name)
        for wt in worktrees:
            if slugify_branch(wt.branch or "") == slug:
                return wt.path
        return None

    # -- Create -------------------------------------------------------------

    def create_for_issue(
        self,
        repo_path: Path | str,
        number: int,
        is_pull_request: bool,
        head_ref: str | None = None,
        head_sha: str | None = None,
    ) -> Path:
        """Create the worktree for an issue or pull request and return its path.

        Pull requests prefer an exact-commit checkout of ``head_sha`` on a
        ``pr-<n>-review`` branch; without a SHA, or if that fails, the PR's
        ``head_ref`` is tracked from ``origin``. Issues get a new ``issue-<n>``
        branch from the default branch.

        Raises:
            WorktreeCreateError: On branch collisions or filesystem failures.
        """
        branch = branch_name_for(number, is_pull_request)
        path = self.worktree_path_for(repo_path, number, is_pull_request)

        try:
            repo = git.Repo(repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise WorktreeCreateError(f"Not a git repository: {repo_path}", branch, path) from e

        if self._is_registered(repo_path, path):
            logger.info("Adopting existing worktree: %s", path)
            return path

        if is_pull_request and head_ref:
            existing = self.find_by_branch(repo_path, head_ref)
            if existing is not None:
                logger.info("Adopting existing worktree for branch %s: %s", head_ref, existing)
                return existing

        if path.exists():
            raise WorktreeCreateError(
                f"Cannot create worktree: {path} already exists and is not a registered worktree",
                branch,
                path,
            )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorktreeCreateError(f"Cannot create worktree directory: {e}", branch, path) from e

        if is_pull_request and (head_sha or head_ref):
            self._create_for_pull_request(repo, path, number, head_ref, head_sha)
        else:
            self._create_branch_worktree(repo, path, branch)

        logger.info("Created worktree %s", path)
        return path

    def _create_for_pull_request(
        self,
        repo: git.Repo,
        path: Path,
        number: int,
        head_ref: str | None,
        head_sha: str | None,
    ) -> None:
        if head_sha:
            review_branch = f"pr-{number}-review"
            try:
                self._fetch(repo, head_sha)
                repo.git.worktree(
                    "add", "-B", review_branch, str(path), head_sha,
                    kill_after_timeout=self._timeout,
                )
                return
            except GitCommandError as e:
                logger.warning("Exact-commit checkout of %s failed: %s", head_sha, _stderr(e))
                self._discard_partial(repo, path)
                if not head_ref:
                    raise WorktreeCreateError(
                        f"Failed to create worktree at commit {head_sha}: {_stderr(e)}",
                        review_branch,
                        path,
                    ) from e

        assert head_ref is not None
        try:
            self._fetch(repo, head_ref, required=True)
            repo.git.worktree(
                "add", "--track", "-B", f"pr-{number}", str(path), f"origin/{head_ref}",
                kill_after_timeout=self._timeout,
            )
        except GitCommandError as e:
            self._discard_partial(repo, path)
            raise WorktreeCreateError(
                f"Failed to create worktree for PR branch '{head_ref}': {_stderr(e)}",
                head_ref,
                path,
            ) from e

    def _create_branch_worktree(self, repo: git.Repo, path: Path, branch: str) -> None:
        start_point = self._default_start_point(repo)
        try:
            repo.git.worktree(
                "add", "-b", branch, str(path), start_point,
                kill_after_timeout=self._timeout,
            )
            return
        except GitCommandError as e:
            if "already exists" not in _stderr(e):
                raise WorktreeCreateError(
                    f"Failed to create worktree for branch '{branch}': {_stderr(e)}",
                    branch,
                    path,
                ) from e

        # Branch survives from an earlier worktree; check it out again.
        try:
            repo.git.worktree("add", str(path), branch, kill_after_timeout=self._timeout)
        except GitCommandError as e:
            raise WorktreeCreateError(
                f"Branch '{branch}' already exists and cannot be checked out: {_stderr(e)}",
                branch,
                path,
            ) from e

    def _fetch(self, repo: git.Repo, refspec: str, required: bool = False) -> None:
        try:
            repo.git.fetch("origin", refspec, kill_after_timeout=self._timeout)
        except GitCommandError as e:
            if required:
                raise
            # The commit may already be present locally.
            logger.debug("fetch origin %s failed: %s", refspec, _stderr(e))

    def _default_start_point(self, repo: git.Repo) -> str:
        try:
            return repo.git.symbolic_ref(
                "--short", "refs/remotes/origin/HEAD", kill_after_timeout=self._timeout
            ).strip()
        except GitCommandError:
            return "HEAD"

    def _discard_partial(self, repo: git.Repo, path: Path) -> None:
        try:
            repo.git.worktree("remove", "--force", str(path), kill_after_timeout=self._timeout)
        except GitCommandError:
            shutil.rmtree(path, ignore_errors=True)
            try:
                repo.git.worktree("prune", kill_after_timeout=self._timeout)
            except GitCommandError as e:
                logger.debug("worktree prune failed: %s", _stderr(e))

    def _is_registered(self, repo_path: Path | str, path: Path) -> bool:
        if not self.is_worktree(path):
            return False
        target = path.resolve()
        return any(wt.path.resolve() == target for wt in self.list(repo_path))

    # -- Remove -------------------------------------------------------------

    def remove(self, repo_path: Path | str, worktree_path: Path | str, force: bool = False) -> None:
        """Detach and delete a worktree.

        Raises:
            WorktreeRemoveError: ``kind`` is UNCOMMITTED_CHANGES when git refuses
                to drop local changes, ALREADY_REMOVED when the worktree is gone,
                OTHER for anything else.
        """
        worktree_path = Path(worktree_path)
        try:
            repo = git.Repo(repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise WorktreeRemoveError(
                f"Not a git repository: {repo_path}", RemoveFailure.OTHER, worktree_path
            ) from e

        args = ["remove"]
        if force:
            args.append("--force")
        args.append(str(worktree_path))

        try:
            repo.git.worktree(*args, kill_after_timeout=self._timeout)
        except GitCommandError as e:
            stderr = _stderr(e).lower()
            if any(marker in stderr for marker in _UNCOMMITTED_MARKERS):
                kind = RemoveFailure.UNCOMMITTED_CHANGES
            elif any(marker in stderr for marker in _MISSING_MARKERS):
                kind = RemoveFailure.ALREADY_REMOVED
                # Drop ledger entries whose directories were deleted by hand.
                try:
                    repo.git.worktree("prune", kill_after_timeout=self._timeout)
                except GitCommandError as prune_error:
                    logger.debug("worktree prune failed: %s", _stderr(prune_error))
            else:
                kind = RemoveFailure.OTHER
            raise WorktreeRemoveError(
                f"Failed to remove worktree {worktree_path}: {_stderr(e)}", kind, worktree_path
            ) from e

        logger.info("Removed worktree %s", worktree_path)


def _stderr(error: GitCommandError) -> str:
    return str(error.stderr or error).strip()
