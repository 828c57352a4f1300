"""Error taxonomy and user-facing error classification."""

from __future__ import annotations

import asyncio
import enum
import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)


class WorktreeError(Exception):
    """Base class for worktree failures."""


class WorktreeCreateError(WorktreeError):
    """Raised when a worktree cannot be created (branch collision, filesystem failure)."""

    def __init__(self, message: str, branch: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.branch = branch
        self.path = path


class RemoveFailure(str, enum.Enum):
    UNCOMMITTED_CHANGES = "uncommitted_changes"
    ALREADY_REMOVED = "already_removed"
    OTHER = "other"


class WorktreeRemoveError(WorktreeError):
    """Raised when ``git worktree remove`` fails; ``kind`` tells callers how to react."""

    def __init__(self, message: str, kind: RemoveFailure, path: Path) -> None:
        super().__init__(message)
        self.kind = kind
        self.path = path


class AgentBackendError(Exception):
    """Raised when the agent backend fails mid-request."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class TransientDeliveryError(Exception):
    """Raised by a surface when posting a message failed in a retryable way."""


_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "overloaded", "too many requests")
_AUTH_MARKERS = ("unauthorized", "401", "403", "invalid api key", "authentication", "oauth")
_NETWORK_MARKERS = ("timed out", "timeout", "econnreset", "connection reset", "network")


def classify_error(exc: BaseException) -> str:
    """Map an exception to a short user-facing message.

    Raw exception text may carry tokens or connection strings, so it never
    appears in the returned message.
    """
    detail = " ".join(
        str(part) for part in (exc, getattr(exc, "stderr", "")) if part
    ).lower()

    if any(marker in detail for marker in _RATE_LIMIT_MARKERS):
        return "⚠️ The AI service is rate limited right now. Please wait a minute and try again."
    if any(marker in detail for marker in _AUTH_MARKERS):
        return "⚠️ The AI service rejected our credentials. An operator needs to re-authenticate."
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or any(
        marker in detail for marker in _NETWORK_MARKERS
    ):
        return "⚠️ The request timed out or lost its connection. Please try again."
    if isinstance(exc, WorktreeError):
        return "⚠️ Could not prepare the isolated working copy for this request."
    if isinstance(exc, sqlite3.Error):
        return "⚠️ Internal storage error. Please try again shortly."
    if isinstance(exc, AgentBackendError):
        return "⚠️ The AI agent stopped with an error. Try again, or use /reset to start fresh."
    return "⚠️ Something went wrong while handling your request. Try /reset if this persists."
