"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from pathlib import Path

import git
import pytest

from remote_agent.agents.events import AgentEvent
from remote_agent.config.settings import (
    DeliverySettings,
    RemoteAgentSettings,
    StorageSettings,
    WorkspaceSettings,
)
from remote_agent.core.streaming import StreamingMode
from remote_agent.state.manager import StateManager


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Auto-apply 'smoke' marker to any test not marked 'regression'."""
    smoke = pytest.mark.smoke
    for item in items:
        if not any(m.name == "regression" for m in item.iter_markers()):
            item.add_marker(smoke)


class RecordingSurface:
    """Surface that records every delivered message."""

    def __init__(self, mode: StreamingMode = StreamingMode.STREAM, platform_type: str = "test") -> None:
        self.platform_type = platform_type
        self.mode = mode
        self.sent: list[tuple[str, str]] = []

    def get_streaming_mode(self, conversation_id: str) -> StreamingMode:
        return self.mode

    async def send_message(self, conversation_id: str, message: str) -> None:
        self.sent.append((conversation_id, message))

    @property
    def messages(self) -> list[str]:
        return [m for _, m in self.sent]


@dataclass(frozen=True)
class QueryCall:
    prompt: str
    cwd: str
    resume_token: str | None


class ScriptedAgentBackend:
    """Agent backend that replays canned event sequences, one per query."""

    def __init__(self, scripts: Iterable[list[AgentEvent] | Exception] | None = None) -> None:
        self._scripts = list(scripts or [])
        self._calls: list[QueryCall] = []

    @property
    def calls(self) -> list[QueryCall]:
        return self._calls

    def add_script(self, script: list[AgentEvent] | Exception) -> None:
        self._scripts.append(script)

    async def send_query(
        self, prompt: str, cwd: str, resume_token: str | None = None
    ) -> AsyncIterator[AgentEvent]:
        self._calls.append(QueryCall(prompt, cwd, resume_token))
        script = self._scripts.pop(0) if self._scripts else []
        if isinstance(script, Exception):
            raise script
        for event in script:
            yield event


def init_git_repo(path: Path) -> git.Repo:
    """Create a git repo with an initial commit and return the Repo object."""
    path.mkdir(parents=True, exist_ok=True)
    repo = git.Repo.init(path)
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()
    (path / "init.txt").write_text("init")
    repo.index.add(["init.txt"])
    repo.index.commit("initial commit")
    return repo


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A canonical repository at ``tmp_path/project``; worktrees land in ``tmp_path/worktrees``."""
    path = tmp_path / "project"
    init_git_repo(path)
    return path


@pytest.fixture
def state(tmp_path: Path) -> StateManager:
    return StateManager(db_path=tmp_path / "state.db")


@pytest.fixture
def settings(tmp_path: Path) -> RemoteAgentSettings:
    return RemoteAgentSettings(
        storage=StorageSettings(db_path=tmp_path / "state.db"),
        workspace=WorkspaceSettings(path=tmp_path),
        delivery=DeliverySettings(retry_delay=0),
    )


@pytest.fixture
def surface() -> RecordingSurface:
    return RecordingSurface()


@pytest.fixture
def batch_surface() -> RecordingSurface:
    return RecordingSurface(mode=StreamingMode.BATCH)
