"""Tests for settings models and layered config loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from remote_agent.config.loader import find_config_file, load_settings
from remote_agent.config.settings import (
    DEFAULT_PHASE_TRANSITIONS,
    DeliverySettings,
    RemoteAgentSettings,
    WorkspaceSettings,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("REMOTE_AGENT_"):
            monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_defaults(self):
        settings = RemoteAgentSettings()
        assert settings.agent.claude_executable == "claude"
        assert settings.git.timeout == 30
        assert settings.delivery.retry_attempts == 3
        assert settings.delivery.bot_display_name == "The agent"
        assert settings.workspace.worktree_base is None
        assert settings.log_level == "INFO"

    def test_default_phase_transitions(self):
        settings = RemoteAgentSettings()
        assert settings.sessions.phase_transitions == DEFAULT_PHASE_TRANSITIONS
        assert "plan" in settings.sessions.phase_transitions["execute"]

    def test_phase_transitions_are_not_shared(self):
        a = RemoteAgentSettings()
        a.sessions.phase_transitions["execute"].append("draft")
        assert "draft" not in RemoteAgentSettings().sessions.phase_transitions["execute"]


class TestValidation:
    def test_worktree_base_expands_user(self):
        ws = WorkspaceSettings(worktree_base="~/worktrees")
        assert ws.worktree_base == Path.home() / "worktrees"

    def test_blank_worktree_base_is_none(self):
        assert WorkspaceSettings(worktree_base="").worktree_base is None

    def test_retry_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            DeliverySettings(retry_attempts=0)

    def test_log_level_normalized(self):
        assert RemoteAgentSettings(log_level="debug").log_level == "DEBUG"

    def test_log_level_rejects_unknown(self):
        with pytest.raises(ValidationError):
            RemoteAgentSettings(log_level="chatty")


class TestLoader:
    def test_find_config_file_walks_up(self, tmp_path):
        (tmp_path / "remote-agent.yaml").write_text("log_level: WARNING\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == tmp_path / "remote-agent.yaml"

    def test_no_config_file(self, tmp_path):
        settings = load_settings(start_dir=tmp_path)
        assert settings.agent.timeout == 1800

    def test_file_values_applied(self, tmp_path):
        (tmp_path / ".remote-agent.yaml").write_text(
            yaml.dump(
                {
                    "agent": {"model": "test-model", "timeout": 60},
                    "workspace": {"worktree_base": str(tmp_path / "wt")},
                    "log_level": "warning",
                }
            )
        )
        settings = load_settings(start_dir=tmp_path)
        assert settings.agent.model == "test-model"
        assert settings.agent.timeout == 60
        assert settings.workspace.worktree_base == tmp_path / "wt"
        assert settings.log_level == "WARNING"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        (tmp_path / "remote-agent.yaml").write_text(yaml.dump({"agent": {"timeout": 60}}))
        monkeypatch.setenv("REMOTE_AGENT_AGENT__TIMEOUT", "90")
        monkeypatch.setenv("REMOTE_AGENT_DELIVERY__BOT_DISPLAY_NAME", "Scar")
        monkeypatch.setenv("REMOTE_AGENT_LOG_LEVEL", "ERROR")
        settings = load_settings(start_dir=tmp_path)
        assert settings.agent.timeout == 90
        assert settings.delivery.bot_display_name == "Scar"
        assert settings.log_level == "ERROR"

    def test_overrides_win(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REMOTE_AGENT_STORAGE__DB_PATH", str(tmp_path / "env.db"))
        settings = load_settings(
            start_dir=tmp_path, overrides={"storage": {"db_path": str(tmp_path / "cli.db")}}
        )
        assert settings.storage.db_path == tmp_path / "cli.db"
