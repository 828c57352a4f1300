"""Config file discovery and loading."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from remote_agent.config.settings import (
    AgentSettings,
    DeliverySettings,
    GitHubSettings,
    GitSettings,
    RemoteAgentSettings,
    SessionSettings,
    StorageSettings,
    WorkspaceSettings,
)

CONFIG_FILENAMES = [
    "remote-agent.yaml",
    "remote-agent.yml",
    ".remote-agent.yaml",
    ".remote-agent.yml",
]

_SECTIONS: dict[str, type] = {
    "storage": StorageSettings,
    "workspace": WorkspaceSettings,
    "agent": AgentSettings,
    "git": GitSettings,
    "github": GitHubSettings,
    "delivery": DeliverySettings,
    "sessions": SessionSettings,
}


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for a config file starting from start_dir, walking up to root."""
    directory = (start_dir or Path.cwd()).resolve()

    while True:
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
        parent = directory.parent
        if parent == directory:
            break
        directory = parent

    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load and parse a YAML config file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _coerce_env_value(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if value.isdigit():
        return int(value)
    return value


def _merge_env_vars(data: dict[str, Any], prefix: str) -> None:
    """Merge environment variables with the given prefix into data dict."""
    for key, value in os.environ.items():
        if key.startswith(prefix):
            field_name = key[len(prefix):].lower()
            data[field_name] = _coerce_env_value(value)


def load_settings(
    start_dir: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> RemoteAgentSettings:
    """Load settings with full layering: defaults -> config file -> env -> overrides."""
    file_data: dict[str, Any] = {}
    config_file = find_config_file(start_dir)
    if config_file:
        file_data = load_config_file(config_file)

    # Pydantic doesn't parse env vars when we pass explicit kwargs,
    # so sections are merged by hand before overrides are applied.
    sections: dict[str, Any] = {}
    for name in _SECTIONS:
        section_data = dict(file_data.get(name) or {})
        _merge_env_vars(section_data, f"REMOTE_AGENT_{name.upper()}__")
        sections[name] = section_data

    log_level = os.environ.get("REMOTE_AGENT_LOG_LEVEL", file_data.get("log_level", "INFO"))

    merged: dict[str, Any] = {**sections, "log_level": log_level}
    if overrides:
        merged = _deep_merge(merged, overrides)

    return RemoteAgentSettings(
        **{name: model(**merged[name]) for name, model in _SECTIONS.items()},
        log_level=merged["log_level"],
    )
