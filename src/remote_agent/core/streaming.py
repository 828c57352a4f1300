"""Normalise agent events into the delivery shape a surface wants."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from typing import Any

from remote_agent.agents.events import AgentEvent, AssistantText

# Leading glyphs of tool narration, whether rendered by us or inlined by a backend.
TOOL_MARKERS = ("🔧", "💭", "📝", "✏️", "🗑️", "📂", "🔍")

BATCH_SEPARATOR = "\n\n---\n\n"

_BRIEF_LIMIT = 100

# Tool name -> input key that best summarises the call.
_BRIEF_KEYS: dict[str, str] = {
    "Bash": "command",
    "Read": "file_path",
    "Write": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "NotebookEdit": "notebook_path",
    "Glob": "pattern",
    "Grep": "pattern",
    "WebFetch": "url",
    "WebSearch": "query",
    "Task": "description",
}


class StreamingMode(str, enum.Enum):
    STREAM = "stream"
    BATCH = "batch"


def format_tool_call(name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Render a tool invocation as a one-line notice, never the raw payload."""
    tool_input = tool_input or {}
    key = _BRIEF_KEYS.get(name)
    brief = str(tool_input.get(key, "")) if key else ""
    brief = brief.strip().splitlines()[0] if brief.strip() else ""
    if len(brief) > _BRIEF_LIMIT:
        brief = brief[: _BRIEF_LIMIT - 3] + "..."
    notice = f"🔧 {name.upper()}"
    return f"{notice}: {brief}" if brief else notice


def is_tool_section(section: str) -> bool:
    return section.strip().startswith(TOOL_MARKERS)


def strip_tool_sections(text: str) -> str:
    """Drop paragraphs that start with a tool marker.

    Falls back to the unfiltered text if nothing would be left.
    """
    sections = text.split("\n\n")
    kept = [s for s in sections if not is_tool_section(s)]
    if not any(s.strip() for s in kept):
        return text
    return "\n\n".join(kept)


def consolidate_batch(events: Iterable[AgentEvent]) -> str:
    """Build the single batch-mode message from an event sequence.

    Only assistant text contributes; tool calls are excluded by kind.
    Marker stripping then removes narration a backend may have inlined.
    """
    texts = [e.text for e in events if isinstance(e, AssistantText) and e.text.strip()]
    if not texts:
        return ""
    return strip_tool_sections(BATCH_SEPARATOR.join(texts)).strip()
