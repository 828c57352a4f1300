"""Tests for tool notices and batch consolidation."""

from __future__ import annotations

from remote_agent.agents.events import AssistantText, Result, ToolCall
from remote_agent.core.streaming import (
    BATCH_SEPARATOR,
    consolidate_batch,
    format_tool_call,
    strip_tool_sections,
)


class TestFormatToolCall:
    def test_bash_shows_command(self):
        assert format_tool_call("Bash", {"command": "npm test"}) == "🔧 BASH: npm test"

    def test_read_shows_path(self):
        assert format_tool_call("Read", {"file_path": "src/app.py"}) == "🔧 READ: src/app.py"

    def test_unknown_tool_has_no_payload(self):
        assert format_tool_call("mcp__secret", {"token": "abc"}) == "🔧 MCP__SECRET"

    def test_long_input_truncated(self):
        notice = format_tool_call("Bash", {"command": "x" * 500})
        assert notice.endswith("...")
        assert len(notice) < 120

    def test_multiline_input_first_line(self):
        assert format_tool_call("Bash", {"command": "cd a\nrm -rf b"}) == "🔧 BASH: cd a"


class TestStripToolSections:
    def test_strips_marker_paragraphs(self):
        text = "Looking now.\n\n🔧 BASH: ls\n\n📝 Writing file\n\nDone."
        assert strip_tool_sections(text) == "Looking now.\n\nDone."

    def test_falls_back_when_everything_stripped(self):
        text = "🔧 BASH: ls\n\n🔍 searching"
        assert strip_tool_sections(text) == text


class TestConsolidateBatch:
    def test_tool_events_excluded_by_kind(self):
        events = [
            AssistantText("First."),
            ToolCall("Bash", {"command": "ls"}),
            AssistantText("Second."),
            Result("t1"),
        ]
        assert consolidate_batch(events) == f"First.{BATCH_SEPARATOR}Second."

    def test_no_text(self):
        assert consolidate_batch([ToolCall("Bash", {}), Result("t1")]) == ""

    def test_inlined_narration_removed(self):
        events = [AssistantText("💭 thinking about it\n\nThe fix is in utils.py.")]
        assert consolidate_batch(events) == "The fix is in utils.py."
