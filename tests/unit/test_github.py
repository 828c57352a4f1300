"""Tests for GitHub conversation ids and linked-issue lookup."""

from __future__ import annotations

import asyncio
import json

import pytest

from remote_agent.integrations.github import (
    GhLinkedIssueResolver,
    IssueRef,
    build_conversation_id,
    parse_conversation_id,
    parse_linked_issues,
)


class TestConversationIds:
    def test_build(self):
        assert build_conversation_id("acme", "api", 42) == "acme/api#42"

    def test_parse(self):
        assert parse_conversation_id("acme/api#42") == IssueRef("acme", "api", 42)

    def test_issue_ref_roundtrip(self):
        assert IssueRef("acme", "api", 7).conversation_id == "acme/api#7"

    @pytest.mark.parametrize("value", ["acme/api", "acme#1", "acme/api#x", ""])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            parse_conversation_id(value)


class TestParseLinkedIssues:
    def test_numbers(self):
        payload = {
            "data": {
                "repository": {
                    "pullRequest": {"closingIssuesReferences": {"nodes": [{"number": 42}, {"number": 7}]}}
                }
            }
        }
        assert parse_linked_issues(json.dumps(payload)) == [42, 7]

    def test_missing_pull_request(self):
        payload = {"data": {"repository": {"pullRequest": None}}}
        assert parse_linked_issues(json.dumps(payload)) == []

    def test_not_json(self):
        assert parse_linked_issues("gh: not logged in") == []


class TestGhLinkedIssueResolver:
    def test_missing_gh_returns_empty(self, tmp_path):
        resolver = GhLinkedIssueResolver(gh_executable=str(tmp_path / "no-gh"))
        assert asyncio.run(resolver.linked_issues("acme", "api", 1)) == []

    def test_failing_gh_returns_empty(self, tmp_path):
        script = tmp_path / "gh"
        script.write_text("#!/bin/sh\necho 'auth required' >&2\nexit 4\n")
        script.chmod(0o755)
        resolver = GhLinkedIssueResolver(gh_executable=str(script))
        assert asyncio.run(resolver.linked_issues("acme", "api", 1)) == []

    def test_reads_gh_output(self, tmp_path):
        payload = {
            "data": {"repository": {"pullRequest": {"closingIssuesReferences": {"nodes": [{"number": 5}]}}}}
        }
        (tmp_path / "out.json").write_text(json.dumps(payload))
        script = tmp_path / "gh"
        script.write_text(f"#!/bin/sh\ncat '{tmp_path / 'out.json'}'\n")
        script.chmod(0o755)
        resolver = GhLinkedIssueResolver(gh_executable=str(script))
        assert asyncio.run(resolver.linked_issues("acme", "api", 9)) == [5]
