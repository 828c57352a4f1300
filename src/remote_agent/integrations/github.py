"""GitHub conversation ids and the pull-request linked-issues relation."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

PLATFORM_TYPE = "github"

_CONVERSATION_ID_RE = re.compile(r"^(?P<owner>[^/\s]+)/(?P<repo>[^#\s]+)#(?P<number>\d+)$")

LINKED_ISSUES_QUERY = """
query($owner: String!, $repo: String!, $pr: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $pr) {
      closingIssuesReferences(first: 20) {
        nodes { number }
      }
    }
  }
}
"""


@dataclass(frozen=True)
class IssueRef:
    owner: str
    repo: str
    number: int

    @property
    def conversation_id(self) -> str:
        return build_conversation_id(self.owner, self.repo, self.number)


def build_conversation_id(owner: str, repo: str, number: int) -> str:
    """Issues and pull requests share one numbering space, so ``owner/repo#n`` is unique."""
    return f"{owner}/{repo}#{number}"


def parse_conversation_id(conversation_id: str) -> IssueRef:
    match = _CONVERSATION_ID_RE.match(conversation_id.strip())
    if not match:
        raise ValueError(f"Not a GitHub conversation id: {conversation_id!r}")
    return IssueRef(match["owner"], match["repo"], int(match["number"]))


class LinkedIssueResolver(Protocol):
    async def linked_issues(self, owner: str, repo: str, pr_number: int) -> list[int]:
        """Issue numbers the pull request declares it closes."""
        ...


class GhLinkedIssueResolver:
    """Query ``closingIssuesReferences`` through ``gh api graphql``.

    Any failure (missing ``gh``, auth, timeout, malformed output) is logged
    and reported as no linked issues; sharing is an optimisation, never a
    reason to fail a request.
    """

    def __init__(self, gh_executable: str = "gh", timeout: int = 10) -> None:
        self._gh = shutil.which(gh_executable) or gh_executable
        self._timeout = timeout

    async def linked_issues(self, owner: str, repo: str, pr_number: int) -> list[int]:
        cmd = [
            self._gh, "api", "graphql",
            "-f", f"query={LINKED_ISSUES_QUERY}",
            "-F", f"owner={owner}",
            "-F", f"repo={repo}",
            "-F", f"pr={pr_number}",
        ]
        logger.debug("Querying linked issues for %s/%s#%d", owner, repo, pr_number)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Could not run %s: %s", self._gh, e)
            return []

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Linked-issue query for %s/%s#%d timed out", owner, repo, pr_number)
            return []

        if process.returncode != 0:
            logger.warning(
                "Linked-issue query for %s/%s#%d failed: %s",
                owner,
                repo,
                pr_number,
                stderr.decode("utf-8", errors="replace").strip(),
            )
            return []

        return parse_linked_issues(stdout.decode("utf-8", errors="replace"))


def parse_linked_issues(output: str) -> list[int]:
    try:
        payload = json.loads(output)
        nodes = payload["data"]["repository"]["pullRequest"]["closingIssuesReferences"]["nodes"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.warning("Unexpected linked-issue response: %s", e)
        return []
    return [int(node["number"]) for node in nodes if node and "number" in node]
