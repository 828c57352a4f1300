"""Async subprocess client for `claude -p --output-format stream-json`."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from remote_agent.agents.events import AgentEvent, AssistantText, Result, ToolCall
from remote_agent.core.errors import AgentBackendError

logger = logging.getLogger(__name__)

# A single stream-json line can carry a whole file read by a tool.
_STREAM_LIMIT = 16 * 1024 * 1024


class ClaudeCodeBackend:
    """Spawns `claude -p` and yields its stream-json output as typed events."""

    def __init__(
        self,
        claude_executable: str = "claude",
        model: str | None = None,
        permission_mode: str = "bypassPermissions",
        timeout: int = 1800,
    ) -> None:
        resolved = shutil.which(claude_executable)
        self._claude_executable = resolved or claude_executable
        self._model = model
        self._permission_mode = permission_mode
        self._timeout = timeout

    def build_command(self, resume_token: str | None = None) -> list[str]:
        cmd = [
            self._claude_executable,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", self._permission_mode,
        ]
        if self._model:
            cmd.extend(["--model", self._model])
        if resume_token:
            cmd.extend(["--resume", resume_token])
        return cmd

    async def send_query(
        self, prompt: str, cwd: str, resume_token: str | None = None
    ) -> AsyncIterator[AgentEvent]:
        """Run a prompt and yield events as the CLI emits them.

        The prompt is passed via stdin. The subprocess is killed if the
        consumer stops early or the overall timeout expires.

        Raises:
            AgentBackendError: On a missing executable or cwd, a timeout,
                a non-zero exit, or an error result.
        """
        cmd = self.build_command(resume_token)
        logger.debug("Running: %s (cwd=%s)", " ".join(cmd), cwd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError:
            if not Path(cwd).is_dir():
                raise AgentBackendError(f"Working directory does not exist: {cwd}")
            raise AgentBackendError(
                f"'{self._claude_executable}' not found.\n"
                "  - Install Claude Code: https://docs.anthropic.com/en/docs/claude-code\n"
                "  - Or set a custom path:  REMOTE_AGENT_AGENT__CLAUDE_EXECUTABLE=/path/to/claude"
            )

        assert proc.stdin is not None and proc.stdout is not None and proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        result_seen = False
        event_count = 0

        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                line = await asyncio.wait_for(proc.stdout.readline(), remaining)
                if not line:
                    break
                for event in parse_stream_line(line.decode("utf-8", errors="replace")):
                    event_count += 1
                    if isinstance(event, Result):
                        result_seen = True
                    yield event

            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        except asyncio.TimeoutError:
            raise AgentBackendError(f"claude -p timed out after {self._timeout}s")
        except (BrokenPipeError, ConnectionResetError) as e:
            raise AgentBackendError(f"claude -p closed its input early: {e}")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)

        logger.debug("claude -p exited %s after %d events", returncode, event_count)

        if returncode != 0 and not result_seen:
            raise AgentBackendError(
                f"claude -p exited with code {returncode}: {stderr}",
                returncode=returncode,
                stderr=stderr,
            )
        if not result_seen:
            raise AgentBackendError(
                "claude -p ended without a result", returncode=returncode, stderr=stderr
            )


def parse_stream_line(line: str) -> list[AgentEvent]:
    """Translate one stream-json line into zero or more events.

    Raises:
        AgentBackendError: If the line is a result flagged ``is_error``.
    """
    line = line.strip()
    if not line:
        return []
    try:
        data: dict[str, Any] = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON output line: %.200s", line)
        return []

    kind = data.get("type")
    if kind == "assistant":
        events: list[AgentEvent] = []
        for block in data.get("message", {}).get("content", []) or []:
            if block.get("type") == "text" and block.get("text", "").strip():
                events.append(AssistantText(block["text"]))
            elif block.get("type") == "tool_use":
                events.append(ToolCall(block.get("name", "unknown"), block.get("input") or {}))
        return events

    if kind == "result":
        if data.get("is_error"):
            raise AgentBackendError(
                f"claude -p reported error: {data.get('result') or data.get('subtype', '')}"
            )
        return [
            Result(
                resume_token=data.get("session_id"),
                text=data.get("result", "") or "",
                cost_usd=data.get("total_cost_usd", data.get("cost_usd", 0.0)) or 0.0,
                num_turns=data.get("num_turns", 0) or 0,
            )
        ]

    return []
