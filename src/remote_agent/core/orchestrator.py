"""Orchestrator: the single entry point for inbound requests.

Each call resolves the conversation, its codebase, working directory and
session, invokes the agent backend and drains its events through the
surface's delivery mode. All cross-request state lives in the state DB.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from remote_agent.agents.backend import AgentBackend
from remote_agent.agents.claude_code_client import ClaudeCodeBackend
from remote_agent.agents.events import AgentEvent, AssistantText, Result, ToolCall
from remote_agent.config.settings import RemoteAgentSettings
from remote_agent.core.commands import (
    DETERMINISTIC_COMMANDS,
    ROUTER_TEMPLATE,
    CommandHandler,
    discover_commands,
    parse_command,
    substitute_variables,
    wrap_command_for_execution,
)
from remote_agent.core.delivery import Surface, deliver
from remote_agent.core.errors import WorktreeCreateError, WorktreeError, classify_error
from remote_agent.core.lifecycle import (
    AttachAction,
    TeardownOutcome,
    TeardownStatus,
    WorkTarget,
    WorktreeLifecycle,
)
from remote_agent.core.sessions import SessionManager, SessionTransition
from remote_agent.core.streaming import StreamingMode, consolidate_batch, format_tool_call
from remote_agent.core.worktrees import WorktreeManager
from remote_agent.integrations.github import GhLinkedIssueResolver, LinkedIssueResolver
from remote_agent.state.manager import StateManager
from remote_agent.state.models import CodebaseRecord, ConversationRecord

logger = logging.getLogger(__name__)

NO_CODEBASE_MESSAGE = "No codebase configured. Register a repository for this conversation first."


@dataclass
class PreparedPrompt:
    prompt: str
    command_name: str | None = None


class Orchestrator:
    """Route inbound messages to deterministic commands or the agent backend."""

    def __init__(
        self,
        settings: RemoteAgentSettings,
        state_manager: StateManager | None = None,
        backend: AgentBackend | None = None,
        linked_issues: LinkedIssueResolver | None = None,
    ) -> None:
        self._settings = settings
        self._state = state_manager or StateManager(settings.storage.db_path)
        self._backend = backend or ClaudeCodeBackend(
            claude_executable=settings.agent.claude_executable,
            model=settings.agent.model,
            permission_mode=settings.agent.permission_mode,
            timeout=settings.agent.timeout,
        )
        self._worktrees = WorktreeManager(settings.workspace.worktree_base, settings.git.timeout)
        self._sessions = SessionManager(self._state, settings.sessions.phase_transitions)
        self._lifecycle = WorktreeLifecycle(
            self._state,
            self._worktrees,
            self._sessions,
            linked_issues
            or GhLinkedIssueResolver(settings.github.gh_executable, settings.github.timeout),
        )
        self._commands = CommandHandler(
            self._state,
            self._sessions,
            self._worktrees,
            settings.workspace.path,
            settings.sessions.history_limit,
        )

    @property
    def state(self) -> StateManager:
        return self._state

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def lifecycle(self) -> WorktreeLifecycle:
        return self._lifecycle

    # -- Codebases ----------------------------------------------------------

    def ensure_codebase(
        self,
        repo_path: Path | str,
        repository_url: str | None = None,
        name: str | None = None,
    ) -> CodebaseRecord:
        """Return the codebase for a repository, registering it on first reference."""
        repo_path = self._worktrees.canonical_repo_path(Path(repo_path).resolve())
        existing = None
        if repository_url:
            existing = self._state.find_codebase_by_repository_url(repository_url)
        if existing is None:
            existing = self._state.find_codebase_by_default_cwd(str(repo_path))
        if existing is not None:
            return existing

        codebase = self._state.create_codebase(
            name=name or repo_path.name,
            default_cwd=str(repo_path),
            repository_url=repository_url,
            commands=discover_commands(repo_path),
        )
        logger.info("Registered codebase %s at %s", codebase.name, repo_path)
        return codebase

    def link_codebase(self, conversation: ConversationRecord, codebase: CodebaseRecord) -> ConversationRecord:
        if conversation.codebase_id == codebase.id:
            return conversation
        self._state.update_conversation(
            conversation.id,
            codebase_id=codebase.id,
            cwd=conversation.cwd or codebase.default_cwd,
        )
        linked = self._state.get_conversation(conversation.id)
        assert linked is not None
        return linked

    # -- Entry points -------------------------------------------------------

    async def handle_message(
        self,
        surface: Surface,
        conversation_id: str,
        message: str,
        issue_context: str | None = None,
        thread_context: str | None = None,
        parent_conversation_id: str | None = None,
    ) -> None:
        """Handle one inbound message. Never raises; failures are reported to the surface."""
        try:
            logger.info("Handling message for conversation %s", conversation_id)
            conversation = self._state.get_or_create_conversation(
                surface.platform_type, conversation_id, parent_conversation_id
            )

            if message.startswith("/"):
                command, _ = parse_command(message)
                if command in DETERMINISTIC_COMMANDS:
                    result = self._commands.handle(conversation, message)
                    if not result.success:
                        logger.warning("/%s rejected for %s: %s", command, conversation_id, result.message)
                    await self._send(surface, conversation_id, result.message)
                    return

            prepared = await self._prepare_prompt(surface, conversation_id, conversation, message, issue_context)
            if prepared is None:
                return

            prompt = prepared.prompt
            if thread_context:
                prompt = (
                    f"## Thread Context (previous messages)\n\n{thread_context}\n\n---\n\n"
                    f"## Current Request\n\n{prompt}"
                )

            await self._run_agent(
                surface, conversation_id, conversation, prompt, prepared.command_name, message
            )
        except Exception as e:
            logger.exception("Request for conversation %s failed", conversation_id)
            await self._send(surface, conversation_id, classify_error(e))

    async def handle_issue_request(
        self,
        surface: Surface,
        target: WorkTarget,
        message: str,
        codebase: CodebaseRecord,
        issue_context: str | None = None,
    ) -> None:
        """Handle a request on an issue or PR, isolating it in a worktree first.

        If the worktree cannot be created the user is told which branch was
        attempted and the agent is not invoked.
        """
        conversation_id = target.conversation_id
        try:
            conversation = self._state.get_or_create_conversation(
                surface.platform_type, conversation_id
            )
            conversation = self.link_codebase(conversation, codebase)
            try:
                outcome = await self._lifecycle.ensure_worktree(conversation, codebase, target)
            except WorktreeCreateError as e:
                logger.error("Worktree creation for %s failed: %s", conversation_id, e)
                await self._send(
                    surface,
                    conversation_id,
                    f"⚠️ Could not create an isolated worktree on branch `{e.branch}`. "
                    "The request was not started.",
                )
                return
            if outcome.action is AttachAction.SHARED:
                logger.info(
                    "Conversation %s shares worktree %s with issue #%s",
                    conversation_id,
                    outcome.path,
                    outcome.shared_with,
                )
        except Exception as e:
            logger.exception("Preparing %s failed", conversation_id)
            await self._send(surface, conversation_id, classify_error(e))
            return

        await self.handle_message(surface, conversation_id, message, issue_context=issue_context)

    async def handle_close(self, surface: Surface, target: WorkTarget) -> TeardownOutcome | None:
        """Release the closing issue's worktree, removing it once no one references it."""
        conversation_id = target.conversation_id
        conversation = self._state.get_conversation_by_platform_id(
            surface.platform_type, conversation_id
        )
        if conversation is None:
            return TeardownOutcome(TeardownStatus.NO_WORKTREE)

        codebase = self._state.get_codebase(conversation.codebase_id) if conversation.codebase_id else None
        try:
            outcome = await self._lifecycle.teardown(conversation, codebase)
        except WorktreeError as e:
            logger.error("Teardown for %s failed: %s", conversation_id, e)
            await self._send(surface, conversation_id, classify_error(e))
            return None

        logger.info("Closed %s: %s", conversation_id, outcome.status.value)
        if outcome.warning:
            await self._send(surface, conversation_id, outcome.warning)
        return outcome

    # -- Prompt assembly ----------------------------------------------------

    async def _prepare_prompt(
        self,
        surface: Surface,
        conversation_id: str,
        conversation: ConversationRecord,
        message: str,
        issue_context: str | None,
    ) -> PreparedPrompt | None:
        """Turn a message into the agent prompt, or reply and return None."""
        codebase = self._state.get_codebase(conversation.codebase_id) if conversation.codebase_id else None

        if message.startswith("/"):
            command, args = parse_command(message)
            if command == "command-invoke":
                prepared = await self._load_codebase_command(
                    surface, conversation_id, conversation, codebase, args
                )
            else:
                template = self._state.get_template(command)
                if template is None:
                    await self._send(
                        surface,
                        conversation_id,
                        f"Unknown command: /{command}\n\n"
                        "Type /help for available commands or /templates for command templates.",
                    )
                    return None
                logger.info("Executing template '%s' with %d args", command, len(args))
                prepared = PreparedPrompt(
                    wrap_command_for_execution(command, substitute_variables(template.content, args)),
                    command,
                )
        else:
            if codebase is None:
                await self._send(surface, conversation_id, NO_CODEBASE_MESSAGE)
                return None
            router = self._state.get_template(ROUTER_TEMPLATE)
            if router is not None:
                logger.debug("Routing through the %s template", ROUTER_TEMPLATE)
                prepared = PreparedPrompt(substitute_variables(router.content, [message]), ROUTER_TEMPLATE)
            else:
                prepared = PreparedPrompt(message)

        if prepared is not None and issue_context:
            prepared.prompt = f"{prepared.prompt}\n\n---\n\n{issue_context}"
        return prepared

    async def _load_codebase_command(
        self,
        surface: Surface,
        conversation_id: str,
        conversation: ConversationRecord,
        codebase: CodebaseRecord | None,
        args: list[str],
    ) -> PreparedPrompt | None:
        if not args:
            await self._send(surface, conversation_id, "Usage: /command-invoke <name> [args...]")
            return None
        if codebase is None:
            await self._send(surface, conversation_id, NO_CODEBASE_MESSAGE)
            return None

        name, command_args = args[0], args[1:]
        definition = codebase.commands.get(name)
        if definition is None:
            await self._send(
                surface, conversation_id, f"Command '{name}' not found. Use /commands to see available."
            )
            return None

        base = conversation.worktree_path or conversation.cwd or codebase.default_cwd
        try:
            text = (Path(base) / definition.path).read_text(encoding="utf-8")
        except OSError as e:
            await self._send(surface, conversation_id, f"Failed to read command file: {e.strerror or e}")
            return None

        logger.info("Executing '%s' with %d args", name, len(command_args))
        return PreparedPrompt(
            wrap_command_for_execution(name, substitute_variables(text, command_args)), name
        )

    # -- Agent invocation ---------------------------------------------------

    def _resolve_cwd(self, conversation: ConversationRecord, default_cwd: str) -> tuple[ConversationRecord, str]:
        cwd = conversation.worktree_path or conversation.cwd or default_cwd
        stale = not Path(cwd).is_dir() or (
            conversation.worktree_path is not None
            and not self._worktrees.is_worktree(conversation.worktree_path)
        )
        if stale:
            conversation = self._sessions.self_heal(conversation, default_cwd)
            cwd = default_cwd
        return conversation, cwd

    async def _run_agent(
        self,
        surface: Surface,
        conversation_id: str,
        conversation: ConversationRecord,
        prompt: str,
        command_name: str | None,
        user_message: str,
    ) -> None:
        codebase = self._state.get_codebase(conversation.codebase_id) if conversation.codebase_id else None
        default_cwd = codebase.default_cwd if codebase else str(self._settings.workspace.path)
        conversation, cwd = self._resolve_cwd(conversation, default_cwd)

        resolution = self._sessions.resolve(conversation, command_name)
        session = resolution.session
        if resolution.transition is not SessionTransition.RESUMED:
            logger.info("Session %s for %s: %s", session.id, conversation_id, resolution.transition.value)
        resume_token = session.resume_token

        history = self._sessions.consume_resume_context(session)
        if history:
            prompt = f"{history}\n\n---\n\n## Current Request\n\n{prompt}"

        self._state.add_message(conversation.id, "user", user_message)

        mode = surface.get_streaming_mode(conversation_id)
        logger.debug("Streaming mode for %s: %s", conversation_id, mode.value)
        if mode is StreamingMode.BATCH:
            await self._send(
                surface, conversation_id, f"{self._settings.delivery.bot_display_name} is on the case..."
            )

        events: list[AgentEvent] = []
        async for event in self._backend.send_query(prompt, cwd, resume_token):
            events.append(event)
            if isinstance(event, AssistantText):
                if mode is StreamingMode.STREAM:
                    await self._send(surface, conversation_id, event.text)
            elif isinstance(event, ToolCall):
                logger.debug("Tool call: %s", event.name)
                if mode is StreamingMode.STREAM:
                    await self._send(surface, conversation_id, format_tool_call(event.name, event.input))
            elif isinstance(event, Result) and event.resume_token:
                self._sessions.record_resume_token(session, event.resume_token)

        logger.debug("Received %d events for %s", len(events), conversation_id)

        if mode is StreamingMode.BATCH:
            output = consolidate_batch(events)
            await self._send(surface, conversation_id, output)
        else:
            output = "\n\n".join(e.text for e in events if isinstance(e, AssistantText))
        if output:
            self._state.add_message(conversation.id, "assistant", output)

        if command_name:
            self._sessions.record_command(session, command_name)

    async def _send(self, surface: Surface, conversation_id: str, message: str) -> bool:
        return await deliver(
            surface,
            conversation_id,
            message,
            retry_attempts=self._settings.delivery.retry_attempts,
            retry_delay=self._settings.delivery.retry_delay,
        )
