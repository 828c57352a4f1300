"""Slash-command parsing, prompt templating and deterministic command dispatch.

Deterministic commands only touch durable state and return text; they never
invoke the agent. Agent-directed commands (``/command-invoke`` and global
templates) are turned into prompts here and executed by the orchestrator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from remote_agent.core.sessions import SessionManager
from remote_agent.core.worktrees import WorktreeManager
from remote_agent.state.manager import StateManager
from remote_agent.state.models import CommandDefinition, ConversationRecord, MessageRecord

logger = logging.getLogger(__name__)

DETERMINISTIC_COMMANDS = frozenset(
    {
        "help",
        "status",
        "getcwd",
        "setcwd",
        "commands",
        "load-commands",
        "command-set",
        "template-add",
        "template-list",
        "templates",
        "template-delete",
        "reset",
        "reset-context",
        "resume",
        "worktree",
    }
)

COMMAND_FOLDERS = (".claude/commands", ".agents/commands")

ROUTER_TEMPLATE = "router"

_TOKEN_RE = re.compile(r'"[^"]+"|\'[^\']+\'|\S+')
_POSITIONAL_RE = re.compile(r"\$([1-9])")
_FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n---", re.DOTALL)
_DESCRIPTION_RE = re.compile(r"description:\s*(.+)")

HELP_TEXT = """Available Commands:

Command Templates (global):
  /<name> [args] - Invoke a template directly
  /templates - List all templates
  /template-add <name> <path> - Add template from file
  /template-delete <name> - Remove a template

Codebase Commands (per-project):
  /command-set <name> <path> [text] - Register command
  /load-commands <folder> - Bulk load (recursive)
  /command-invoke <name> [args] - Execute
  /commands - List registered

Working Directory:
  /getcwd - Show working directory
  /setcwd <path> - Set directory (resets the session)
  /worktree list - Show worktrees for this repo

Session:
  /status - Show state
  /reset - Clear session
  /reset-context - Reset AI context, keep worktree
  /resume - Start a new session seeded with recent history
  /help - Show help"""


@dataclass
class CommandResult:
    success: bool
    message: str


def parse_command(text: str) -> tuple[str, list[str]]:
    """Split ``/name arg "quoted arg"`` into the command name and its arguments."""
    tokens = _TOKEN_RE.findall(text.strip())
    if not tokens:
        return "", []
    command = tokens[0].lstrip("/")
    args = [
        t[1:-1] if len(t) >= 2 and t[0] == t[-1] and t[0] in "\"'" else t
        for t in tokens[1:]
    ]
    return command, args


def substitute_variables(text: str, args: list[str]) -> str:
    """Replace ``$ARGUMENTS``/``$@`` with all args and ``$1``..``$9`` with each one.

    Positional references beyond the supplied args become empty strings.
    """
    joined = " ".join(args)
    text = text.replace("$ARGUMENTS", joined).replace("$@", joined)

    def positional(match: re.Match[str]) -> str:
        index = int(match.group(1)) - 1
        return args[index] if index < len(args) else ""

    return _POSITIONAL_RE.sub(positional, text)


def wrap_command_for_execution(command_name: str, content: str) -> str:
    return (
        f"The user invoked the `/{command_name}` command. "
        "Execute the following instructions immediately without asking for confirmation:\n\n"
        f"---\n\n{content}\n\n---\n\n"
        "Remember: The user already decided to run this command. Take action now."
    )


def read_description(content: str, fallback: str) -> str:
    match = _FRONTMATTER_RE.match(content)
    if match:
        desc = _DESCRIPTION_RE.search(match.group(1))
        if desc:
            return desc.group(1).strip()
    return fallback


def find_markdown_commands(base: Path, folder: str) -> dict[str, CommandDefinition]:
    """Recursively register ``*.md`` files under ``base/folder`` by file stem.

    Hidden directories are skipped. Later files override earlier ones with
    the same name.
    """
    root = base / folder
    commands: dict[str, CommandDefinition] = {}
    if not root.is_dir():
        return commands
    for path in sorted(root.rglob("*.md")):
        relative = path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Skipping unreadable command file %s: %s", path, e)
            continue
        commands[path.stem] = CommandDefinition(
            path=(Path(folder) / relative).as_posix(),
            description=read_description(content, f"From {folder}"),
        )
    return commands


def discover_commands(repo_path: Path | str) -> dict[str, CommandDefinition]:
    """Collect command files from the conventional command folders of a repository."""
    commands: dict[str, CommandDefinition] = {}
    for folder in COMMAND_FOLDERS:
        commands.update(find_markdown_commands(Path(repo_path), folder))
    if commands:
        logger.info("Discovered %d commands in %s", len(commands), repo_path)
    return commands


def format_history(messages: list[MessageRecord]) -> str:
    lines = ["## Previous Conversation History", ""]
    for msg in messages:
        lines.append(f"**{msg.sender.capitalize()}** ({msg.created_at}):")
        lines.append(msg.content)
        lines.append("")
    return "\n".join(lines).rstrip()


def is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


class CommandHandler:
    """Dispatch deterministic slash commands against durable state."""

    def __init__(
        self,
        state: StateManager,
        sessions: SessionManager,
        worktrees: WorktreeManager,
        workspace_path: Path,
        history_limit: int = 50,
    ) -> None:
        self._state = state
        self._sessions = sessions
        self._worktrees = worktrees
        self._workspace = Path(workspace_path)
        self._history_limit = history_limit

    def handle(self, conversation: ConversationRecord, message: str) -> CommandResult:
        command, args = parse_command(message)
        handler = getattr(self, "_cmd_" + command.replace("-", "_"), None)
        if command not in DETERMINISTIC_COMMANDS or handler is None:
            return CommandResult(False, f"Unknown command: /{command}")
        logger.info("Processing /%s for conversation %s", command, conversation.id)
        return handler(conversation, args)

    def _base_path(self, conversation: ConversationRecord) -> Path:
        return Path(conversation.cwd) if conversation.cwd else self._workspace

    # -- Info ---------------------------------------------------------------

    def _cmd_help(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        return CommandResult(True, HELP_TEXT)

    def _cmd_status(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        msg = f"Platform: {conversation.platform_type}"

        codebase = self._state.get_codebase(conversation.codebase_id) if conversation.codebase_id else None
        if codebase is None and conversation.cwd:
            codebase = self._state.find_codebase_by_default_cwd(conversation.cwd)
            if codebase is not None:
                self._state.update_conversation(conversation.id, codebase_id=codebase.id)
                logger.info("Auto-linked codebase %s to conversation %s", codebase.name, conversation.id)

        if codebase is not None:
            msg += f"\n\nCodebase: {codebase.name}"
            if codebase.repository_url:
                msg += f"\nRepository: {codebase.repository_url}"
        else:
            msg += "\n\nNo codebase configured."

        msg += f"\n\nCurrent Working Directory: {conversation.cwd or 'Not set'}"
        if conversation.worktree_path:
            stale = "" if self._worktrees.is_worktree(conversation.worktree_path) else " (missing)"
            msg += f"\nWorktree: {conversation.worktree_path}{stale}"

        session = self._sessions.get_active(conversation.id)
        if session is not None:
            msg += f"\nActive Session: {session.id[:8]}..."
            if session.metadata.last_command:
                msg += f"\nLast Command: /{session.metadata.last_command}"
        return CommandResult(True, msg)

    def _cmd_getcwd(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        return CommandResult(True, f"Current working directory: {conversation.cwd or 'Not set'}")

    def _cmd_setcwd(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if not args:
            return CommandResult(False, "Usage: /setcwd <path>")
        new_cwd = (self._base_path(conversation) / " ".join(args)).resolve()
        if not is_within(new_cwd, self._workspace):
            return CommandResult(False, f"Path must be within {self._workspace} directory")
        if not new_cwd.is_dir():
            return CommandResult(False, f"Directory does not exist: {new_cwd}")

        self._state.update_conversation(conversation.id, cwd=str(new_cwd))
        self._sessions.reset(conversation.id)
        return CommandResult(
            True,
            f"Working directory set to: {new_cwd}\n\nSession reset - starting fresh on next message.",
        )

    # -- Codebase commands --------------------------------------------------

    def _cmd_commands(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if not conversation.codebase_id:
            return CommandResult(False, "No codebase configured.")
        codebase = self._state.get_codebase(conversation.codebase_id)
        commands = codebase.commands if codebase else {}
        if not commands:
            return CommandResult(True, "No commands registered.\n\nUse /command-set or /load-commands.")
        lines = ["Registered Commands:", ""]
        lines.extend(f"{name} - {cmd.path}" for name, cmd in sorted(commands.items()))
        return CommandResult(True, "\n".join(lines))

    def _cmd_command_set(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if len(args) < 2:
            return CommandResult(False, "Usage: /command-set <name> <path> [text]")
        if not conversation.codebase_id:
            return CommandResult(False, "No codebase configured.")

        name, rel_path, *text_parts = args
        full_path = self._base_path(conversation) / rel_path
        if not is_within(full_path, self._workspace):
            return CommandResult(False, f"Path must be within {self._workspace} directory")

        text = " ".join(text_parts)
        try:
            if text:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                full_path.write_text(text, encoding="utf-8")
            elif not full_path.is_file():
                return CommandResult(False, f"Failed: {rel_path} does not exist")
        except OSError as e:
            logger.error("command-set failed: %s", e)
            return CommandResult(False, f"Failed: {e}")

        self._state.register_command(
            conversation.codebase_id,
            name,
            CommandDefinition(path=rel_path, description=f"Custom: {name}"),
        )
        return CommandResult(True, f"Command '{name}' registered!\nPath: {rel_path}")

    def _cmd_load_commands(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if not args:
            return CommandResult(False, "Usage: /load-commands <folder>")
        if not conversation.codebase_id:
            return CommandResult(False, "No codebase configured.")

        folder = " ".join(args)
        base = self._base_path(conversation)
        if not is_within(base / folder, self._workspace):
            return CommandResult(False, f"Path must be within {self._workspace} directory")

        found = find_markdown_commands(base, folder)
        if not found:
            return CommandResult(False, f"No .md files found in {folder} (searched recursively)")

        codebase = self._state.get_codebase(conversation.codebase_id)
        commands = dict(codebase.commands) if codebase else {}
        commands.update(found)
        self._state.update_codebase_commands(conversation.codebase_id, commands)
        return CommandResult(
            True, f"Loaded {len(found)} commands recursively: {', '.join(sorted(found))}"
        )

    # -- Global templates ---------------------------------------------------

    def _cmd_template_add(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if len(args) < 2:
            return CommandResult(False, "Usage: /template-add <name> <file-path>")
        if not conversation.cwd:
            return CommandResult(False, "No working directory set. Use /setcwd first.")

        name, *path_parts = args
        file_path = " ".join(path_parts)
        try:
            content = (Path(conversation.cwd) / file_path).read_text(encoding="utf-8")
        except OSError as e:
            return CommandResult(False, f"Failed to read file: {e}")

        self._state.upsert_template(name, content, read_description(content, f"From {file_path}"))
        return CommandResult(True, f"Template '{name}' saved!\n\nUse it with: /{name} [args]")

    def _cmd_templates(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        templates = self._state.list_templates()
        if not templates:
            return CommandResult(
                True,
                "No command templates registered.\n\nUse /template-add <name> <file-path> to add one.",
            )
        lines = ["Command Templates:", ""]
        for t in templates:
            lines.append(f"/{t.name} - {t.description}" if t.description else f"/{t.name}")
        lines.extend(["", "Use /<name> [args] to invoke any template."])
        return CommandResult(True, "\n".join(lines))

    _cmd_template_list = _cmd_templates

    def _cmd_template_delete(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if not args:
            return CommandResult(False, "Usage: /template-delete <name>")
        if self._state.delete_template(args[0]):
            return CommandResult(True, f"Template '{args[0]}' deleted.")
        return CommandResult(False, f"Template '{args[0]}' not found.")

    # -- Sessions -----------------------------------------------------------

    def _cmd_reset(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if self._sessions.reset(conversation.id):
            return CommandResult(
                True,
                "Session cleared. Starting fresh on next message.\n\nCodebase configuration preserved.",
            )
        return CommandResult(True, "No active session to reset.")

    def _cmd_reset_context(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if self._sessions.reset(conversation.id):
            return CommandResult(
                True,
                "AI context reset. Your next message will start a fresh conversation "
                "while keeping your current working directory.",
            )
        return CommandResult(True, "No active session to reset.")

    def _cmd_resume(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        history = self._state.get_message_history(conversation.id, self._history_limit)
        if not history:
            return CommandResult(True, "📜 No previous messages found. Starting fresh!")

        self._sessions.request_resume(conversation, format_history(history), len(history))

        by_sender: dict[str, int] = {}
        for msg in history:
            by_sender[msg.sender] = by_sender.get(msg.sender, 0) + 1
        lines = [
            f"📜 Loaded last {len(history)} messages from conversation history.",
            "",
            "📊 Breakdown:",
            f"  - {by_sender.get('user', 0)} user messages",
            f"  - {by_sender.get('assistant', 0)} assistant responses",
            "",
            "Context is now active. Your next message will include this history!",
        ]
        return CommandResult(True, "\n".join(lines))

    # -- Worktrees ----------------------------------------------------------

    def _cmd_worktree(self, conversation: ConversationRecord, args: list[str]) -> CommandResult:
        if not args or args[0] != "list":
            return CommandResult(False, "Usage: /worktree list")
        if not conversation.codebase_id:
            return CommandResult(False, "No codebase configured.")
        codebase = self._state.get_codebase(conversation.codebase_id)
        if codebase is None:
            return CommandResult(False, "Codebase not found.")

        worktrees = self._worktrees.list(codebase.default_cwd)
        if not worktrees:
            return CommandResult(False, "Failed to list worktrees.")

        active = Path(conversation.worktree_path).resolve() if conversation.worktree_path else None
        lines = ["Worktrees:", ""]
        for wt in worktrees:
            label = wt.branch or f"(detached {wt.head[:7] if wt.head else '?'})"
            marker = " <- active" if active is not None and wt.path.resolve() == active else ""
            lines.append(f"{wt.path} [{label}]{marker}")
        return CommandResult(True, "\n".join(lines))
