"""Rich output helpers for the operator CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from remote_agent import __version__

if TYPE_CHECKING:
    from remote_agent.core.lifecycle import TeardownOutcome
    from remote_agent.core.worktrees import WorktreeInfo
    from remote_agent.state.models import CodebaseRecord, SessionRecord

console = Console()


def get_version_string() -> str:
    return f"remote-agent {__version__}"


def print_error(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    console.print(f"[bold green]{message}[/bold green]")


def print_agent_message(conversation_id: str, message: str) -> None:
    """Render one message the agent delivered to a conversation."""
    if message.startswith("🔧"):
        console.print(f"[dim]{message}[/dim]")
        return
    console.print(Panel(Markdown(message), title=conversation_id, border_style="cyan"))


def print_codebases(codebases: list[CodebaseRecord]) -> None:
    if not codebases:
        console.print("[dim]No codebases registered.[/dim]")
        return
    table = Table(title="Codebases", border_style="blue")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Path")
    table.add_column("Repository")
    table.add_column("Commands", justify="right")
    for cb in codebases:
        table.add_row(
            cb.id[:8],
            cb.name,
            cb.default_cwd,
            cb.repository_url or "[dim]-[/dim]",
            str(len(cb.commands)),
        )
    console.print(table)


def print_worktrees(worktrees: list[WorktreeInfo]) -> None:
    if not worktrees:
        console.print("[dim]No worktrees found.[/dim]")
        return
    table = Table(title="Worktrees", border_style="blue")
    table.add_column("Path")
    table.add_column("Branch")
    table.add_column("HEAD", style="dim")
    for wt in worktrees:
        branch = wt.branch or "[yellow]detached[/yellow]"
        if wt.is_main:
            branch += " [dim](main)[/dim]"
        table.add_row(str(wt.path), branch, (wt.head or "")[:7])
    console.print(table)


def print_sessions(sessions: list[SessionRecord]) -> None:
    if not sessions:
        console.print("[dim]No sessions found.[/dim]")
        return
    table = Table(title="Sessions", border_style="blue")
    table.add_column("ID", style="dim")
    table.add_column("Conversation", style="dim")
    table.add_column("Active")
    table.add_column("Resume Token")
    table.add_column("Last Command")
    table.add_column("Started")
    table.add_column("Ended")
    for s in sessions:
        table.add_row(
            s.id[:8],
            s.conversation_id[:8],
            "[green]yes[/green]" if s.active else "[dim]no[/dim]",
            s.resume_token or "[dim]-[/dim]",
            s.metadata.last_command or "[dim]-[/dim]",
            s.started_at[:19],
            (s.ended_at or "")[:19],
        )
    console.print(table)


def print_teardown(outcome: TeardownOutcome) -> None:
    status = outcome.status.value.replace("_", " ")
    path = f" ({outcome.path})" if outcome.path else ""
    console.print(f"Teardown: [bold]{status}[/bold]{path}")
    if outcome.remaining_referents:
        console.print(f"  Still referenced by {outcome.remaining_referents} conversation(s)")
