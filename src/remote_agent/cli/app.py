"""Typer CLI commands: ask, issue, close, codebase, worktrees, sessions, config, version."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from remote_agent.cli.display import (
    console,
    get_version_string,
    print_codebases,
    print_error,
    print_sessions,
    print_success,
    print_teardown,
    print_worktrees,
)

app = typer.Typer(
    name="remote-agent",
    help="Drive a remote AI coding agent from chat and issue surfaces.",
    no_args_is_help=True,
)
codebase_app = typer.Typer(help="Manage registered codebases.", no_args_is_help=True)
app.add_typer(codebase_app, name="codebase")


def configure_logging(level: str) -> None:
    """Configure root logging for the CLI."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _version_callback(value: bool) -> None:
    if value:
        console.print(get_version_string())
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Drive a remote AI coding agent from chat and issue surfaces."""


def _load(db_path: Optional[Path]):
    from remote_agent.config.loader import load_settings

    overrides: dict = {}
    if db_path:
        overrides.setdefault("storage", {})["db_path"] = str(db_path)
    settings = load_settings(overrides=overrides)
    configure_logging(settings.log_level)
    return settings


def _parse_target(reference: str, is_pull_request: bool, head_ref: Optional[str], head_sha: Optional[str]):
    from remote_agent.core.lifecycle import WorkTarget
    from remote_agent.integrations.github import parse_conversation_id

    try:
        ref = parse_conversation_id(reference)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)
    return WorkTarget(
        owner=ref.owner,
        repo=ref.repo,
        number=ref.number,
        is_pull_request=is_pull_request,
        head_ref=head_ref,
        head_sha=head_sha,
    )


@app.command()
def ask(
    message: str = typer.Argument(..., help="Message or /command to send"),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Repository the conversation works in"),
    conversation: str = typer.Option("local", "--conversation", "-c", help="Conversation id"),
    batch: bool = typer.Option(False, "--batch", help="Deliver one consolidated message"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """Send a message to a conversation bound to a local repository."""
    from remote_agent.cli.surface import ConsoleSurface
    from remote_agent.core.orchestrator import Orchestrator
    from remote_agent.core.streaming import StreamingMode

    settings = _load(db_path)
    orchestrator = Orchestrator(settings)
    surface = ConsoleSurface(mode=StreamingMode.BATCH if batch else StreamingMode.STREAM)

    codebase = orchestrator.ensure_codebase(repo)
    record = orchestrator.state.get_or_create_conversation(surface.platform_type, conversation)
    orchestrator.link_codebase(record, codebase)

    asyncio.run(orchestrator.handle_message(surface, conversation, message))


@app.command()
def issue(
    reference: str = typer.Argument(..., help="Issue or PR as owner/repo#number"),
    message: str = typer.Argument(..., help="Request for the agent"),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Canonical clone of the repository"),
    pr: bool = typer.Option(False, "--pr", help="The reference is a pull request"),
    head_ref: Optional[str] = typer.Option(None, "--head-ref", help="PR head branch"),
    head_sha: Optional[str] = typer.Option(None, "--head-sha", help="PR head commit"),
    batch: bool = typer.Option(False, "--batch", help="Deliver one consolidated message"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """Run a request on an issue or PR inside its own worktree."""
    from remote_agent.cli.surface import ConsoleSurface
    from remote_agent.core.orchestrator import Orchestrator
    from remote_agent.core.streaming import StreamingMode
    from remote_agent.integrations.github import PLATFORM_TYPE

    target = _parse_target(reference, pr, head_ref, head_sha)
    settings = _load(db_path)
    orchestrator = Orchestrator(settings)
    surface = ConsoleSurface(
        platform_type=PLATFORM_TYPE,
        mode=StreamingMode.BATCH if batch else StreamingMode.STREAM,
    )
    repo_url = f"https://github.com/{target.owner}/{target.repo}"
    codebase = orchestrator.ensure_codebase(repo, repository_url=repo_url, name=target.repo)

    asyncio.run(orchestrator.handle_issue_request(surface, target, message, codebase))


@app.command()
def close(
    reference: str = typer.Argument(..., help="Issue or PR as owner/repo#number"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """Handle a close/merge event: release the worktree and end the session."""
    from remote_agent.cli.surface import ConsoleSurface
    from remote_agent.core.orchestrator import Orchestrator
    from remote_agent.integrations.github import PLATFORM_TYPE

    target = _parse_target(reference, False, None, None)
    settings = _load(db_path)
    orchestrator = Orchestrator(settings)
    surface = ConsoleSurface(platform_type=PLATFORM_TYPE)

    outcome = asyncio.run(orchestrator.handle_close(surface, target))
    if outcome is None:
        raise typer.Exit(1)
    print_teardown(outcome)


@codebase_app.command("add")
def codebase_add(
    path: Path = typer.Argument(..., help="Path to the canonical clone"),
    url: Optional[str] = typer.Option(None, "--url", help="Remote repository URL"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """Register a repository and discover its command files."""
    from remote_agent.core.orchestrator import Orchestrator

    if not path.is_dir():
        print_error(f"Not a directory: {path}")
        raise typer.Exit(1)
    orchestrator = Orchestrator(_load(db_path))
    codebase = orchestrator.ensure_codebase(path, repository_url=url, name=name)
    print_success(f"Codebase '{codebase.name}' registered ({len(codebase.commands)} commands)")


@codebase_app.command("list")
def codebase_list(
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """List registered codebases."""
    from remote_agent.state.manager import StateManager

    settings = _load(db_path)
    print_codebases(StateManager(settings.storage.db_path).list_codebases())


@app.command()
def worktrees(
    repo: Path = typer.Argument(Path.cwd(), help="Repository to inspect"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """List git worktrees of a repository."""
    from remote_agent.core.worktrees import WorktreeManager

    settings = _load(db_path)
    manager = WorktreeManager(settings.workspace.worktree_base, settings.git.timeout)
    print_worktrees(manager.list(repo))


@app.command()
def sessions(
    active: bool = typer.Option(False, "--active", help="Only active sessions"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
    db_path: Optional[Path] = typer.Option(None, "--db-path", help="Override state DB path"),
) -> None:
    """Show recent agent sessions."""
    from remote_agent.state.manager import StateManager

    settings = _load(db_path)
    print_sessions(StateManager(settings.storage.db_path).list_sessions(active_only=active, limit=limit))


@app.command()
def config(
    path: Path = typer.Option(Path.cwd(), "--path", "-p", help="Directory to search for a config file"),
) -> None:
    """Show current configuration."""
    from remote_agent.config.loader import find_config_file, load_settings

    settings = load_settings(start_dir=path)
    config_file = find_config_file(path)
    if config_file:
        console.print(f"Config file: [cyan]{config_file}[/cyan]")
    else:
        console.print("[dim]No config file found (using defaults)[/dim]")

    console.print("\n[bold]Storage:[/bold]")
    console.print(f"  DB path: {settings.storage.db_path}")
    console.print("\n[bold]Workspace:[/bold]")
    console.print(f"  Path: {settings.workspace.path}")
    console.print(f"  Worktree base: {settings.workspace.worktree_base or '[dim]<repo>/../worktrees[/dim]'}")
    console.print("\n[bold]Agent:[/bold]")
    console.print(f"  Executable: {settings.agent.claude_executable}")
    console.print(f"  Model: {settings.agent.model or '[dim]default[/dim]'}")
    console.print(f"  Timeout: {settings.agent.timeout}s")
    console.print("\n[bold]Delivery:[/bold]")
    console.print(f"  Retry attempts: {settings.delivery.retry_attempts}")
    console.print(f"  Bot name: {settings.delivery.bot_display_name}")
    console.print("\n[bold]Phase transitions:[/bold]")
    for second, firsts in settings.sessions.phase_transitions.items():
        console.print(f"  {second} <- {', '.join(firsts)}")


@app.command()
def version() -> None:
    """Show version."""
    console.print(get_version_string())
