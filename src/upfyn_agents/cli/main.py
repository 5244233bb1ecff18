"""Main CLI for upfyn agents."""

from datetime import UTC, datetime
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..core.agents import all_agent_status, detect_available_agents
from ..core.config import (
    CONFIG_FILENAME,
    AppSettings,
    GlobalConfig,
    config_base_dir,
    load_config,
    save_global_config,
)
from ..core.orchestrator import TaskOrchestrator, TransitionResult
from ..core.pr_workflow import PullRequestState
from ..core.task import COLUMNS, Project, TaskStatus, parse_project_name, parse_task_id
from ..errors import ErrorTranslator, UpfynError
from ..session import SessionManager
from ..storage import open_global_db, open_project_db
from ..utils.rich_logging import setup_logging
from ..utils.subprocess_utils import SubprocessError
from ..workspace import git


console = Console()
translator = ErrorTranslator()


@click.group()
@click.option("--project", "-p", default=".", help="Repository to orchestrate")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
@click.version_option(__version__, prog_name="upfyn")
@click.pass_context
def cli(ctx, project, log_level):
    """Upfyn agents - run coding agents on a task board, one worktree per task."""
    ctx.ensure_object(dict)
    settings = AppSettings()
    config_dir = config_base_dir(settings)
    setup_logging(log_level or settings.log_level, log_dir=config_dir / "logs")
    ctx.obj["project_path"] = Path(project)
    ctx.obj["config_dir"] = config_dir


def _fail(ctx, error: Exception):
    console.print(translator.format_for_cli(translator.translate(error)))
    ctx.exit(1)


def _orchestrator(ctx) -> TaskOrchestrator:
    """Build (once per invocation) the orchestrator for the selected repository."""
    if "orchestrator" in ctx.obj:
        return ctx.obj["orchestrator"]

    config_dir = ctx.obj["config_dir"]
    path = ctx.obj["project_path"].resolve()
    if not git.is_git_repo(path):
        console.print(f"[red]Not a git repository: {path}[/]")
        ctx.exit(1)
    root = git.repo_root(path)

    try:
        config = load_config(root, config_dir / CONFIG_FILENAME)
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        ctx.exit(1)

    with open_global_db(config_dir) as index:
        project = index.get_project_by_path(str(root)) or Project.create(root.name, str(root))
        project = index.upsert_project(project.model_copy(update={
            "last_opened": datetime.now(UTC),
            "github_url": config.github_url or project.github_url,
        }))

    db = open_project_db(config_dir, root)
    ctx.call_on_close(db.close)

    sessions = SessionManager.for_config_dir(config_dir, override=config.session.backend)
    orchestrator = TaskOrchestrator(db, project, config, sessions)
    ctx.obj["orchestrator"] = orchestrator
    return orchestrator


def _report(result: TransitionResult, wait: bool = True):
    task = result.task
    if result.changed:
        console.print(f"[green]✓[/] {task.short_id} [bold]{task.title}[/] -> {task.status}")
    if result.pr is not None:
        console.print(f"  Pull request #{result.pr.number}: {result.pr.url}")
    if task.session_name and task.status in (TaskStatus.PLANNING.value, TaskStatus.RUNNING.value):
        console.print(f"  [dim]Session: {task.session_name}[/]")
    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/]")

    watcher = result.watcher
    if watcher is None:
        return
    if not wait:
        console.print("[dim]Not waiting for the agent's start-up prompt; answer it yourself if asked.[/]")
        return
    try:
        with console.status("Waiting for the agent's start-up prompt (Ctrl+C to skip)..."):
            watcher.join()
    except KeyboardInterrupt:
        watcher.stop()
        console.print("\n[yellow]Stopped watching for the start-up prompt[/]")
        return
    if watcher.answered:
        console.print(f"  Answered the agent's start-up prompt with '{watcher.answered}'")


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing global config")
@click.pass_context
def init(ctx, force):
    """Write a global config with the first installed agent as default."""
    path = ctx.obj["config_dir"] / CONFIG_FILENAME
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists: {path}[/] (use --force to overwrite)")
        return

    available = detect_available_agents()
    config = GlobalConfig()
    if available:
        config.default_agent = available[0].name
    else:
        console.print("[yellow]No known agent CLI found on PATH, defaulting to claude[/]")

    save_global_config(config, path)
    console.print(f"[green]✓ Wrote {path}[/] (default agent: {config.default_agent})")


@cli.command()
@click.pass_context
def board(ctx):
    """Show tasks by column."""
    orchestrator = _orchestrator(ctx)
    columns = [orchestrator.db.get_tasks_by_status(status.value) for status in COLUMNS]

    table = Table(title=orchestrator.project.name)
    for status, tasks in zip(COLUMNS, columns):
        table.add_column(f"{status.value} ({len(tasks)})")

    depth = max((len(tasks) for tasks in columns), default=0)
    for row in range(depth):
        cells = []
        for tasks in columns:
            if row < len(tasks):
                task = tasks[row]
                cells.append(f"[cyan]{task.short_id}[/] {task.title}")
            else:
                cells.append("")
        table.add_row(*cells)

    console.print(table)


@cli.command()
@click.argument("task_id")
@click.pass_context
def show(ctx, task_id):
    """Show one task in detail."""
    orchestrator = _orchestrator(ctx)
    try:
        task = orchestrator.get_task(task_id)
    except UpfynError as e:
        _fail(ctx, e)

    console.print(f"[bold]{task.title}[/] [dim]({task.id})[/]")
    console.print(f"  Status:   {task.status}")
    console.print(f"  Agent:    {task.agent}")
    if task.description:
        console.print(f"  Details:  {task.description}")
    if task.session_name:
        console.print(f"  Session:  {task.session_name}")
    if task.worktree_path:
        console.print(f"  Worktree: {task.worktree_path}")
    if task.branch_name:
        console.print(f"  Branch:   {task.branch_name}")
    if task.pr_number:
        console.print(f"  PR:       #{task.pr_number} {task.pr_url or ''}")


@cli.command()
@click.argument("title")
@click.option("--description", "-d", default=None, help="Task details passed to the agent")
@click.option("--agent", "-a", default=None, help="Agent to run (defaults to the configured one)")
@click.pass_context
def add(ctx, title, description, agent):
    """Add a task to the backlog."""
    orchestrator = _orchestrator(ctx)
    try:
        task = orchestrator.create_task(title, description=description, agent=agent)
    except UpfynError as e:
        _fail(ctx, e)
    console.print(f"[green]✓[/] Added {task.short_id} [bold]{task.title}[/] ({task.agent})")


@cli.command()
@click.argument("task_id")
@click.option("--title", "-t", default=None, help="New title (backlog only)")
@click.option("--description", "-d", default=None, help="New description")
@click.pass_context
def edit(ctx, task_id, title, description):
    """Change a task's title or description."""
    orchestrator = _orchestrator(ctx)
    try:
        task = orchestrator.edit_task(task_id, title=title, description=description)
    except UpfynError as e:
        _fail(ctx, e)
    console.print(f"[green]✓[/] Updated {task.short_id} [bold]{task.title}[/]")


@cli.command()
@click.argument("task_id")
@click.option("--pr/--no-pr", "open_pr", default=None, help="Open a pull request when moving to review")
@click.option("--title", "pr_title", default=None, help="Pull request title")
@click.option("--body", "pr_body", default=None, help="Pull request body")
@click.option("--yes", "-y", is_flag=True, help="Mark done even if the pull request is still open")
@click.option("--wait/--no-wait", default=True, help="Wait for the agent's start-up prompt")
@click.pass_context
def move(ctx, task_id, open_pr, pr_title, pr_body, yes, wait):
    """Advance a task one column."""
    orchestrator = _orchestrator(ctx)
    try:
        task = orchestrator.get_task(task_id)
        target = orchestrator.next_status(task)

        if target == TaskStatus.REVIEW:
            if open_pr is None:
                open_pr = click.confirm("Open a pull request?", default=True)
            if open_pr:
                if pr_title is None:
                    pr_title = click.prompt("PR title", default=task.title)
                if pr_body is None:
                    pr_body = click.prompt("PR body", default=task.description or "", show_default=False)

        result = orchestrator.move_forward(
            task.id,
            open_pr=open_pr,
            pr_title=pr_title,
            pr_body=pr_body,
            confirm=yes,
        )

        if result.needs_confirmation and result.pr_state == PullRequestState.OPEN:
            if not click.confirm(f"PR #{task.pr_number} is still open. Mark the task done anyway?"):
                console.print("[yellow]Task left in review[/]")
                return
            result = orchestrator.move_forward(task.id, confirm=True)
    except (UpfynError, SubprocessError) as e:
        _fail(ctx, e)

    _report(result, wait)


@cli.command()
@click.argument("task_id")
@click.option("--wait/--no-wait", default=True, help="Wait for the agent's start-up prompt")
@click.pass_context
def run(ctx, task_id, wait):
    """Start a backlog task and go straight to running."""
    orchestrator = _orchestrator(ctx)
    try:
        result = orchestrator.move_to_running_directly(task_id)
    except (UpfynError, SubprocessError) as e:
        _fail(ctx, e)
    _report(result, wait)


@cli.command()
@click.argument("task_id")
@click.pass_context
def back(ctx, task_id):
    """Send a task in review back to running."""
    orchestrator = _orchestrator(ctx)
    try:
        result = orchestrator.move_back(task_id)
    except UpfynError as e:
        _fail(ctx, e)
    _report(result)


@cli.command()
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def delete(ctx, task_id, yes):
    """Delete a task, its session and its worktree."""
    orchestrator = _orchestrator(ctx)
    try:
        task = orchestrator.get_task(task_id)
        if not yes and not click.confirm(f"Delete {task.short_id} '{task.title}'?"):
            return
        warnings = orchestrator.delete_task(task.id)
    except UpfynError as e:
        _fail(ctx, e)

    console.print(f"[green]✓[/] Deleted {task.short_id} [bold]{task.title}[/]")
    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/]")


@cli.command()
@click.argument("task_id")
@click.option("--stat", is_flag=True, help="Only show the diffstat")
@click.pass_context
def diff(ctx, task_id, stat):
    """Show the task branch's changes against the base branch."""
    orchestrator = _orchestrator(ctx)
    try:
        output = orchestrator.diff(task_id, stat=stat)
    except (UpfynError, SubprocessError) as e:
        _fail(ctx, e)
    if not output:
        console.print("[dim]No changes[/]")
        return
    click.echo(output)


@cli.command()
@click.pass_context
def sessions(ctx):
    """List live agent sessions on every backend."""
    orchestrator = _orchestrator(ctx)
    infos = orchestrator.sessions_list()
    if not infos:
        console.print("[dim]No sessions[/]")
        return

    table = Table()
    table.add_column("Session")
    table.add_column("Backend")
    table.add_column("Task")
    table.add_column("Project")
    table.add_column("PID")
    for info in infos:
        table.add_row(
            info.name,
            info.backend.value,
            parse_task_id(info.name) or "-",
            parse_project_name(info.name) or "-",
            str(info.pid) if info.pid else "-",
        )
    console.print(table)


@cli.command()
@click.argument("task_id")
@click.option("--lines", "-n", default=None, type=int, help="Number of lines to show")
@click.pass_context
def capture(ctx, task_id, lines):
    """Print the latest output of a task's session."""
    orchestrator = _orchestrator(ctx)
    try:
        output = orchestrator.capture(task_id, lines or orchestrator.config.session.capture_lines)
    except UpfynError as e:
        _fail(ctx, e)
    if not output:
        console.print("[dim]No output[/]")
        return
    click.echo(output)


@cli.command()
@click.argument("task_id")
@click.pass_context
def attach(ctx, task_id):
    """Attach the terminal to a task's session (tmux only)."""
    orchestrator = _orchestrator(ctx)
    try:
        attached = orchestrator.attach(task_id)
    except UpfynError as e:
        _fail(ctx, e)
    if not attached:
        console.print("[yellow]This session can't be attached to; use 'upfyn capture' instead[/]")


@cli.command()
def agents():
    """List known agent CLIs and whether they are installed."""
    table = Table()
    table.add_column("Agent")
    table.add_column("Command")
    table.add_column("Installed")
    table.add_column("Description")
    for status in all_agent_status():
        table.add_row(
            status.agent.name,
            status.agent.command,
            "[green]✓[/]" if status.available else "[red]✗[/]",
            status.agent.description,
        )
    console.print(table)


@cli.command()
@click.pass_context
def projects(ctx):
    """List every project opened on this machine."""
    with open_global_db(ctx.obj["config_dir"]) as index:
        rows = index.get_all_projects()
    if not rows:
        console.print("[dim]No projects yet[/]")
        return

    table = Table()
    table.add_column("Name")
    table.add_column("Path")
    table.add_column("Last opened")
    for project in rows:
        table.add_row(project.name, project.path, project.last_opened.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


if __name__ == "__main__":
    cli()
