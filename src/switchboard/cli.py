"""Switchboard CLI: run the daemon and inspect its state.

Usage:
    switchboard daemon [PROJECT]                 # Run daemon (foreground)
    switchboard status                           # Show configuration and counts
    switchboard namespaces                       # List registered namespaces
    switchboard register KEY NAME FOLDER         # Register a conversation
    switchboard tasks [--namespace NS]           # List scheduled tasks
    switchboard runs <task-id>                   # Show run history for a task
    switchboard config <section.key>=<value>     # Set configuration
"""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from switchboard.config import SECTIONS, SwitchboardConfig, ensure_switchboard_home
from switchboard.models import Namespace, is_valid_folder
from switchboard.store import Store

console = Console()


def _load() -> tuple[SwitchboardConfig, Store]:
    config = SwitchboardConfig.load()
    ensure_switchboard_home(config)
    return config, Store(config.db_path)


@click.group()
@click.version_option(package_name="switchboard")
def cli():
    """Switchboard: route chat conversations to isolated agent workers."""


@cli.command()
@click.argument("project", required=False)
@click.option("--debug", is_flag=True, help="Verbose logging")
def daemon(project, debug):
    """Run the Switchboard daemon in the foreground."""
    from switchboard.daemon import SwitchboardDaemon, configure_logging

    configure_logging(logging.DEBUG if debug else logging.INFO)
    console.print("[bold blue]Switchboard[/] daemon starting (Ctrl+C to stop)")
    asyncio.run(SwitchboardDaemon(project_path=project).start())


@cli.command()
def status():
    """Show configuration and stored state."""
    config, store = _load()
    namespaces = store.get_all_namespaces()
    tasks = store.list_tasks()

    table = Table(show_header=False, box=None)
    table.add_row("Home", str(config.home))
    table.add_row("Assistant", config.router.assistant_name)
    table.add_row("Privileged folder", config.router.privileged_folder)
    table.add_row("Container", f"{config.worker.runtime_bin} / {config.worker.image}")
    table.add_row("Persistent worker", "enabled" if config.worker.enable_persistent else "disabled")
    table.add_row("Merge window", f"{config.router.merge_window_seconds:.1f}s")
    table.add_row("Timezone", config.scheduler.timezone)
    table.add_row("Namespaces", str(len(namespaces)))
    table.add_row("Active tasks", str(sum(1 for t in tasks if t.status == "active")))
    table.add_row("Slack", "enabled" if config.slack.enabled else "disabled")
    console.print(Panel(table, title="Switchboard", border_style="blue"))


@cli.command()
def namespaces():
    """List registered namespaces."""
    config, store = _load()
    registered = store.get_all_namespaces()
    if not registered:
        console.print("[dim]No namespaces yet. Use /switchboard-start in Slack or `switchboard register`.[/]")
        return

    table = Table(title="Namespaces")
    table.add_column("Folder", style="cyan")
    table.add_column("Name")
    table.add_column("Conversation")
    table.add_column("Trigger")
    table.add_column("Added", style="dim")
    for ns in registered.values():
        folder = f"[bold]{ns.folder}[/] *" if ns.folder == config.router.privileged_folder else ns.folder
        table.add_row(folder, ns.name, ns.conversation_key, ns.trigger, ns.added_at[:19])
    console.print(table)


@cli.command()
@click.argument("conversation_key")
@click.argument("name")
@click.argument("folder")
@click.option("--trigger", default=None, help="Trigger prefix (default: @<assistant name>)")
def register(conversation_key, name, folder, trigger):
    """Register a conversation as a namespace.

    Takes effect the next time the daemon starts.
    """
    config, store = _load()
    if not is_valid_folder(folder):
        console.print(f"[red]Invalid folder name: {folder}[/] (letters, digits, '-' and '_' only)")
        sys.exit(1)
    for existing in store.get_all_namespaces().values():
        if existing.folder == folder and existing.conversation_key != conversation_key:
            console.print(f"[red]Folder {folder} already belongs to {existing.conversation_key}[/]")
            sys.exit(1)
    store.set_namespace(Namespace(
        conversation_key=conversation_key,
        name=name,
        folder=folder,
        trigger=trigger or f"@{config.router.assistant_name}",
    ))
    (config.groups_dir / folder).mkdir(parents=True, exist_ok=True)
    console.print(f"[green]Registered {folder}[/] for {conversation_key}")


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only tasks owned by this namespace")
def tasks(namespace):
    """List scheduled tasks."""
    _, store = _load()
    all_tasks = store.list_tasks(namespace)
    if not all_tasks:
        console.print("[dim]No scheduled tasks[/]")
        return

    status_colors = {"active": "green", "paused": "yellow", "completed": "dim"}
    table = Table(title="Scheduled Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Owner")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Next run")
    table.add_column("Prompt")
    for t in all_tasks:
        color = status_colors.get(t.status, "white")
        table.add_row(
            t.id,
            t.owner_namespace,
            f"{t.schedule_type}: {t.schedule_value}",
            f"[{color}]{t.status}[/]",
            (t.next_run or "-")[:19],
            t.prompt[:50],
        )
    console.print(table)


@cli.command()
@click.argument("task_id")
@click.option("--limit", default=20, show_default=True)
def runs(task_id, limit):
    """Show run history for a scheduled task."""
    _, store = _load()
    task = store.get_task(task_id)
    if task is None:
        console.print(f"[red]Task {task_id} not found[/]")
        sys.exit(1)

    console.print(Panel(
        f"[bold]{task.prompt}[/]\n"
        f"Schedule: {task.schedule_type} {task.schedule_value} ({task.context_mode})\n"
        f"Status: {task.status} | Last: {task.last_result or '-'}",
        title=task.id,
        border_style="blue",
    ))
    history = store.get_task_runs(task_id, limit)
    if not history:
        console.print("[dim]No runs yet[/]")
        return
    table = Table(title="Runs")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Status")
    table.add_column("Result / error")
    for run in history:
        color = "green" if run.status == "success" else "red"
        table.add_row(
            run.started_at[:19],
            f"{run.duration_ms / 1000:.1f}s",
            f"[{color}]{run.status}[/]",
            (run.error or run.result or "")[:80],
        )
    console.print(table)


@cli.command("config")
@click.argument("assignment")
def config_cmd(assignment):
    """Set a configuration value, e.g. `switchboard config router.assistant_name=Max`."""
    if "=" not in assignment or "." not in assignment.split("=", 1)[0]:
        console.print("[red]Usage: switchboard config <section.key>=<value>[/]")
        sys.exit(1)
    path, raw = assignment.split("=", 1)
    section_name, key = path.split(".", 1)
    config = SwitchboardConfig.load()
    section = getattr(config, section_name) if section_name in SECTIONS else None
    if section is None or not hasattr(section, key):
        console.print(f"[red]Unknown setting: {path}[/]")
        sys.exit(1)

    current = getattr(section, key)
    if isinstance(current, bool):
        value = raw.lower() in ("1", "true", "yes", "on")
    elif isinstance(current, int):
        value = int(raw)
    elif isinstance(current, float):
        value = float(raw)
    elif isinstance(current, list):
        value = [v.strip() for v in raw.split(",") if v.strip()]
    else:
        value = raw
    setattr(section, key, value)
    config.save()
    console.print(f"[green]{path} = {value}[/]")


def main():
    cli()


if __name__ == "__main__":
    main()
