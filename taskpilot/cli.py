"""
taskpilot CLI

Serve either actor:
  - taskpilot serve-executor        (Execution Agent HTTP server)
  - taskpilot serve-coordinator     (store actors, callbacks, backlog cycle)

Talk to a running coordinator:
  - taskpilot enqueue <task.yaml>   (add a task to a project ledger)
  - taskpilot ledger                (show a project ledger)
  - taskpilot cycle                 (poll the backlog once)

Plus:
  - taskpilot status                (config + tool availability)
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from taskpilot import __codename__, __version__
from taskpilot.config_loader import TaskPilotConfig, load_config
from taskpilot.integrations.execution_server import ExecutionServerClient
from taskpilot.models import TaskRecord

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".taskpilot" / ".env")

app = typer.Typer(
    name="taskpilot",
    help=f"{__codename__}: backlog-driven autonomous coding pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------

@app.command("serve-executor")
def serve_executor(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config override"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the Execution Agent HTTP server."""
    from taskpilot.server import create_app

    _configure_logging(verbose)
    config = _load(config_path)
    console.print(f"[bright_green]{__codename__} executor[/] [dim]workspace {config.executor.workspace_root}[/]")
    uvicorn.run(
        create_app(config),
        host=host or config.executor.host,
        port=port or config.executor.port,
        log_level="debug" if verbose else "info",
    )


@app.command("serve-coordinator")
def serve_coordinator(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config override"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the coordinator (task state stores, callbacks, backlog cycle)."""
    from taskpilot.coordinator import create_app

    _configure_logging(verbose)
    config = _load(config_path)
    console.print(f"[bright_green]{__codename__} coordinator[/] [dim]project {config.project_name}[/]")
    uvicorn.run(
        create_app(config),
        host=host or config.coordinator.host,
        port=port or config.coordinator.port,
        log_level="debug" if verbose else "info",
    )


# ---------------------------------------------------------------------------
# Coordinator client commands
# ---------------------------------------------------------------------------

@app.command()
def enqueue(
    task_file: Path = typer.Argument(..., help="Task YAML (id, title, description, branch, ...)"),
    project: Optional[str] = typer.Option(None, "--project", "-P"),
    coordinator: Optional[str] = typer.Option(None, "--coordinator", help="Coordinator base URL"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Add a task to a project's ledger."""
    if not task_file.exists():
        console.print(f"[red]Task file not found: {task_file}[/]")
        raise typer.Exit(1)

    config = _load(config_path)
    try:
        task = TaskRecord.from_yaml(task_file)
    except ValueError as e:
        console.print(f"[red]Invalid task file: {e}[/]")
        raise typer.Exit(1)

    project = project or config.project_name
    data = _call(config, coordinator, "POST", f"/projects/{project}/enqueue", json=task.to_wire())
    console.print(f"[green]✅ Enqueued {data.get('taskId', task.id)} into {project}[/]")


@app.command()
def ledger(
    project: Optional[str] = typer.Option(None, "--project", "-P"),
    coordinator: Optional[str] = typer.Option(None, "--coordinator", help="Coordinator base URL"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Show a project's task ledger."""
    config = _load(config_path)
    project = project or config.project_name
    data = _call(config, coordinator, "GET", f"/projects/{project}/get-prd")

    tasks = data.get("tasks") or {}
    if not tasks:
        console.print(f"[dim]No tasks in {project} (v{data.get('version', 1)}).[/]")
        return

    table = Table(title=f"{project} ledger (v{data.get('version', 1)})", border_style="cyan")
    table.add_column("Task")
    table.add_column("Branch")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("PR / Error")

    max_attempts = config.store.max_attempts
    for task_id, entry in tasks.items():
        if entry.get("passes"):
            state = "[green]passed[/]"
        elif entry.get("inFlight"):
            state = "[cyan]in flight[/]"
        elif entry.get("attempts", 0) >= max_attempts:
            state = "[red]exhausted[/]"
        else:
            state = "[yellow]pending[/]"
        detail = entry.get("prUrl") or entry.get("error") or ""
        table.add_row(
            task_id,
            entry.get("branchName", ""),
            state,
            f"{entry.get('attempts', 0)}/{max_attempts}",
            detail[:80],
        )

    console.print(table)


@app.command()
def cycle(
    project: Optional[str] = typer.Option(None, "--project", "-P"),
    coordinator: Optional[str] = typer.Option(None, "--coordinator", help="Coordinator base URL"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Ask the coordinator to poll the backlog once."""
    config = _load(config_path)
    params = {"project": project} if project else None
    data = _call(config, coordinator, "POST", "/trigger", params=params)
    console.print(f"[green]{data.get('message', 'Cycle triggered')}[/]")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Check taskpilot configuration and readiness."""
    config = _load(config_path)

    cfg_table = Table(title="Configuration", border_style="cyan")
    cfg_table.add_column("Setting")
    cfg_table.add_column("Value")
    cfg_table.add_row("Project", config.project_name)
    cfg_table.add_row("Workspace", config.executor.workspace_root)
    cfg_table.add_row("Execution server", config.coordinator.execution_server_url)
    cfg_table.add_row("Coordinator", config.coordinator.public_url)
    cfg_table.add_row("State", f"{config.store.backend} ({config.store.state_dir})")
    cfg_table.add_row("Max attempts", str(config.store.max_attempts))
    cfg_table.add_row("Capacity", str(config.store.capacity))
    for name, value in (
        ("Executor token", config.executor.token),
        ("GitHub token", config.github.token),
        ("Backlog API key", config.backlog.api_key),
    ):
        cfg_table.add_row(name, "[green]✓ Set[/]" if value else "[red]✗ Missing[/]")
    console.print(cfg_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    agent_bin = config.agent.command[0] if config.agent.command else "claude"
    for tool in ["git", "node", "npm", agent_bin]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    client = ExecutionServerClient(
        config.coordinator.execution_server_url,
        token=config.coordinator.execution_server_token,
        timeout=5.0,
    )
    reachable = client.health()
    mark = "[green]✓ reachable[/]" if reachable else "[red]✗ unreachable[/]"
    console.print(f"\n[bold]Execution server:[/] {mark}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(config_path: Path | None) -> TaskPilotConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _coordinator_client(base_url: str) -> httpx.Client:
    return httpx.Client(base_url=base_url, timeout=30.0)


def _call(config: TaskPilotConfig, base_url: str | None, method: str, path: str, **kwargs) -> dict:
    base_url = (base_url or config.coordinator.public_url).rstrip("/")
    try:
        with _coordinator_client(base_url) as client:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        console.print(f"[red]Coordinator error {e.response.status_code}: {e.response.text[:300]}[/]")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]Coordinator unreachable at {base_url}: {e}[/]")
        raise typer.Exit(1)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        lambda msg: console.print(msg, style="dim", markup=False, highlight=False, end=""),
        level="DEBUG" if verbose else "INFO",
        format="{time:HH:mm:ss} | {level:<7} | {message}",
    )


if __name__ == "__main__":
    app()
