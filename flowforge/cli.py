"""CLI entry point for the FlowForge engine.

Commands:
- flowforge init: Create .flowforge/config.yaml with default settings
- flowforge validate: Check a workflow file and show its graph
- flowforge run: Execute a workflow file (optionally stepping in debug mode)
- flowforge history: Show recorded runs
- flowforge studio: Serve the HTTP operation surface
- flowforge version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from flowforge.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowforge.config import CONFIG_DIR, CONFIG_FILE, load_settings, write_default_config
from flowforge.core.engine import WorkflowEngine, create_engine
from flowforge.core.errors import FlowForgeError
from flowforge.core.graph_schema import Workflow
from flowforge.core.models import RunRecord, RunStatus

console = Console()


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_workflow_file(workflow_file: str) -> Workflow:
    """Load a workflow definition from YAML or JSON, exiting on errors."""
    try:
        with open(workflow_file) as f:
            data = yaml.safe_load(f)  # JSON is a subset of YAML
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid content in '{escape(workflow_file)}'. "
                f"Expected a mapping, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        return Workflow.model_validate(data)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _load_engine(config_path: str | None) -> WorkflowEngine:
    try:
        settings = load_settings(config_path)
    except (yaml.YAMLError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        sys.exit(1)
    return create_engine(settings)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """FlowForge - visual workflow execution engine."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.command()
def init() -> None:
    """Initialize the project configuration."""
    config_path = get_repo_path() / CONFIG_DIR / CONFIG_FILE
    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return
    write_default_config(get_repo_path())
    console.print(f"[green]Created {config_path}[/green]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow file and render its graph."""
    workflow = _load_workflow_file(workflow_file)

    console.print(TerminalGraphRenderer(console).render_as_tree(workflow))
    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")

    errors = workflow.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)
    console.print("\n[green]✓ Graph is valid[/]")


async def _drive_run(engine: WorkflowEngine, workflow_id: str, debug: bool) -> RunRecord | None:
    """Run the workflow; in debug mode prompt at every paused node."""
    if debug != engine.debug_mode:
        engine.toggle_debug_mode()

    task = asyncio.create_task(engine.run_workflow(workflow_id))
    while debug and not task.done():
        paused = engine.paused_node_id
        if paused is None:
            await asyncio.sleep(0.05)
            continue
        choice = await asyncio.to_thread(
            click.prompt,
            f"Paused before '{paused}' - [s]tep, [r]esume, [a]bort",
            type=click.Choice(["s", "r", "a"]),
            default="s",
            show_choices=False,
        )
        if choice == "s":
            engine.step()
        elif choice == "r":
            # Finish the run without further prompts
            if engine.debug_mode:
                engine.toggle_debug_mode()
            engine.resume()
        else:
            engine.abort_execution()
    return await task


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("--debug", is_flag=True, help="Pause before every node and prompt to continue")
@click.option("--json-output", is_flag=True, help="Print the run record as JSON")
def run(workflow_file: str, config_path: str | None, debug: bool, json_output: bool) -> None:
    """Execute a workflow file."""
    workflow = _load_workflow_file(workflow_file)
    engine = _load_engine(config_path)
    engine.import_workflow(workflow)

    try:
        record = asyncio.run(_drive_run(engine, workflow.id, debug))
    except FlowForgeError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if record is None:
        console.print("[red]Run rejected: another run is in flight[/red]")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(record.model_dump(mode="json", by_alias=True), indent=2))
    else:
        console.print(StatusTableRenderer(console).render_status_table(workflow, title=record.id))
        if record.status == RunStatus.SUCCESS:
            console.print(
                Panel(
                    f"[green]Run {escape(record.id)} succeeded[/green] in {record.duration:.2f}s",
                    title="Result",
                )
            )
        else:
            console.print(
                Panel(f"[red]{escape(record.error or 'Run failed')}[/red]", title="Run failed")
            )

    if record.status != RunStatus.SUCCESS:
        sys.exit(1)


@main.command()
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("--clear", is_flag=True, help="Delete all recorded runs")
def history(config_path: str | None, clear: bool) -> None:
    """Show recorded workflow runs (newest first)."""
    engine = _load_engine(config_path)
    if clear:
        engine.clear_executions()
        console.print("[green]Execution history cleared[/green]")
        return
    records = engine.executions
    if not records:
        console.print("[yellow]No runs recorded yet[/yellow]")
        return
    console.print(StatusTableRenderer(console).render_history(records))


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
def studio(host: str, port: int, config_path: str | None) -> None:
    """Serve the REST/WebSocket operation surface."""
    import uvicorn

    from flowforge.studio.server import app, set_engine

    set_engine(_load_engine(config_path))
    console.print(f"[blue]FlowForge Studio API on http://{host}:{port}[/blue]")
    uvicorn.run(app, host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    from flowforge import __version__

    console.print(f"FlowForge v{__version__}")
    console.print("Visual workflow execution engine")


if __name__ == "__main__":
    main()
