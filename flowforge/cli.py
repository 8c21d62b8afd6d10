"""CLI entry point for the Flowforge engine.

Commands:
- flowforge init: Write the default engine config
- flowforge validate: Check a workflow file for structural problems
- flowforge visualize: Show a workflow graph in the terminal
- flowforge run: Execute a workflow once
- flowforge schedule: Execute a workflow on an interval
- flowforge serve: Start the studio HTTP API
- flowforge version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from flowforge.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowforge.core.config import CONFIG_DIR, CONFIG_FILE, DEFAULT_CONFIG_YAML, ConfigError, EngineConfig
from flowforge.core.database import DatabaseConnection
from flowforge.core.graph_engine import GraphOrchestrator, RunState
from flowforge.core.graph_schema import WorkflowDocument
from flowforge.core.state import LogEntry, LogLevel
from flowforge.core.triggers import ScheduleRunner

console = Console()


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_workflow(workflow_file: str) -> WorkflowDocument:
    """Load a workflow document (JSON or YAML), exiting with a readable error."""
    try:
        with open(workflow_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid content in '{escape(workflow_file)}'. "
                f"Expected a mapping, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        return WorkflowDocument.model_validate(data)
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


def _load_config(headless: bool, max_loop_iterations: int | None = None) -> EngineConfig:
    try:
        config = EngineConfig.load()
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    if headless:
        config = config.headless()
    if max_loop_iterations is not None:
        config = config.model_copy(update={"max_loop_iterations": max_loop_iterations})
    return config


def _load_connections(orchestrator: GraphOrchestrator, connections_file: str | None) -> None:
    if not connections_file:
        return
    with open(connections_file, encoding="utf-8") as f:
        entries = yaml.safe_load(f) or []
    try:
        for entry in entries:
            orchestrator.connections.add(DatabaseConnection.model_validate(entry))
    except (pydantic.ValidationError, ValueError, TypeError) as e:
        console.print(f"[red]Invalid connections file:[/red] {escape(str(e))}")
        sys.exit(1)


def _print_log_entry(entry: LogEntry) -> None:
    color = "red" if entry.level == LogLevel.ERROR else "dim"
    stamp = entry.timestamp.strftime("%H:%M:%S")
    tag = escape(f"[{entry.node_id}]")
    console.print(f"[{color}]{stamp}[/] {tag} {escape(entry.message)}")


def _print_summary(doc: WorkflowDocument, state: RunState) -> None:
    renderer = StatusTableRenderer(console)
    console.print(
        renderer.render_status_table(
            doc, state.run_id, state.node_status, state.executed, state.node_errors
        )
    )
    if state.succeeded:
        console.print(f"[green]Run succeeded in {state.duration_ms}ms[/green]")
    else:
        reason = f": {escape(state.error)}" if state.error else ""
        console.print(f"[red]Run failed{reason}[/red]")


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """Flowforge - visual workflow execution engine.

    Runs graphs of scriptable nodes with branching, loops, webhooks and
    schedules.
    """
    pass


@main.command()
def init() -> None:
    """Write the default engine configuration."""
    config_dir = get_repo_path() / CONFIG_DIR

    if (config_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {config_dir}\n"
            f"- {CONFIG_FILE}: Engine configuration",
            title="Flowforge Initialized",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Check a workflow for structural problems."""
    doc = _load_workflow(workflow_file)
    errors = doc.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(doc.nodes)}")
    console.print(f"  Edges: {len(doc.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--levels", is_flag=True, help="Show topological levels instead of a tree")
def visualize(workflow_file: str, levels: bool) -> None:
    """Visualize a workflow graph in the terminal."""
    doc = _load_workflow(workflow_file)
    renderer = TerminalGraphRenderer(console)

    if levels:
        console.print(renderer.render_graph(doc))
    else:
        console.print(renderer.render_as_tree(doc))

    errors = doc.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--payload", help="JSON payload passed to the first node (like a webhook)")
@click.option("--headless", is_flag=True, help="Skip pacing delays")
@click.option("--max-loop-iterations", type=int, help="Fail loop nodes after N iterations")
@click.option(
    "--connections",
    "connections_file",
    type=click.Path(exists=True),
    help="YAML list of database connections",
)
def run(
    workflow_file: str,
    payload: str | None,
    headless: bool,
    max_loop_iterations: int | None,
    connections_file: str | None,
) -> None:
    """Execute a workflow once."""
    doc = _load_workflow(workflow_file)

    seed = None
    if payload is not None:
        try:
            seed = json.loads(payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid --payload JSON:[/red] {escape(str(e))}")
            sys.exit(1)

    config = _load_config(headless, max_loop_iterations)
    orchestrator = GraphOrchestrator.create(config)
    _load_connections(orchestrator, connections_file)
    orchestrator.log.subscribe(_print_log_entry)

    try:
        state = asyncio.run(orchestrator.run_workflow(doc.nodes, doc.edges, seed_payload=seed))
    finally:
        orchestrator.close()

    _print_summary(doc, state)
    if not state.succeeded:
        sys.exit(1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--every", type=float, required=True, help="Interval in seconds")
@click.option("--runs", type=int, default=1, show_default=True, help="Stop after N runs")
@click.option("--headless", is_flag=True, help="Skip pacing delays")
def schedule(workflow_file: str, every: float, runs: int, headless: bool) -> None:
    """Execute a workflow on a fixed interval."""
    if every <= 0 or runs <= 0:
        console.print("[red]--every and --runs must be positive[/red]")
        sys.exit(1)

    doc = _load_workflow(workflow_file)
    orchestrator = GraphOrchestrator.create(_load_config(headless))
    orchestrator.log.subscribe(_print_log_entry)
    runner = ScheduleRunner(orchestrator, lambda: doc, max_retained=runs)

    async def run_schedule() -> list[RunState]:
        runner.add(every)
        runner.start()
        try:
            while len(runner.results) < runs:
                await asyncio.sleep(min(every, 0.1))
        finally:
            await runner.stop()
        return list(runner.results)[:runs]

    try:
        results = asyncio.run(run_schedule())
    finally:
        orchestrator.close()

    failed = [s for s in results if not s.succeeded]
    console.print(f"Completed {len(results)} run(s), {len(failed)} failed")
    if failed:
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workflow", "workflow_file", type=click.Path(exists=True), help="Workflow to load")
def serve(host: str, port: int, workflow_file: str | None) -> None:
    """Start the studio HTTP API."""
    import uvicorn

    from flowforge.studio.server import app, configure

    doc = _load_workflow(workflow_file) if workflow_file else None
    configure(_load_config(headless=False), workflow=doc)
    console.print(f"[blue]Flowforge studio on http://{host}:{port}[/blue]")
    uvicorn.run(app, host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    from flowforge import __version__

    console.print(f"Flowforge v{__version__}")
    console.print("Visual workflow execution engine")


if __name__ == "__main__":
    main()
