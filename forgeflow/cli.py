"""Command line interface for operating forgeflow."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import typer
import yaml

from .catalog import WorkflowCatalog
from .config import ForgeflowConfig, load_config
from .coordinator import ExecutionCoordinator
from .errors import ForgeflowError
from .events import EventEmitter
from .executors import default_registry
from .log import configure_logging
from .persistence import TriggerInfo, get_state_store
from .transports import get_transport
from .worker import StepWorker

T = TypeVar("T")

app = typer.Typer(help="CLI for forgeflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for starting and inspecting executions")
worker_app = typer.Typer(help="Commands for running step workers")
coordinator_app = typer.Typer(help="Commands for running coordinators")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(worker_app, name="worker")
app.add_typer(coordinator_app, name="coordinator")


@app.callback()
def main() -> None:
    """forgeflow CLI entry point."""
    configure_logging(load_config().logging)


def _run(awaitable: Awaitable[T]) -> T:
    try:
        return asyncio.run(awaitable)
    except ForgeflowError as exc:
        typer.secho(f"{exc.code}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _coordinator(config: Optional[ForgeflowConfig] = None) -> ExecutionCoordinator:
    config = config or load_config()
    transport = get_transport(config=config)
    events = EventEmitter(transport if config.engine.publish_events else None)
    return ExecutionCoordinator(
        get_state_store(), transport, events=events, config=config.engine
    )


def _load_object(reference: str) -> Any:
    module_name, _, attribute = reference.partition(":")
    if not attribute:
        raise typer.BadParameter(f"Expected 'module:attribute', got '{reference}'")
    return getattr(importlib.import_module(module_name), attribute)


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--input is not valid JSON: {exc.msg}")
    if not isinstance(data, dict):
        raise typer.BadParameter("--input must be a JSON object")
    return data


@workflow_app.command("save")
def workflow_save(
    path: Path,
    publish: bool = typer.Option(False, help="Publish the saved version"),
) -> None:
    """
    Validate and store a workflow definition from a YAML or JSON file.

    The graph is compiled first; a structural change creates a new version,
    an unchanged definition keeps its current version.

    Example:
        forgeflow workflow save ./workflows/onboarding.yaml --publish
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    definition = yaml.safe_load(path.read_text()) or {}

    async def save():
        catalog = WorkflowCatalog(get_state_store())
        workflow = await catalog.save(definition)
        if publish:
            workflow = await catalog.publish(workflow.id, workflow.version)
        return workflow

    workflow = _run(save())
    state = "published" if workflow.published else "draft"
    typer.echo(f"Workflow {workflow.id} v{workflow.version} saved ({state})")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List the latest version of every stored workflow.

    Example:
        forgeflow workflow list
        # Output: onboarding    v3    published
    """
    workflows = _run(WorkflowCatalog(get_state_store()).list())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "published" if wf.published else "draft"
        typer.echo(f"{wf.id}\tv{wf.version}\t{state}")


@workflow_app.command("show")
def workflow_show(
    workflow_id: str, version: Optional[int] = typer.Option(None, help="Version to show")
) -> None:
    """Show nodes and edges of a workflow version."""
    wf = _run(WorkflowCatalog(get_state_store()).get(workflow_id, version))
    typer.echo(f"Workflow {wf.id} v{wf.version}" + (f": {wf.name}" if wf.name else ""))
    for node in wf.nodes:
        typer.echo(f"- {node.id} ({node.type.value}, join={node.join.value})")
    for edge in wf.edges:
        label = f" [{edge.branch}]" if edge.branch else ""
        typer.echo(f"  {edge.source} -> {edge.target}{label}")


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    version: Optional[int] = typer.Option(None, help="Workflow version (default latest)"),
    input: Optional[str] = typer.Option(None, "--input", help="JSON object of variables"),
    actor: Optional[str] = typer.Option(None, help="Who triggered the run"),
) -> None:
    """
    Start an execution and print its id.

    Example:
        forgeflow execution start onboarding --input '{"customer": "acme"}'
        # Output: Execution started: abc123-def456-789
    """
    variables = _parse_input(input)
    trigger = TriggerInfo(kind="cli", actor=actor)
    execution_id = _run(
        _coordinator().start(workflow_id, version=version, trigger=trigger, input=variables)
    )
    typer.echo(f"Execution started: {execution_id}")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel an execution; running steps are allowed to finish."""
    execution = _run(_coordinator().cancel(execution_id))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Only runs of this workflow")
) -> None:
    """List executions with their status."""
    executions = _run(get_state_store().list_executions(workflow))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\tv{ex.workflow_version}\t{ex.status.value}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show status, progress and step history of an execution.

    Example:
        forgeflow execution show abc123-def456-789
        # Output: Execution abc123-def456-789: running (50.0%)
        #         - review: running (attempt 1, waiting)
    """
    view = _run(_coordinator().describe(execution_id))
    typer.echo(f"Execution {view.execution_id}: {view.status.value} ({view.progress}%)")
    if view.variables:
        typer.echo(f"Variables: {json.dumps(view.variables, default=str)}")
    for step in view.steps:
        extras = [f"attempt {step.attempt}"]
        if step.waiting:
            extras.append("waiting")
        if step.error:
            extras.append(f"{step.error.code}: {step.error.message}")
        typer.echo(
            f"- {step.node_id}: {step.status.value} ({', '.join(extras)}) [{step.id}]"
        )
        for warning in step.warnings:
            typer.echo(f"    warning: {warning}")
    if view.error:
        typer.secho(f"Error {view.error.code}: {view.error.message}", fg=typer.colors.RED)


@execution_app.command("decide")
def execution_decide(
    execution_id: str,
    step_id: str,
    approve: bool = typer.Option(..., "--approve/--reject", help="Decision to record"),
    by: Optional[str] = typer.Option(None, help="Who decided"),
    comment: Optional[str] = typer.Option(None, help="Optional reviewer comment"),
) -> None:
    """Record an approval decision for a waiting step."""
    _run(
        _coordinator().decide(
            execution_id, step_id, approve, decided_by=by, comment=comment
        )
    )
    typer.echo(f"Step {step_id} {'approved' if approve else 'rejected'}")


@worker_app.command("run")
def worker_run(
    agent: List[str] = typer.Option(
        [], help="Agent to register as name=module:attribute (repeatable)"
    ),
    task_service: Optional[str] = typer.Option(
        None, help="Task service object as module:attribute"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run (default: run indefinitely)"
    ),
    concurrency: Optional[int] = typer.Option(
        None, min=1, help="Jobs to run at once (default: engine.worker_concurrency)"
    ),
) -> None:
    """
    Run a step worker that pulls dispatch jobs and executes nodes.

    Example:
        forgeflow worker run --agent summarizer=myapp.agents:summarizer --concurrency 4
    """
    agents = {}
    for item in agent:
        name, _, reference = item.partition("=")
        if not reference:
            raise typer.BadParameter(f"Expected name=module:attribute, got '{item}'")
        agents[name] = _load_object(reference)
    service = _load_object(task_service) if task_service else None

    config = load_config()
    transport = get_transport(config=config)
    worker = StepWorker(
        get_state_store(),
        transport,
        default_registry(agents=agents, task_service=service),
        events=EventEmitter(transport if config.engine.publish_events else None),
        config=config.engine,
    )
    slots = concurrency or config.engine.worker_concurrency
    typer.echo(f"Starting worker on {config.engine.topics.steps} ({slots} at a time)")
    _run(
        _serve_transport(
            transport, worker.start(lifespan=lifespan, concurrency=concurrency)
        )
    )


@coordinator_app.command("run")
def coordinator_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run (default: run indefinitely)"
    ),
) -> None:
    """Run a coordinator consuming step completions."""
    coordinator = _coordinator()
    typer.echo(f"Starting coordinator on {coordinator.config.topics.completions}")
    _run(
        _serve_transport(
            coordinator.transport, coordinator.consume_completions(lifespan=lifespan)
        )
    )


async def _serve_transport(transport, loop: Awaitable[None]) -> None:
    await transport.connect()
    try:
        await loop
    finally:
        await transport.disconnect()


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Serve the HTTP trigger and query API."""
    import uvicorn

    from .api import create_app

    coordinator = _coordinator()
    uvicorn.run(create_app(coordinator), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
