"""Command line interface for operating flowgate."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import load_config
from .context import Caller
from .db import Workflow
from .errors import FlowgateError
from .runtime import Runtime, create_runtime

T = TypeVar("T")

app = typer.Typer(help="CLI for flowgate workflow executions")

# Command groups
catalog_app = typer.Typer(help="Commands for the workflow catalog")
execution_app = typer.Typer(help="Commands for inspecting executions")
inputs_app = typer.Typer(help="Commands for pending user inputs")
cleanup_app = typer.Typer(help="Commands for the expiry cleanup sweep")

app.add_typer(catalog_app, name="catalog")
app.add_typer(execution_app, name="execution")
app.add_typer(inputs_app, name="inputs")
app.add_typer(cleanup_app, name="cleanup")

state: dict[str, Any] = {}


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """Flowgate CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config_path:
        state["config_path"] = str(config_path)


def _run(action: Callable[[Runtime], Awaitable[T]]) -> T:
    """Start a runtime, run ``action`` against it and shut it down."""

    async def _main() -> T:
        runtime = create_runtime(load_config(state.get("config_path")))
        await runtime.start()
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_main())
    except FlowgateError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command("serve")
def serve(
    host: str = "127.0.0.1",
    port: int = 8000,
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    if state.get("config_path"):
        os.environ["FLOWGATE_CONFIG"] = state["config_path"]
    config = load_config(state.get("config_path"))
    uvicorn.run(
        "flowgate.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower(),
    )


@app.command("initdb")
def initdb() -> None:
    """Create the database tables."""

    async def _noop(runtime: Runtime) -> str:
        return runtime.db.database_url

    url = _run(_noop)
    typer.echo(f"Database initialised: {url}")


@catalog_app.command("load")
def catalog_load(path: Path) -> None:
    """
    Register catalog workflows from a YAML file.

    The file holds a list of workflow entries, for example:

        - id: summarize
          engine_workflow_id: "12"
          name: Summarize document
          estimated_cost: 0.02
          nodes:
            - {name: Wait, type: n8n-nodes-base.wait}
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        entries = yaml.safe_load(f) or []
    if isinstance(entries, dict):
        entries = entries.get("workflows", [])

    async def _load(runtime: Runtime) -> int:
        for entry in entries:
            await runtime.db.add_workflow(Workflow(**entry))
        return len(entries)

    count = _run(_load)
    typer.echo(f"Loaded {count} workflow(s)")


@execution_app.command("list")
def execution_list(
    user_id: str = typer.Option(..., "--user"),
    workspace_id: str = typer.Option(..., "--workspace"),
    status: Optional[str] = None,
    workflow_id: Optional[str] = typer.Option(None, "--workflow"),
    limit: int = 50,
) -> None:
    """List a user's executions with their status."""
    caller = Caller(user_id=user_id, workspace_id=workspace_id)

    async def _list(runtime: Runtime):
        return await runtime.coordinator.list_executions(caller, status, workflow_id, limit)

    views = _run(_list)
    if not views:
        typer.echo("No executions found")
        return
    for view in views:
        typer.echo(f"{view.id}\t{view.workflow_id}\t{view.status}")


@execution_app.command("show")
def execution_show(
    execution_id: str,
    user_id: str = typer.Option(..., "--user"),
    workspace_id: str = typer.Option(..., "--workspace"),
) -> None:
    """Show one execution including its wait state."""
    caller = Caller(user_id=user_id, workspace_id=workspace_id)

    async def _show(runtime: Runtime):
        return await runtime.coordinator.get_execution(caller, execution_id)

    handle = _run(_show)
    _echo_json(handle.view().to_json())


@inputs_app.command("pending")
def inputs_pending(
    user_id: str = typer.Option(..., "--user"),
    workspace_id: str = typer.Option(..., "--workspace"),
    limit: int = 10,
    priority: Optional[str] = None,
) -> None:
    """List inputs waiting for the user, most urgent first."""
    caller = Caller(user_id=user_id, workspace_id=workspace_id)

    async def _pending(runtime: Runtime):
        return await runtime.tracker.list_pending(caller, limit, priority)

    pending = _run(_pending)
    if not pending.inputs:
        typer.echo("No pending inputs")
        return
    for item in pending.inputs:
        typer.echo(
            f"{item.id}\tstep {item.step}\t{item.metadata.get('priority')}\t"
            f"{item.time_remaining_minutes}m left\t{item.webhook_url}"
        )
    summary = pending.summary
    typer.echo(
        f"{summary.total_pending} pending, {summary.high_priority_count} high priority, "
        f"{summary.expiring_count} expiring soon"
    )


@cleanup_app.command("run")
def cleanup_run() -> None:
    """Run one expiry cleanup sweep now."""

    async def _sweep(runtime: Runtime):
        return await runtime.sweeper.run_once(triggered_by="cli")

    stats = _run(_sweep)
    _echo_json(stats.to_json())


@cleanup_app.command("status")
def cleanup_status() -> None:
    """Show whether a sweep is running and when it last ran."""

    async def _status(runtime: Runtime):
        return await runtime.sweeper.status()

    _echo_json(_run(_status).to_json())


@cleanup_app.command("watch")
def cleanup_watch(
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps"),
) -> None:
    """Sweep on a fixed interval until interrupted."""

    async def _watch(runtime: Runtime) -> None:
        await runtime.sweeper.run_forever(interval)

    try:
        _run(_watch)
    except KeyboardInterrupt:
        typer.echo("Stopped")

