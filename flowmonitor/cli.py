"""Command line interface for the flow monitor."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
import typer

from flowmonitor.schemas import ClientView
from flowmonitor.services.monitor import MonitorSession
from flowmonitor.settings import MonitorSettings

LOGGER = logging.getLogger("flowmonitor.cli")

app = typer.Typer(help="Trigger engine workflows and follow their executions")

DEFAULT_SERVER = "http://127.0.0.1:8000"


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """Flow monitor CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_inputs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    inputs: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise typer.BadParameter(f"'{pair}' is not in key=value form", param_hint="--input")
        key, value = pair.split("=", 1)
        inputs[key.strip()] = value
    return inputs


class _ViewPrinter:
    """Echo a line whenever the visible status, progress or connection changes."""

    def __init__(self) -> None:
        self._last: Optional[tuple] = None

    def __call__(self, view: ClientView) -> None:
        key = (view.status, round(view.progress_percent), view.connection_state, view.last_error)
        if key == self._last:
            return
        self._last = key
        line = (
            f"[{view.connection_state.value}] {view.execution_id or '-'} "
            f"{view.status.value} {view.progress_percent:.0f}%"
        )
        if view.last_error:
            line += f" ({view.last_error})"
        typer.echo(line)


def _print_summary(view: ClientView) -> None:
    for task in view.tasks:
        typer.echo(f"  {task.id}: {task.state}")
    typer.echo(f"Execution {view.execution_id} finished with status {view.status.value}")


async def _watch(server: str, execution_id: str) -> ClientView:
    settings = MonitorSettings.from_env()
    async with MonitorSession(server, settings=settings, on_update=_ViewPrinter()) as session:
        return await session.watch(execution_id)


def _exit_code(view: ClientView) -> int:
    return 0 if view.status.value == "success" else 1


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """Run the dashboard and API server."""
    import uvicorn

    uvicorn.run("flowmonitor.main:app", host=host, port=port, reload=reload)


@app.command()
def trigger(
    workflow_id: str,
    inputs: Optional[List[str]] = typer.Option(None, "--input", "-i", help="Workflow input as key=value"),
    server: str = typer.Option(DEFAULT_SERVER, help="Flow monitor server URL"),
    watch: bool = typer.Option(False, "--watch", help="Follow the execution until it finishes"),
) -> None:
    """
    Trigger a workflow through its webhook.

    Example:
        flowmonitor trigger hello-world --input name=Ada --watch
    """
    payload = {"workflowId": workflow_id, "inputs": parse_inputs(inputs)}
    try:
        response = httpx.post(f"{server.rstrip('/')}/api/trigger-workflow", json=payload, timeout=30)
    except httpx.HTTPError as exc:
        typer.echo(f"Could not reach {server}: {exc}", err=True)
        raise typer.Exit(code=2)
    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code >= 400:
        typer.echo(f"Trigger failed ({response.status_code}): {body.get('error', response.text)}", err=True)
        raise typer.Exit(code=1)

    execution_id = body["executionId"]
    typer.echo(json.dumps(body, indent=2))
    if not watch:
        return
    view = asyncio.run(_watch(server, execution_id))
    _print_summary(view)
    raise typer.Exit(code=_exit_code(view))


@app.command("watch")
def watch_execution(
    execution_id: str,
    server: str = typer.Option(DEFAULT_SERVER, help="Flow monitor server URL"),
) -> None:
    """Follow an execution's status stream until it reaches a terminal state."""
    view = asyncio.run(_watch(server, execution_id))
    _print_summary(view)
    raise typer.Exit(code=_exit_code(view))


if __name__ == "__main__":
    app()
