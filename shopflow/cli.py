"""Command line interface for inspecting and operating shopflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from shopflow.config import load_config
from shopflow.contracts import RunStatus
from shopflow.errors import RunNotFoundError
from shopflow.persistence import get_journal
from shopflow.runtime import build_runtime

app = typer.Typer(help="CLI for shopflow workflows")

workflow_app = typer.Typer(help="Commands for managing workflow runs")

app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level")
) -> None:
    """Shopflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@workflow_app.command("list")
def workflow_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only show runs in this status")
) -> None:
    """
    List workflow runs with their current status.

    Example:
        shopflow workflow list
        shopflow workflow list --status failed
        # Output: 3f2a...    online_booking    completed
    """
    journal = get_journal()
    runs = asyncio.run(journal.list_runs(status))
    if not runs:
        typer.echo("No workflows found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.definition_name}\t{run.status.value}")


@workflow_app.command("show")
def workflow_show(run_id: str) -> None:
    """
    Show a run's status, arguments, result and step history.

    Example:
        shopflow workflow show 3f2a...
        # Output: Workflow 3f2a... (campaign_generation): failed
        #         - generate_campaign_text #1: failed (boom)
    """
    journal = get_journal()
    run = asyncio.run(journal.get_run(run_id))
    if run is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {run.id} ({run.definition_name}): {run.status.value}")
    typer.echo(f"Pool: {run.pool.value}  Cursor: {run.cursor}")
    if run.args:
        typer.echo(f"Args: {json.dumps(run.args)}")
    if run.result is not None:
        typer.echo(f"Result: {run.result.model_dump_json()}")
    if run.on_complete is not None:
        fired = "fired" if run.on_complete_fired else "not fired"
        typer.echo(f"On complete: {run.on_complete.handler_ref} ({fired})")
        if run.on_complete_error:
            typer.echo(f"On complete error: {run.on_complete_error}")
    for entry in run.history:
        line = f"- {entry.step_name} #{entry.attempt}: {entry.status.value}"
        if entry.error:
            line += f" ({entry.error})"
        typer.echo(line)


@workflow_app.command("cancel")
def workflow_cancel(run_id: str) -> None:
    """Cancel a running workflow and fire its completion handler."""

    async def _cancel() -> bool:
        runtime = build_runtime()
        try:
            await runtime.store.init_db()
            return await runtime.manager.cancel(run_id)
        finally:
            await runtime.close()

    try:
        canceled = asyncio.run(_cancel())
    except RunNotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    if canceled:
        typer.echo(f"Canceled {run_id}")
    else:
        typer.echo(f"Workflow {run_id} already finished")


@workflow_app.command("recover")
def workflow_recover(
    wait: bool = typer.Option(True, help="Wait for resumed runs to drain before exiting")
) -> None:
    """
    Resume unfinished runs and fire outstanding completion handlers.

    Example:
        shopflow workflow recover
        # Output: Recovered 2 run(s)
    """

    async def _recover() -> list[str]:
        runtime = build_runtime()
        try:
            recovered = await runtime.start()
            if wait:
                await runtime.pools.wait_idle()
            return recovered
        finally:
            await runtime.close()

    recovered = asyncio.run(_recover())
    typer.echo(f"Recovered {len(recovered)} run(s)")
    for run_id in recovered:
        typer.echo(f"- {run_id}")


@app.command("pools")
def pools() -> None:
    """Show the configured parallelism of each priority pool."""
    config = load_config()
    typer.echo("POOL\tMAX_PARALLELISM")
    typer.echo(f"high\t{config.pools.high}")
    typer.echo(f"default\t{config.pools.default}")
    typer.echo(f"low\t{config.pools.low}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
