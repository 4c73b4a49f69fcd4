"""fund-engine CLI application -- Typer-based operator interface.

Runs individual settlement steps by hand, inspects snapshots, prepares the
state database, and serves the API.  Human-readable output goes to *stderr*
via Rich; ``--json`` switches results to a JSON document on *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console

from cli.display import display_snapshots, display_step_result

if TYPE_CHECKING:
    from fund_engine.config import Settings
    from fund_engine.pipeline.settlement import SettlementPipeline

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="fund-engine",
    help="Fund settlement service - unlock, unstake and distribute node LSUs.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Register the serve command.
from cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output from the settlement engine.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _load_settings() -> Settings:
    from pydantic import ValidationError

    from fund_engine.config import load_settings

    try:
        return load_settings()
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=3) from exc


async def _with_pipeline(
    settings: Settings,
    action: Callable[[SettlementPipeline], Awaitable[Any]],
) -> Any:
    """Build the pipeline, run *action* on it, and release every resource."""
    from fund_engine.pipeline.factory import build_pipeline
    from fund_engine.signing import load_signer
    from fund_engine.state.database import create_tables, get_engine

    signer = load_signer(settings.signer_factory or "")
    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    try:
        await create_tables(engine)
        resources = build_pipeline(settings, engine, signer)
        try:
            return await action(resources.pipeline)
        finally:
            await resources.aclose()
    finally:
        await engine.dispose()


def _run_pipeline_action(label: str, action: Callable[[SettlementPipeline], Awaitable[Any]]) -> None:
    from fund_engine.distribution.engine import DistributionPersistenceError
    from fund_engine.pipeline.settlement import InvariantViolationError, StepFailedError
    from fund_engine.signing import SignerConfigError

    settings = _load_settings()
    if not settings.signer_factory:
        console.print("[red]FUND_SIGNER_FACTORY is not set; cannot sign transactions.[/red]")
        raise typer.Exit(code=3)

    try:
        result = asyncio.run(_with_pipeline(settings, action))
    except SignerConfigError as exc:
        console.print(f"[red]Signer error:[/red] {exc}")
        raise typer.Exit(code=3) from exc
    except (StepFailedError, InvariantViolationError, DistributionPersistenceError) as exc:
        if _json_output:
            _emit_json({"success": False, "error": str(exc)})
        else:
            console.print(f"[red]{label} failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if _json_output:
        _emit_json({"success": True, "data": result})
    else:
        display_step_result(console, label, result)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def step(
    number: int = typer.Argument(..., min=1, max=3, help="Settlement step to run (1, 2 or 3)."),
) -> None:
    """Run one settlement step now, honouring the phase marker."""

    async def action(pipeline: SettlementPipeline) -> Any:
        if number == 1:
            return await pipeline.run_step1()
        if number == 2:
            return await pipeline.run_step2()
        return await pipeline.run_step3()

    _run_pipeline_action(f"STEP{number}", action)


@app.command(name="reset-stuck")
def reset_stuck() -> None:
    """Close a distribution round left open by an interrupted STEP3."""

    async def action(pipeline: SettlementPipeline) -> Any:
        return await pipeline.reset_stuck_distribution()

    _run_pipeline_action("RESET", action)


@app.command(name="phase")
def phase(
    set_to: str | None = typer.Option(
        None,
        "--set",
        help="Overwrite the marker (e.g. STEP3_END). Only while no step is running.",
    ),
) -> None:
    """Show the persisted phase marker, or force it with --set."""
    from fund_engine.pipeline.phase import PhaseMarker, PhaseTracker
    from fund_engine.state.database import create_tables, get_engine
    from fund_engine.state.store import SnapshotStore

    settings = _load_settings()

    target: PhaseMarker | None = None
    if set_to is not None:
        try:
            target = PhaseMarker(set_to.upper())
        except ValueError as exc:
            valid = ", ".join(m.value for m in PhaseMarker)
            console.print(f"[red]Unknown phase '{set_to}'. Expected one of: {valid}[/red]")
            raise typer.Exit(code=2) from exc

    async def _apply() -> tuple[str, str]:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            await create_tables(engine)
            tracker = PhaseTracker(SnapshotStore(engine))
            previous = await tracker.current()
            if target is None:
                return previous.value, previous.value
            await tracker.set(target)
            return previous.value, target.value
        finally:
            await engine.dispose()

    previous, current = asyncio.run(_apply())
    if target is None:
        if _json_output:
            _emit_json({"phase": current})
        else:
            console.print(f"[bold]Phase:[/bold] {current}")
        return

    if _json_output:
        _emit_json({"phase": current, "previous": previous})
    else:
        console.print(f"[yellow]Phase marker moved from {previous} to {current}[/yellow]")


@app.command(name="init-db")
def init_db() -> None:
    """Create the state tables if they do not exist."""
    from fund_engine.state.database import create_tables, get_engine

    settings = _load_settings()

    async def _create() -> None:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            await create_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_create())
    console.print(f"[green]✓[/green] State tables ready ({settings.database_url.split('://', 1)[0]})")


@app.command(name="snapshots")
def snapshots(
    state: str | None = typer.Option(
        None,
        "--state",
        help="Only snapshots in this state (unlock_started, unstake_started, unstaked, distributed).",
    ),
    days_ago: int | None = typer.Option(
        None,
        "--days-ago",
        min=0,
        help="Only snapshots taken within this many days.",
    ),
    limit: int = typer.Option(20, "--limit", min=1, max=1000, help="Maximum rows to show."),
) -> None:
    """List recent snapshots, newest first."""
    from fund_engine.models.snapshot import SnapshotState
    from fund_engine.pipeline.factory import build_store
    from fund_engine.state.database import create_tables, get_engine

    settings = _load_settings()

    state_filter: SnapshotState | None = None
    if state is not None:
        try:
            state_filter = SnapshotState(state.lower())
        except ValueError as exc:
            valid = ", ".join(s.value for s in SnapshotState)
            console.print(f"[red]Unknown state '{state}'. Expected one of: {valid}[/red]")
            raise typer.Exit(code=2) from exc

    async def _list() -> list[Any]:
        engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
        try:
            await create_tables(engine)
            return await build_store(settings, engine).list_snapshots(
                state=state_filter, days_ago=days_ago, limit=limit
            )
        finally:
            await engine.dispose()

    records = asyncio.run(_list())
    if _json_output:
        _emit_json([record.model_dump(mode="json") for record in records])
    else:
        display_snapshots(console, records)
