"""Rich output formatting for the fund-engine CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON output on *stdout* stays machine-readable.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from fund_engine.models.snapshot import SnapshotRecord


# ---------------------------------------------------------------------------
# State colour mapping
# ---------------------------------------------------------------------------

_STATE_COLOURS: dict[str, str] = {
    "unlock_started": "yellow",
    "unstake_started": "cyan",
    "unstaked": "magenta",
    "distributed": "green",
}


def _coloured_state(state: str) -> str:
    """Return a Rich markup string with the snapshot state colour-coded."""
    colour = _STATE_COLOURS.get(state, "white")
    return f"[{colour}]{state}[/{colour}]"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def display_snapshots(console: Console, snapshots: Sequence[SnapshotRecord]) -> None:
    """Render the snapshot list as a table, newest first.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    snapshots:
        Snapshots as returned by :meth:`SnapshotStore.list_snapshots`.
    """
    if not snapshots:
        console.print("[dim]No snapshots found.[/dim]")
        return

    table = Table(title="Snapshots", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Date", style="bold")
    table.add_column("State")
    table.add_column("Claim NFT")

    for snapshot in snapshots:
        table.add_row(
            snapshot.date.isoformat(),
            _coloured_state(snapshot.state.value),
            snapshot.claim_nft_id or "-",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


def display_step_result(console: Console, step: str, result: dict[str, Any] | str | None) -> None:
    """Summarise the outcome of one pipeline step."""
    if result is None:
        console.print(f"[dim]{step}: nothing to do.[/dim]")
        return
    if isinstance(result, str):
        console.print(f"[yellow]{step}: {result}[/yellow]")
        return

    lines = [f"[bold]{key}:[/bold] {_format_value(value)}" for key, value in result.items()]
    console.print(Panel("\n".join(lines), title=f"{step} completed", border_style="green"))


def _format_value(value: Any) -> str:
    if isinstance(value, list | tuple):
        return ", ".join(str(item) for item in value) if value else "-"
    if value is None:
        return "-"
    return str(value)
