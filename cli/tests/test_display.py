"""Tests for the Rich display helpers."""

from __future__ import annotations

from datetime import UTC, datetime

from rich.console import Console

from cli.display import _coloured_state, _format_value, display_snapshots, display_step_result
from fund_engine.models.snapshot import SnapshotRecord, SnapshotState


def _console() -> Console:
    return Console(record=True, width=120, force_terminal=False)


class TestColouredState:
    def test_known_state(self) -> None:
        assert _coloured_state("distributed") == "[green]distributed[/green]"

    def test_unknown_state_is_white(self) -> None:
        assert _coloured_state("mystery") == "[white]mystery[/white]"


class TestDisplaySnapshots:
    def test_empty(self) -> None:
        console = _console()
        display_snapshots(console, [])
        assert "No snapshots found." in console.export_text()

    def test_rows(self) -> None:
        console = _console()
        snapshots = [
            SnapshotRecord(
                date=datetime(2025, 6, 1, tzinfo=UTC), state=SnapshotState.UNSTAKED, claim_nft_id="{claim-1}"
            ),
            SnapshotRecord(date=datetime(2025, 5, 1, tzinfo=UTC), state=SnapshotState.UNLOCK_STARTED),
        ]

        display_snapshots(console, snapshots)

        text = console.export_text()
        assert "2025-06-01T00:00:00+00:00" in text
        assert "{claim-1}" in text
        assert "unlock_started" in text


class TestDisplayStepResult:
    def test_nothing_to_do(self) -> None:
        console = _console()
        display_step_result(console, "STEP2", None)
        assert "STEP2: nothing to do." in console.export_text()

    def test_message(self) -> None:
        console = _console()
        display_step_result(console, "STEP1", "below unlock threshold")
        assert "STEP1: below unlock threshold" in console.export_text()

    def test_summary_panel(self) -> None:
        console = _console()
        display_step_result(console, "STEP3", {"tx_id": "tx_finish", "batches": 2})

        text = console.export_text()
        assert "STEP3 completed" in text
        assert "tx_finish" in text


class TestFormatValue:
    def test_list(self) -> None:
        assert _format_value(["tx_1", "tx_2"]) == "tx_1, tx_2"

    def test_empty_list(self) -> None:
        assert _format_value([]) == "-"

    def test_none(self) -> None:
        assert _format_value(None) == "-"
