"""Tests for cli/cli/app.py -- the fund-engine operator CLI.

Uses typer.testing.CliRunner to invoke each command against a throwaway
SQLite state database.  Commands that need a signer are exercised by
patching ``cli.app._with_pipeline`` so no ledger or oracle is contacted.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from cli.app import app
from fund_engine.models.snapshot import SnapshotState
from fund_engine.pipeline.settlement import StepFailedError
from fund_engine.state.database import create_tables
from fund_engine.state.sqlite_adapter import get_local_engine
from fund_engine.state.store import SnapshotStore

runner = CliRunner()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seed(db_path: Path, rows: list[tuple[datetime, SnapshotState, str | None]]) -> None:
    async def _write() -> None:
        engine = get_local_engine(db_path)
        try:
            await create_tables(engine)
            store = SnapshotStore(engine)
            for date, state, claim in rows:
                await store.upsert_snapshot(date, SnapshotState.UNLOCK_STARTED, {"account_a": "10"})
                if state is not SnapshotState.UNLOCK_STARTED:
                    await store.upsert_snapshot(date, state, {}, update_accounts=False, claim_nft_id=claim)
        finally:
            await engine.dispose()

    asyncio.run(_write())


def _pipeline_stub(**results: Any) -> MagicMock:
    pipeline = MagicMock()
    pipeline.run_step1 = AsyncMock(return_value=results.get("step1"))
    pipeline.run_step2 = AsyncMock(return_value=results.get("step2"))
    pipeline.run_step3 = AsyncMock(return_value=results.get("step3"))
    pipeline.reset_stuck_distribution = AsyncMock(return_value=results.get("reset"))
    return pipeline


def _patched_pipeline(pipeline: MagicMock):
    async def fake_with_pipeline(settings: Any, action: Any) -> Any:
        return await action(pipeline)

    return patch("cli.app._with_pipeline", new=fake_with_pipeline)


# ---------------------------------------------------------------------------
# Help
# ---------------------------------------------------------------------------


class TestHelp:
    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "step" in result.output
        assert "snapshots" in result.output

    def test_step_help(self) -> None:
        result = runner.invoke(app, ["step", "--help"])
        assert result.exit_code == 0
        assert "phase marker" in result.output


# ---------------------------------------------------------------------------
# init-db / phase
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_creates_database(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0, result.output
        assert fund_env.exists()
        assert "State tables ready" in result.output


class TestPhase:
    def test_fresh_database_is_idle(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["phase"])

        assert result.exit_code == 0, result.output
        assert "STEP3_END" in result.output

    def test_json_output(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["--json", "phase"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"phase": "STEP3_END"}

    def test_set_recovers_a_stuck_marker(self, fund_env: Path) -> None:
        assert runner.invoke(app, ["phase", "--set", "STEP1_START"]).exit_code == 0

        result = runner.invoke(app, ["--json", "phase", "--set", "step3_end"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"phase": "STEP3_END", "previous": "STEP1_START"}
        assert json.loads(runner.invoke(app, ["--json", "phase"]).stdout) == {"phase": "STEP3_END"}

    def test_set_rejects_unknown_phase(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["phase", "--set", "STEP4_END"])

        assert result.exit_code == 2
        assert "Unknown phase" in result.output


# ---------------------------------------------------------------------------
# snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_empty(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["snapshots"])

        assert result.exit_code == 0, result.output
        assert "No snapshots found" in result.output

    def test_json_lists_newest_first(self, fund_env: Path) -> None:
        now = datetime.now(UTC).replace(microsecond=0)
        _seed(
            fund_env,
            [
                (now - timedelta(days=2), SnapshotState.DISTRIBUTED, "{claim-1}"),
                (now - timedelta(hours=1), SnapshotState.UNLOCK_STARTED, None),
            ],
        )

        result = runner.invoke(app, ["--json", "snapshots"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert [row["state"] for row in data] == ["unlock_started", "distributed"]
        assert data[1]["claim_nft_id"] == "{claim-1}"

    def test_state_filter_is_case_insensitive(self, fund_env: Path) -> None:
        now = datetime.now(UTC).replace(microsecond=0)
        _seed(
            fund_env,
            [
                (now - timedelta(days=2), SnapshotState.DISTRIBUTED, "{claim-1}"),
                (now - timedelta(hours=1), SnapshotState.UNLOCK_STARTED, None),
            ],
        )

        result = runner.invoke(app, ["--json", "snapshots", "--state", "DISTRIBUTED"])

        assert result.exit_code == 0, result.output
        assert [row["state"] for row in json.loads(result.stdout)] == ["distributed"]

    def test_table_output(self, fund_env: Path) -> None:
        _seed(fund_env, [(datetime.now(UTC) - timedelta(days=1), SnapshotState.UNSTAKE_STARTED, "{claim-9}")])

        result = runner.invoke(app, ["snapshots"])

        assert result.exit_code == 0, result.output
        assert "unstake_started" in result.output
        assert "{claim-9}" in result.output

    def test_unknown_state_exits_2(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["snapshots", "--state", "pending"])

        assert result.exit_code == 2
        assert "Unknown state" in result.output


# ---------------------------------------------------------------------------
# step / reset-stuck
# ---------------------------------------------------------------------------


class TestStep:
    def test_requires_signer_factory(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["step", "1"])

        assert result.exit_code == 3
        assert "FUND_SIGNER_FACTORY" in result.output

    def test_unloadable_signer_exits_3(self, fund_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FUND_SIGNER_FACTORY", "no_such_wallet_module:make_signer")

        result = runner.invoke(app, ["step", "2"])

        assert result.exit_code == 3
        assert "Signer error" in result.output

    def test_step_number_out_of_range(self, fund_env: Path) -> None:
        result = runner.invoke(app, ["step", "4"])
        assert result.exit_code == 2

    @pytest.mark.parametrize("number,method", [(1, "run_step1"), (2, "run_step2"), (3, "run_step3")])
    def test_dispatches_to_step(self, fund_env: Path, monkeypatch: pytest.MonkeyPatch, number: int, method: str) -> None:
        monkeypatch.setenv("FUND_SIGNER_FACTORY", "wallet:make_signer")
        pipeline = _pipeline_stub()

        with _patched_pipeline(pipeline):
            result = runner.invoke(app, ["step", str(number)])

        assert result.exit_code == 0, result.output
        getattr(pipeline, method).assert_awaited_once()
        assert f"STEP{number}: nothing to do" in result.output

    def test_json_result(self, fund_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FUND_SIGNER_FACTORY", "wallet:make_signer")
        pipeline = _pipeline_stub(step2={"snapshot_date": "2025-06-01T00:00:00+00:00", "tx_id": "tx_unstake"})

        with _patched_pipeline(pipeline):
            result = runner.invoke(app, ["--json", "step", "2"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {
            "success": True,
            "data": {"snapshot_date": "2025-06-01T00:00:00+00:00", "tx_id": "tx_unstake"},
        }

    def test_failure_exits_1(self, fund_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FUND_SIGNER_FACTORY", "wallet:make_signer")
        pipeline = _pipeline_stub()
        pipeline.run_step1.side_effect = StepFailedError("STEP1", "unlock transaction failed")

        with _patched_pipeline(pipeline):
            result = runner.invoke(app, ["--json", "step", "1"])

        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"success": False, "error": "STEP1: unlock transaction failed"}


class TestResetStuck:
    def test_reports_close_transaction(self, fund_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FUND_SIGNER_FACTORY", "wallet:make_signer")
        pipeline = _pipeline_stub(reset={"tx_id": "tx_close"})

        with _patched_pipeline(pipeline):
            result = runner.invoke(app, ["reset-stuck"])

        assert result.exit_code == 0, result.output
        pipeline.reset_stuck_distribution.assert_awaited_once()
        assert "tx_close" in result.output
