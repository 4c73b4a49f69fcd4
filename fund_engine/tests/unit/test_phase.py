"""Tests for the persisted phase marker."""

from __future__ import annotations

import pytest

from fund_engine.pipeline.phase import INITIAL_PHASE, PhaseMarker, PhaseTracker
from fund_engine.state.store import SnapshotStore


class TestPhaseTracker:
    @pytest.mark.asyncio
    async def test_starts_at_step3_end(self, store: SnapshotStore) -> None:
        assert await PhaseTracker(store).current() is PhaseMarker.STEP3_END
        assert INITIAL_PHASE is PhaseMarker.STEP3_END

    @pytest.mark.asyncio
    async def test_transition_requires_expected_phase(self, store: SnapshotStore) -> None:
        tracker = PhaseTracker(store)

        assert await tracker.transition(PhaseMarker.STEP1_END, PhaseMarker.STEP2_START) is False
        assert await tracker.transition(PhaseMarker.STEP3_END, PhaseMarker.STEP1_START) is True
        assert await tracker.current() is PhaseMarker.STEP1_START

    @pytest.mark.asyncio
    async def test_marker_survives_a_new_tracker(self, store: SnapshotStore) -> None:
        await PhaseTracker(store).set(PhaseMarker.STEP2_END)
        assert await PhaseTracker(store).current() is PhaseMarker.STEP2_END

    @pytest.mark.asyncio
    async def test_pipelines_are_independent(self, store: SnapshotStore) -> None:
        await PhaseTracker(store, "alpha").set(PhaseMarker.STEP1_END)
        assert await PhaseTracker(store, "beta").current() is PhaseMarker.STEP3_END

    @pytest.mark.asyncio
    async def test_unknown_stored_value_falls_back(self, store: SnapshotStore) -> None:
        tracker = PhaseTracker(store)
        await store.load_phase(tracker.name, INITIAL_PHASE.value)
        await store.set_phase(tracker.name, "SOMETHING_ELSE")

        assert await tracker.current() is PhaseMarker.STEP3_END

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("stale", "restored"),
        [
            (PhaseMarker.STEP1_START, PhaseMarker.STEP3_END),
            (PhaseMarker.STEP2_START, PhaseMarker.STEP1_END),
            (PhaseMarker.STEP3_START, PhaseMarker.STEP2_END),
        ],
    )
    async def test_recover_moves_start_back_to_entry(
        self, store: SnapshotStore, stale: PhaseMarker, restored: PhaseMarker
    ) -> None:
        tracker = PhaseTracker(store)
        await tracker.set(stale)

        assert await tracker.recover() == (stale, restored)
        assert await tracker.current() is restored

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase", [PhaseMarker.STEP1_END, PhaseMarker.STEP2_END, PhaseMarker.STEP3_END])
    async def test_recover_leaves_resting_marker(self, store: SnapshotStore, phase: PhaseMarker) -> None:
        tracker = PhaseTracker(store)
        await tracker.set(phase)

        assert await tracker.recover() is None
        assert await tracker.current() is phase

    @pytest.mark.asyncio
    async def test_changed_at_tracks_last_move(self, store: SnapshotStore) -> None:
        tracker = PhaseTracker(store)
        assert await store.phase_changed_at(tracker.name) is None

        await tracker.current()
        changed_at = await store.phase_changed_at(tracker.name)

        assert changed_at is not None
        assert changed_at.tzinfo is not None
