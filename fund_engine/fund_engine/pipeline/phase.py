"""Phase marker of the settlement pipeline.

The marker says which step may run next.  It is persisted in the state
database so a restart resumes where the last completed step left it, and
every change goes through a compare-and-set so two overlapping ticks cannot
both claim the same step.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from fund_engine.state.store import SnapshotStore

logger = logging.getLogger(__name__)


class PhaseMarker(str, Enum):
    STEP1_START = "STEP1_START"
    STEP1_END = "STEP1_END"
    STEP2_START = "STEP2_START"
    STEP2_END = "STEP2_END"
    STEP3_START = "STEP3_START"
    STEP3_END = "STEP3_END"


INITIAL_PHASE = PhaseMarker.STEP3_END
DEFAULT_PIPELINE_NAME = "settlement"

# Where each step resumes from when it stopped before reaching its *_END marker.
ENTRY_PHASE = {
    PhaseMarker.STEP1_START: PhaseMarker.STEP3_END,
    PhaseMarker.STEP2_START: PhaseMarker.STEP1_END,
    PhaseMarker.STEP3_START: PhaseMarker.STEP2_END,
}


class PhaseTracker:
    """Owns the persisted phase marker.

    ``lock`` serialises steps within this process; the compare-and-set on
    the stored row guards against anything that slips past it.
    """

    def __init__(self, store: SnapshotStore, name: str = DEFAULT_PIPELINE_NAME) -> None:
        self._store = store
        self._name = name
        self.lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    async def current(self) -> PhaseMarker:
        raw = await self._store.load_phase(self._name, INITIAL_PHASE.value)
        try:
            return PhaseMarker(raw)
        except ValueError:
            logger.warning("Unknown stored phase %r for %s, treating as %s", raw, self._name, INITIAL_PHASE.value)
            return INITIAL_PHASE

    async def transition(self, expected: PhaseMarker, new: PhaseMarker) -> bool:
        """Move from *expected* to *new*; ``False`` if the marker was elsewhere."""
        await self._store.load_phase(self._name, INITIAL_PHASE.value)
        moved = await self._store.compare_and_set_phase(self._name, expected.value, new.value)
        if moved:
            logger.info("Phase %s: %s -> %s", self._name, expected.value, new.value, extra={"phase": new.value})
        return moved

    async def set(self, phase: PhaseMarker) -> None:
        await self._store.set_phase(self._name, phase.value)
        logger.info("Phase %s set to %s", self._name, phase.value, extra={"phase": phase.value})

    async def recover(self) -> tuple[PhaseMarker, PhaseMarker] | None:
        """Move a stale ``*_START`` marker back to that step's entry phase.

        Returns ``(stale, restored)`` when the marker moved, ``None`` when it
        was already at rest.  Only safe while no step is running.
        """
        current = await self.current()
        entry = ENTRY_PHASE.get(current)
        if entry is None:
            return None
        if not await self.transition(current, entry):
            return None
        logger.warning(
            "Phase %s recovered: %s -> %s", self._name, current.value, entry.value, extra={"phase": entry.value}
        )
        return current, entry
