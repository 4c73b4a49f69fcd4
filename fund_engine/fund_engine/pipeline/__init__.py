"""Settlement pipeline: phase marker, step orchestration, and wiring."""

from fund_engine.pipeline.factory import PipelineResources, build_pipeline
from fund_engine.pipeline.phase import PhaseMarker, PhaseTracker
from fund_engine.pipeline.settlement import (
    NOT_ENOUGH_TO_UNLOCK,
    DistributionMismatchError,
    InvariantViolationError,
    SettlementPipeline,
    StepFailedError,
)

__all__ = [
    "NOT_ENOUGH_TO_UNLOCK",
    "DistributionMismatchError",
    "InvariantViolationError",
    "PhaseMarker",
    "PhaseTracker",
    "PipelineResources",
    "SettlementPipeline",
    "StepFailedError",
    "build_pipeline",
]
