"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from fund_engine.state.database import create_tables, get_engine, get_session
from fund_engine.state.repository import (
    InvalidStateTransitionError,
    PipelineStateRepository,
    SnapshotNotFoundError,
    SnapshotRepository,
)
from fund_engine.state.store import SnapshotStore

__all__ = [
    "InvalidStateTransitionError",
    "PipelineStateRepository",
    "SnapshotNotFoundError",
    "SnapshotRepository",
    "SnapshotStore",
    "create_tables",
    "get_engine",
    "get_session",
]
