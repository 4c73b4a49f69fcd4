"""Shared fixtures for fund_engine tests.

Provides an on-disk SQLite state database per test, a snapshot store bound
to it, and a settings object with deterministic addresses.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from fund_engine.config import Settings, load_settings
from fund_engine.retry import RetryConfig
from fund_engine.state.database import create_tables
from fund_engine.state.sqlite_adapter import get_local_engine
from fund_engine.state.store import SnapshotStore


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = get_local_engine(tmp_path / "state.db")
    await create_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> SnapshotStore:
    return SnapshotStore(engine, RetryConfig(max_retries=0))


@pytest.fixture
def settings() -> Settings:
    return load_settings(
        bot_account_address="account_bot",
        validator_address="validator_node",
        fund_manager_component="component_fund",
        fund_bot_badge="resource_badge",
        node_lsu_resource="resource_lsu",
        fund_unit_resource="resource_fund_unit",
        claim_nft_resource="resource_claim",
        collateral_nft_resource="resource_collateral",
        xrd_resource="resource_xrd",
        oracle_market_id="XRD/USD",
        unlock_threshold=Decimal(100),
        distribution_batch_size=2,
        tx_retry_delay=0.0,
        alert_webhook_url=None,
    )
