"""Shared fixtures for CLI tests.

Every test gets its own SQLite state database through ``FUND_DATABASE_URL``
so commands that open the store never touch the working directory.
"""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def fund_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("FUND_DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.delenv("FUND_SIGNER_FACTORY", raising=False)
    monkeypatch.delenv("FUND_ALERT_WEBHOOK_URL", raising=False)
    return db_path
