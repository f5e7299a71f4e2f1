from __future__ import annotations

from pathlib import Path

import pytest
from factories import FrozenClock

from petsync.record_store import RecordStore
from petsync.utils.logging import reset_warnings


@pytest.fixture(autouse=True)
def _reset_rate_limited_warnings() -> None:
    reset_warnings()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "server.db")
