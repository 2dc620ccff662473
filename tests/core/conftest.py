"""Fixtures for core store tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from faultline.core import FaultlineDB
from tests._db_factory import make_db


@pytest.fixture
def shared_db(tmp_path: Path) -> Generator[FaultlineDB, None, None]:
    """A DB whose connection may be used from worker threads."""
    d = make_db(tmp_path, check_same_thread=False)
    yield d
    d.close()
