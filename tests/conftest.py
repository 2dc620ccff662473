"""Shared pytest fixtures for faultline tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from faultline.core import FaultlineDB
from faultline.models import Actor
from faultline.repository import DefectRepository
from tests._db_factory import make_db


@pytest.fixture
def db(tmp_path: Path) -> Generator[FaultlineDB, None, None]:
    """Fresh FaultlineDB for each test."""
    d = make_db(tmp_path)
    yield d
    d.close()


@pytest.fixture
def repo(db: FaultlineDB) -> DefectRepository:
    return DefectRepository(db)


@pytest.fixture
def admin() -> Actor:
    return Actor(id="user-1", name="John Smith", role="Admin")


@pytest.fixture
def supervisor() -> Actor:
    return Actor(id="user-2", name="Sarah Johnson", role="Supervisor")


@pytest.fixture
def fitter() -> Actor:
    return Actor(id="user-7", name="David Lee", role="Fitter")


@pytest.fixture
def viewer() -> Actor:
    return Actor(id="user-9", name="Vic Viewer", role="Viewer")


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
