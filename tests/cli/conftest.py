"""Fixtures for CLI interface tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from faultline.cli import cli


@pytest.fixture
def cli_in_project(tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> Generator[tuple[CliRunner, Path], None, None]:
    """Initialize a faultline project in tmp_path and return (runner, project_root)."""
    monkeypatch.delenv("FAULTLINE_ROLE", raising=False)
    monkeypatch.delenv("FAULTLINE_REMOTE_URL", raising=False)
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    result = cli_runner.invoke(cli, ["init"])
    assert result.exit_code == 0
    yield cli_runner, tmp_path
    os.chdir(original_cwd)


def _extract_code(create_output: str) -> str:
    """Extract the defect code from 'Created DEF-000001 (def-abc123): Title' output."""
    return create_output.split(" (")[0].replace("Created ", "").strip()
