"""Fixtures for local JSON API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from faultline.core import FaultlineDB
from faultline.dashboard import create_app
from faultline.repository import DefectRepository
from tests._db_factory import make_db

ADMIN = {"X-Actor-Id": "user-1", "X-Actor-Name": "John Smith", "X-Actor-Role": "Admin"}
SUPERVISOR = {"X-Actor-Id": "user-2", "X-Actor-Name": "Sarah Johnson", "X-Actor-Role": "Supervisor"}
FITTER = {"X-Actor-Id": "user-7", "X-Actor-Name": "David Lee", "X-Actor-Role": "Fitter"}
VIEWER = {"X-Actor-Id": "user-9", "X-Actor-Role": "Viewer"}


@pytest.fixture
def api_db(tmp_path: Path) -> Generator[FaultlineDB, None, None]:
    d = make_db(tmp_path, check_same_thread=False)
    yield d
    d.close()


@pytest.fixture
def api_repo(api_db: FaultlineDB) -> DefectRepository:
    return DefectRepository(api_db)


@pytest.fixture
async def client(api_repo: DefectRepository) -> AsyncIterator[AsyncClient]:
    """Test client over an app with no sync processor."""
    app = create_app(api_repo)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def create_defect(client: AsyncClient, **fields: object) -> dict[str, object]:
    body = {"title": "Hydraulic leak on main cylinder", "severity_model": "LMH", "severity": "Low", **fields}
    resp = await client.post("/api/defects", json=body, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    data: dict[str, object] = resp.json()
    return data
