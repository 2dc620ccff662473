"""Shared utilities, types, and Protocol for store mixins."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol

Collection = Literal["defects", "counters", "settings", "outbox"]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that store mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self.get(), etc. without ``type: ignore`` on every call.
    Actual implementations are provided by FaultlineDB at composition time.
    """

    db_path: Path
    _conn: sqlite3.Connection | None
    _tx_depth: int

    @property
    def conn(self) -> sqlite3.Connection: ...

    def _commit(self) -> None: ...

    def get(self, collection: Collection, key: str) -> dict[str, Any] | None: ...

    def put(self, collection: Collection, value: dict[str, Any]) -> None: ...

    def add(self, collection: Collection, value: dict[str, Any]) -> None: ...

    def delete(self, collection: Collection, key: str) -> bool: ...

    def get_all(self, collection: Collection) -> list[dict[str, Any]]: ...
