"""Persistent store for the defect lifecycle engine.

Single source of truth for all SQLite operations. The CLI, the local API and
the sync processor all import from this module. No daemon, just direct
SQLite with WAL mode, so local mutations survive restarts and keep working
while the remote system of record is unreachable.

The store exposes four independent keyed collections (defects, counters,
settings, outbox). Each value is a JSON document; a handful of fields are
mirrored into indexed columns so lookups by code, status, severity, asset,
site, and creation time do not need a full scan.

Convention-based discovery: each project has a `.faultline/` directory
containing `faultline.db` (SQLite) and `config.json` (code prefix, sync
options).
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from faultline.db_base import Collection
from faultline.db_counters import CountersMixin
from faultline.db_outbox import OutboxMixin
from faultline.db_settings import SETTINGS_KEY, SettingsMixin
from faultline.models import DefectSettings
from faultline.types.core import ProjectConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

FAULTLINE_DIR_NAME = ".faultline"
DB_FILENAME = "faultline.db"
CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG = ProjectConfig(
    code_prefix="DEF",
    id_prefix="def",
    sequence="defect",
    sync_timeout=10.0,
    max_retries=5,
    version=1,
)


def find_faultline_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .faultline/ directory.

    Returns the .faultline/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / FAULTLINE_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {FAULTLINE_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(faultline_dir: Path) -> ProjectConfig:
    """Read .faultline/config.json merged over defaults. Returns defaults if missing or corrupt."""
    config = ProjectConfig(**DEFAULT_CONFIG)
    config_path = faultline_dir / CONFIG_FILENAME
    if not config_path.exists():
        return config
    try:
        loaded = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return config
    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return config
    config.update(loaded)  # type: ignore[typeddict-item]
    return config


def write_config(faultline_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .faultline/config.json."""
    config_path = faultline_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS defects (
    id          TEXT PRIMARY KEY,
    code        TEXT NOT NULL,
    status      TEXT NOT NULL,
    severity    TEXT NOT NULL,
    asset_id    TEXT,
    site_id     TEXT,
    created_at  TEXT NOT NULL,
    doc         TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_defects_code ON defects(code);
CREATE INDEX IF NOT EXISTS idx_defects_status ON defects(status);
CREATE INDEX IF NOT EXISTS idx_defects_severity ON defects(severity);
CREATE INDEX IF NOT EXISTS idx_defects_asset ON defects(asset_id);
CREATE INDEX IF NOT EXISTS idx_defects_site ON defects(site_id);
CREATE INDEX IF NOT EXISTS idx_defects_created ON defects(created_at);

CREATE TABLE IF NOT EXISTS counters (
    name   TEXT PRIMARY KEY,
    value  INTEGER NOT NULL DEFAULT 0,
    doc    TEXT NOT NULL,
    CHECK (value >= 0)
);

CREATE TABLE IF NOT EXISTS settings (
    key  TEXT PRIMARY KEY,
    doc  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox (
    id               TEXT PRIMARY KEY,
    type             TEXT NOT NULL,
    defect_id        TEXT NOT NULL,
    retries          INTEGER NOT NULL DEFAULT 0,
    next_attempt_at  REAL NOT NULL DEFAULT 0,
    doc              TEXT NOT NULL,
    CHECK (type IN ('create', 'update', 'delete', 'close', 'reopen'))
);

CREATE INDEX IF NOT EXISTS idx_outbox_due ON outbox(next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_outbox_defect ON outbox(defect_id);
"""

CURRENT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class _CollectionSpec:
    table: str
    key: str
    # Document fields mirrored into same-named indexed columns
    indexes: tuple[str, ...] = ()


_COLLECTIONS: dict[str, _CollectionSpec] = {
    "defects": _CollectionSpec("defects", "id", ("code", "status", "severity", "asset_id", "site_id", "created_at")),
    "counters": _CollectionSpec("counters", "name", ("value",)),
    "settings": _CollectionSpec("settings", "key"),
    "outbox": _CollectionSpec("outbox", "id", ("type", "defect_id", "retries", "next_attempt_at")),
}


def _spec(collection: str) -> _CollectionSpec:
    try:
        return _COLLECTIONS[collection]
    except KeyError:
        msg = f"Unknown collection: {collection!r}. Valid: {', '.join(_COLLECTIONS)}"
        raise ValueError(msg) from None


# ---------------------------------------------------------------------------
# FaultlineDB: the store
# ---------------------------------------------------------------------------


class FaultlineDB(CountersMixin, SettingsMixin, OutboxMixin):
    """Durable keyed storage over SQLite. Explicit ``initialize()`` / ``close()``."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        id_prefix: str = "def",
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.id_prefix = id_prefix
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._tx_depth = 0
        self._sequence_locks: dict[str, threading.Lock] = {}
        self._sequence_locks_guard = threading.Lock()

    @classmethod
    def from_project(cls, project_path: Path | None = None, *, check_same_thread: bool = True) -> FaultlineDB:
        """Create a FaultlineDB by discovering .faultline/ from project_path (or cwd)."""
        faultline_dir = find_faultline_root(project_path)
        config = read_config(faultline_dir)
        db = cls(
            faultline_dir / DB_FILENAME,
            id_prefix=config.get("id_prefix", "def"),
            check_same_thread=check_same_thread,
        )
        db.initialize()
        return db

    def __enter__(self) -> FaultlineDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables (if new), then seed the singleton settings and default counter.

        Settings are created once; an existing settings document is never
        overwritten here.
        """
        if self.get_schema_version() == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        if self.get("settings", SETTINGS_KEY) is None:
            self.put("settings", {"key": SETTINGS_KEY, "settings": DefectSettings().to_dict()})
            logger.debug("Seeded default defect settings")
        self.conn.execute(
            "INSERT OR IGNORE INTO counters (name, value, doc) VALUES (?, 0, ?)",
            ("defect", json.dumps({"name": "defect", "value": 0})),
        )
        self.conn.commit()

    def get_schema_version(self) -> int:
        """Return the current schema version from PRAGMA user_version."""
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def reconnect(self, *, check_same_thread: bool = True) -> None:
        """Close and reopen the connection, e.g. to share it with a server threadpool."""
        self.close()
        self._check_same_thread = check_same_thread

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- Transactions --------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[FaultlineDB]:
        """Group several store operations into one commit.

        Nested blocks join the outermost transaction. Any exception rolls back
        everything written since the outermost block began.
        """
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self.conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    def _generate_unique_id(self, collection: Collection = "defects") -> str:
        """Generate a unique ID using O(1) EXISTS checks against the PK index."""
        spec = _spec(collection)
        for _ in range(10):
            candidate = f"{self.id_prefix}-{uuid.uuid4().hex[:10]}"
            if self.conn.execute(f"SELECT 1 FROM {spec.table} WHERE {spec.key} = ?", (candidate,)).fetchone() is None:
                return candidate
        return f"{self.id_prefix}-{uuid.uuid4().hex[:16]}"

    # -- Generic collection operations --------------------------------------

    def _row_values(self, spec: _CollectionSpec, value: dict[str, Any]) -> tuple[list[str], list[Any]]:
        if spec.key not in value or not value[spec.key]:
            msg = f"{spec.table} value is missing its key field {spec.key!r}"
            raise ValueError(msg)
        columns = [spec.key, *spec.indexes, "doc"]
        params = [value[spec.key], *(value.get(col) for col in spec.indexes), json.dumps(value, default=str)]
        return columns, params

    def get(self, collection: Collection, key: str) -> dict[str, Any] | None:
        spec = _spec(collection)
        row = self.conn.execute(f"SELECT doc FROM {spec.table} WHERE {spec.key} = ?", (key,)).fetchone()
        if row is None:
            return None
        result: dict[str, Any] = json.loads(row["doc"])
        return result

    def put(self, collection: Collection, value: dict[str, Any]) -> None:
        """Insert or replace the whole document stored under the value's key."""
        spec = _spec(collection)
        columns, params = self._row_values(spec, value)
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns[1:])
        self.conn.execute(
            f"INSERT INTO {spec.table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))}) "
            f"ON CONFLICT({spec.key}) DO UPDATE SET {updates}",
            params,
        )
        self._commit()

    def add(self, collection: Collection, value: dict[str, Any]) -> None:
        """Insert a new document. Raises ValueError if the key (or a unique index) already exists."""
        spec = _spec(collection)
        columns, params = self._row_values(spec, value)
        try:
            self.conn.execute(
                f"INSERT INTO {spec.table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
                params,
            )
        except sqlite3.IntegrityError as exc:
            msg = f"Duplicate {collection} entry {value[spec.key]!r}: {exc}"
            raise ValueError(msg) from exc
        self._commit()

    def delete(self, collection: Collection, key: str) -> bool:
        spec = _spec(collection)
        cursor = self.conn.execute(f"DELETE FROM {spec.table} WHERE {spec.key} = ?", (key,))
        self._commit()
        return cursor.rowcount > 0

    def get_all(self, collection: Collection) -> list[dict[str, Any]]:
        """All documents in insertion order."""
        spec = _spec(collection)
        rows = self.conn.execute(f"SELECT doc FROM {spec.table} ORDER BY rowid").fetchall()
        return [json.loads(r["doc"]) for r in rows]

    def find_by_index(self, collection: Collection, index: str, value: Any) -> list[dict[str, Any]]:
        """Lookup by a secondary index. ``index`` names an indexed document field."""
        spec = _spec(collection)
        if index not in spec.indexes:
            msg = f"No index {index!r} on {collection}. Valid: {', '.join(spec.indexes)}"
            raise ValueError(msg)
        # *index* is validated against the hardcoded column list above
        if value is None:
            rows = self.conn.execute(f"SELECT doc FROM {spec.table} WHERE {index} IS NULL ORDER BY rowid").fetchall()
        else:
            rows = self.conn.execute(f"SELECT doc FROM {spec.table} WHERE {index} = ? ORDER BY rowid", (value,)).fetchall()
        return [json.loads(r["doc"]) for r in rows]

    def count(self, collection: Collection) -> int:
        spec = _spec(collection)
        result: int = self.conn.execute(f"SELECT COUNT(*) FROM {spec.table}").fetchone()[0]
        return result


def env_override(name: str, default: str | None = None) -> str | None:
    """Read a FAULTLINE_* environment override, treating blank values as unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()
