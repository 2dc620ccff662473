"""CountersMixin: named sequences backing human-readable defect codes.

Composed into ``FaultlineDB``. Codes are handed out by ``next_code`` and are
never reused or renumbered: the counter only moves forward, and its new
value is committed before the formatted code is returned.
"""

from __future__ import annotations

import json
import logging
import threading

from faultline.db_base import DBMixinProtocol

logger = logging.getLogger(__name__)

DEFAULT_CODE_WIDTH = 6


def format_code(prefix: str, number: int, width: int = DEFAULT_CODE_WIDTH) -> str:
    return f"{prefix}-{number:0{width}d}"


class CountersMixin(DBMixinProtocol):
    """Atomic read-increment-write over the counters collection."""

    _sequence_locks: dict[str, threading.Lock]
    _sequence_locks_guard: threading.Lock

    def _sequence_lock(self, sequence: str) -> threading.Lock:
        with self._sequence_locks_guard:
            lock = self._sequence_locks.get(sequence)
            if lock is None:
                lock = self._sequence_locks[sequence] = threading.Lock()
            return lock

    def increment_counter(self, sequence: str) -> int:
        """Increment *sequence* (starting from 0 when absent) and return the new value.

        Calls for the same sequence are serialized by an in-process lock; the
        single UPSERT ... RETURNING statement keeps the increment atomic for
        other processes sharing the database file.
        """
        if not sequence or not sequence.strip():
            msg = "Sequence name cannot be empty"
            raise ValueError(msg)
        if self._tx_depth:
            # A rollback of the enclosing transaction would hand the same code out twice
            msg = "Counters must be incremented outside a transaction"
            raise RuntimeError(msg)
        with self._sequence_lock(sequence):
            row = self.conn.execute(
                "INSERT INTO counters (name, value, doc) VALUES (?, 1, json_object('name', ?, 'value', 1)) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1, "
                "doc = json_object('name', name, 'value', value + 1) "
                "RETURNING value",
                (sequence, sequence),
            ).fetchone()
            self.conn.commit()
        value: int = row["value"]
        return value

    def next_code(self, sequence: str = "defect", *, prefix: str = "DEF", width: int = DEFAULT_CODE_WIDTH) -> str:
        """Return the next ``PREFIX-NNNNNN`` code for *sequence*."""
        code = format_code(prefix, self.increment_counter(sequence), width)
        logger.debug("Issued code %s from sequence %s", code, sequence)
        return code

    def peek_counter(self, sequence: str = "defect") -> int:
        """Current value of *sequence* without incrementing (0 when absent)."""
        row = self.conn.execute("SELECT doc FROM counters WHERE name = ?", (sequence,)).fetchone()
        if row is None:
            return 0
        value: int = json.loads(row["doc"])["value"]
        return value
