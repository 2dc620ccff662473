"""OutboxMixin: durable queue of mutations awaiting delivery to the system of record.

Composed into ``FaultlineDB``. Entries are appended by the repository in the
same transaction as the mutation they describe and drained, oldest first,
by ``faultline.sync.SyncProcessor``.
"""

from __future__ import annotations

import json
import uuid
from typing import cast

from faultline.db_base import DBMixinProtocol, _now_iso
from faultline.types.core import ISOTimestamp
from faultline.types.outbox import MutationType, OutboxEntryDict, OutboxPayload

VALID_MUTATION_TYPES: frozenset[str] = frozenset({"create", "update", "delete", "close", "reopen"})


class OutboxMixin(DBMixinProtocol):
    """Append, inspect, reschedule, and remove outbox entries."""

    def enqueue_mutation(self, defect_id: str, payload: OutboxPayload) -> OutboxEntryDict:
        """Append one entry; its mutation type is taken from the payload tag."""
        mutation = payload["type"]
        if mutation not in VALID_MUTATION_TYPES:
            msg = f"Unknown mutation type {mutation!r}. Valid: {', '.join(sorted(VALID_MUTATION_TYPES))}"
            raise ValueError(msg)
        entry: OutboxEntryDict = {
            "id": f"out-{uuid.uuid4().hex}",
            "type": cast(MutationType, mutation),
            "defect_id": defect_id,
            "payload": payload,
            "retries": 0,
            "next_attempt_at": 0.0,
            "created_at": ISOTimestamp(_now_iso()),
            "last_error": "",
        }
        self.add("outbox", dict(entry))
        return entry

    def list_outbox(self) -> list[OutboxEntryDict]:
        """All pending entries in creation order."""
        return cast(list[OutboxEntryDict], self.get_all("outbox"))

    def due_outbox(self, now: float) -> list[OutboxEntryDict]:
        """Entries whose backoff has elapsed at *now* (epoch seconds), oldest first."""
        rows = self.conn.execute(
            "SELECT doc FROM outbox WHERE next_attempt_at <= ? ORDER BY rowid",
            (now,),
        ).fetchall()
        return [cast(OutboxEntryDict, json.loads(r["doc"])) for r in rows]

    def reschedule_outbox_entry(self, entry: OutboxEntryDict, *, retries: int, next_attempt_at: float, error: str = "") -> OutboxEntryDict:
        updated: OutboxEntryDict = {**entry, "retries": retries, "next_attempt_at": next_attempt_at, "last_error": error}
        self.put("outbox", dict(updated))
        return updated

    def remove_outbox_entry(self, entry_id: str) -> bool:
        return bool(self.delete("outbox", entry_id))

    def pending_count(self) -> int:
        result: int = self.conn.execute("SELECT COUNT(*) FROM outbox").fetchone()[0]
        return result
