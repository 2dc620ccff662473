"""Outbox entry shapes.

Payloads form a tagged union keyed on ``type`` so the sync processor can
dispatch by mutation without inspecting an untyped blob.
"""

from __future__ import annotations

from typing import Any, Literal, TypedDict

from faultline.types.core import DefectDict, ISOTimestamp

MutationType = Literal["create", "update", "delete", "close", "reopen"]


class CreateDefectPayload(TypedDict):
    type: Literal["create"]
    defect: DefectDict


class UpdateDefectPayload(TypedDict):
    type: Literal["update"]
    changes: dict[str, Any]


class DeleteDefectPayload(TypedDict):
    type: Literal["delete"]
    code: str


class CloseDefectPayload(TypedDict):
    type: Literal["close"]
    resolution_notes: str
    closed_at: ISOTimestamp


class ReopenDefectPayload(TypedDict):
    type: Literal["reopen"]
    mode: Literal["same", "new"]
    reason: str
    # Only present for mode="new"
    new_defect: DefectDict | None


OutboxPayload = CreateDefectPayload | UpdateDefectPayload | DeleteDefectPayload | CloseDefectPayload | ReopenDefectPayload


class OutboxEntryDict(TypedDict):
    id: str
    type: MutationType
    defect_id: str
    payload: OutboxPayload
    retries: int
    next_attempt_at: float
    created_at: ISOTimestamp
    last_error: str


class FlushResult(TypedDict):
    """Counts reported by one flush pass."""

    succeeded: int
    abandoned: int
    retrying: int
    deferred: int
    busy: bool
    abandoned_entries: list[str]
