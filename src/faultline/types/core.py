"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class ProjectConfig(TypedDict, total=False):
    """Shape of .faultline/config.json."""

    code_prefix: str
    id_prefix: str
    sequence: str
    remote_url: str
    sync_timeout: float
    max_retries: int
    version: int


class ActionDict(TypedDict):
    id: str
    title: str
    required: bool
    completed: bool
    completed_at: ISOTimestamp | None
    completed_by: str | None


class AttachmentDict(TypedDict):
    id: str
    type: str
    filename: str
    uri: str
    created_at: ISOTimestamp
    label: str | None


class CommentDict(TypedDict):
    id: str
    at: ISOTimestamp
    by: str
    by_name: str
    text: str


class HistoryEntryDict(TypedDict):
    id: str
    at: ISOTimestamp
    by: str
    by_name: str
    type: str
    summary: str
    data: dict[str, Any]


class DefectDict(TypedDict):
    id: str
    code: str
    title: str
    description: str
    severity_model: str
    severity: str
    unsafe: bool
    compliance_tags: list[str]
    status: str
    reopened_count: int
    target_rectification_date: str | None
    closed_at: ISOTimestamp | None
    actions: list[ActionDict]
    attachments: list[AttachmentDict]
    comments: list[CommentDict]
    history: list[HistoryEntryDict]
    asset_id: str | None
    location_id: str | None
    inspection_id: str | None
    work_order_id: str | None
    site_id: str | None
    site_name: str | None
    previous_occurrence_id: str | None
    assigned_to_id: str | None
    assigned_to_name: str | None
    assigned_to_role: str | None
    assigned_to_team: str | None
    created_at: ISOTimestamp
    created_by: str
    created_by_name: str
    updated_at: ISOTimestamp
    updated_by: str
    updated_by_name: str


class SettingsDict(TypedDict):
    default_severity_model: str
    unsafe_thresholds: dict[str, list[str]]
    before_after_required: bool


class SummaryDict(TypedDict):
    total: int
    open: int
    overdue: int
    unsafe: int
