"""Defect data model: dataclasses, vocabularies, and dict (de)serialization.

Defects are persisted as whole JSON documents; ``to_dict``/``from_dict`` are
the only conversion points between the stored shape and these classes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, cast

from faultline.types.core import (
    ActionDict,
    AttachmentDict,
    CommentDict,
    DefectDict,
    HistoryEntryDict,
    ISOTimestamp,
    SettingsDict,
)

# ---------------------------------------------------------------------------
# Constrained-string Literal types
# ---------------------------------------------------------------------------

SeverityModel = Literal["LMH", "MMC"]
DefectStatus = Literal["Draft", "Open", "Acknowledged", "InProgress", "Deferred", "Closed"]
HistoryEntryType = Literal["status_change", "edit", "comment", "attachment", "reopen", "close"]
AttachmentType = Literal["photo", "video", "document"]
AttachmentLabel = Literal["before", "after", "other"]
ReopenMode = Literal["same", "new"]

SEVERITY_SCALES: dict[str, tuple[str, ...]] = {
    "LMH": ("Low", "Medium", "High"),
    "MMC": ("Minor", "Major", "Critical"),
}
VALID_STATUSES: tuple[str, ...] = ("Draft", "Open", "Acknowledged", "InProgress", "Deferred", "Closed")
VALID_HISTORY_TYPES = frozenset({"status_change", "edit", "comment", "attachment", "reopen", "close"})
VALID_ATTACHMENT_TYPES = frozenset({"photo", "video", "document"})
VALID_ATTACHMENT_LABELS = frozenset({"before", "after", "other"})
VALID_ROLES: tuple[str, ...] = ("Viewer", "Fitter", "Supervisor", "Manager", "Admin")
CLOSED = "Closed"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation. Carried into audit fields and permission checks."""

    id: str
    name: str = ""
    role: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class DefectAction:
    id: str
    title: str
    required: bool = False
    completed: bool = False
    completed_at: str | None = None
    completed_by: str | None = None

    def to_dict(self) -> ActionDict:
        return {
            "id": self.id,
            "title": self.title,
            "required": self.required,
            "completed": self.completed,
            "completed_at": cast(ISOTimestamp | None, self.completed_at),
            "completed_by": self.completed_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DefectAction:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            required=bool(data.get("required", False)),
            completed=bool(data.get("completed", False)),
            completed_at=data.get("completed_at"),
            completed_by=data.get("completed_by"),
        )


@dataclass
class DefectAttachment:
    id: str
    type: str
    filename: str
    uri: str = ""
    created_at: str = ""
    label: str | None = None

    def to_dict(self) -> AttachmentDict:
        return {
            "id": self.id,
            "type": self.type,
            "filename": self.filename,
            "uri": self.uri,
            "created_at": ISOTimestamp(self.created_at),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DefectAttachment:
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "document")),
            filename=str(data.get("filename", "")),
            uri=str(data.get("uri", "")),
            created_at=str(data.get("created_at", "")),
            label=data.get("label"),
        )


@dataclass
class DefectComment:
    id: str
    at: str
    by: str
    by_name: str
    text: str

    def to_dict(self) -> CommentDict:
        return {"id": self.id, "at": ISOTimestamp(self.at), "by": self.by, "by_name": self.by_name, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DefectComment:
        return cls(
            id=str(data["id"]),
            at=str(data.get("at", "")),
            by=str(data.get("by", "")),
            by_name=str(data.get("by_name", "")),
            text=str(data.get("text", "")),
        )


@dataclass
class HistoryEntry:
    id: str
    at: str
    by: str
    by_name: str
    type: str
    summary: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> HistoryEntryDict:
        return {
            "id": self.id,
            "at": ISOTimestamp(self.at),
            "by": self.by,
            "by_name": self.by_name,
            "type": self.type,
            "summary": self.summary,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            id=str(data["id"]),
            at=str(data.get("at", "")),
            by=str(data.get("by", "")),
            by_name=str(data.get("by_name", "")),
            type=str(data.get("type", "edit")),
            summary=str(data.get("summary", "")),
            data=dict(data.get("data") or {}),
        )


@dataclass
class Defect:
    id: str
    code: str
    title: str
    severity_model: str = "LMH"
    severity: str = "Low"
    status: str = "Open"
    description: str = ""
    # Derived from severity + settings; never set directly by callers
    unsafe: bool = False
    compliance_tags: list[str] = field(default_factory=list)
    reopened_count: int = 0
    target_rectification_date: str | None = None
    closed_at: str | None = None
    actions: list[DefectAction] = field(default_factory=list)
    attachments: list[DefectAttachment] = field(default_factory=list)
    comments: list[DefectComment] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    # Linkage, by identifier only
    asset_id: str | None = None
    location_id: str | None = None
    inspection_id: str | None = None
    work_order_id: str | None = None
    site_id: str | None = None
    site_name: str | None = None
    previous_occurrence_id: str | None = None
    # Assignment
    assigned_to_id: str | None = None
    assigned_to_name: str | None = None
    assigned_to_role: str | None = None
    assigned_to_team: str | None = None
    # Audit
    created_at: str = ""
    created_by: str = ""
    created_by_name: str = ""
    updated_at: str = ""
    updated_by: str = ""
    updated_by_name: str = ""

    @property
    def is_closed(self) -> bool:
        return self.status == CLOSED

    def to_dict(self) -> DefectDict:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "severity_model": self.severity_model,
            "severity": self.severity,
            "unsafe": self.unsafe,
            "compliance_tags": list(self.compliance_tags),
            "status": self.status,
            "reopened_count": self.reopened_count,
            "target_rectification_date": self.target_rectification_date,
            "closed_at": cast(ISOTimestamp | None, self.closed_at),
            "actions": [a.to_dict() for a in self.actions],
            "attachments": [a.to_dict() for a in self.attachments],
            "comments": [c.to_dict() for c in self.comments],
            "history": [h.to_dict() for h in self.history],
            "asset_id": self.asset_id,
            "location_id": self.location_id,
            "inspection_id": self.inspection_id,
            "work_order_id": self.work_order_id,
            "site_id": self.site_id,
            "site_name": self.site_name,
            "previous_occurrence_id": self.previous_occurrence_id,
            "assigned_to_id": self.assigned_to_id,
            "assigned_to_name": self.assigned_to_name,
            "assigned_to_role": self.assigned_to_role,
            "assigned_to_team": self.assigned_to_team,
            "created_at": ISOTimestamp(self.created_at),
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "updated_at": ISOTimestamp(self.updated_at),
            "updated_by": self.updated_by,
            "updated_by_name": self.updated_by_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Defect:
        return cls(
            id=data["id"],
            code=data["code"],
            title=data.get("title", ""),
            severity_model=data.get("severity_model", "LMH"),
            severity=data.get("severity", "Low"),
            status=data.get("status", "Open"),
            description=data.get("description") or "",
            unsafe=bool(data.get("unsafe", False)),
            compliance_tags=list(data.get("compliance_tags") or []),
            reopened_count=int(data.get("reopened_count", 0)),
            target_rectification_date=data.get("target_rectification_date"),
            closed_at=data.get("closed_at"),
            actions=[DefectAction.from_dict(a) for a in data.get("actions") or []],
            attachments=[DefectAttachment.from_dict(a) for a in data.get("attachments") or []],
            comments=[DefectComment.from_dict(c) for c in data.get("comments") or []],
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            asset_id=data.get("asset_id"),
            location_id=data.get("location_id"),
            inspection_id=data.get("inspection_id"),
            work_order_id=data.get("work_order_id"),
            site_id=data.get("site_id"),
            site_name=data.get("site_name"),
            previous_occurrence_id=data.get("previous_occurrence_id"),
            assigned_to_id=data.get("assigned_to_id"),
            assigned_to_name=data.get("assigned_to_name"),
            assigned_to_role=data.get("assigned_to_role"),
            assigned_to_team=data.get("assigned_to_team"),
            created_at=data.get("created_at", ""),
            created_by=data.get("created_by", ""),
            created_by_name=data.get("created_by_name", ""),
            updated_at=data.get("updated_at", ""),
            updated_by=data.get("updated_by", ""),
            updated_by_name=data.get("updated_by_name", ""),
        )


@dataclass
class DefectSettings:
    default_severity_model: str = "LMH"
    unsafe_thresholds: dict[str, list[str]] = field(default_factory=lambda: {"LMH": ["High"], "MMC": ["Critical"]})
    before_after_required: bool = False

    def to_dict(self) -> SettingsDict:
        return {
            "default_severity_model": self.default_severity_model,
            "unsafe_thresholds": {k: list(v) for k, v in self.unsafe_thresholds.items()},
            "before_after_required": self.before_after_required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DefectSettings:
        defaults = cls()
        thresholds = data.get("unsafe_thresholds") or defaults.unsafe_thresholds
        return cls(
            default_severity_model=data.get("default_severity_model", defaults.default_severity_model),
            unsafe_thresholds={k: list(v) for k, v in thresholds.items()},
            before_after_required=bool(data.get("before_after_required", False)),
        )


# Fields a caller may change through DefectRepository.update().
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "severity_model",
        "severity",
        "status",
        "compliance_tags",
        "target_rectification_date",
        "actions",
        "attachments",
        "asset_id",
        "location_id",
        "inspection_id",
        "work_order_id",
        "site_id",
        "site_name",
        "assigned_to_id",
        "assigned_to_name",
        "assigned_to_role",
        "assigned_to_team",
    }
)
