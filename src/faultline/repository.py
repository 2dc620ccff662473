"""DefectRepository: defect CRUD, lifecycle transitions, queries, and the outbox hook.

Every mutation is applied to the local store first and, in the same
transaction, appended to the outbox. Local state is the source of truth: a
mutation that commits here is visible immediately, whether or not the
remote system of record ever acknowledges it.

``ValidationFailed`` and ``PermissionDenied`` are raised before anything is
written, so a rejected operation never partially applies.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from faultline import rules
from faultline.core import FaultlineDB
from faultline.db_base import _now_iso
from faultline.db_counters import DEFAULT_CODE_WIDTH
from faultline.errors import NotFound, PermissionDenied, ValidationFailed
from faultline.models import (
    CLOSED,
    EDITABLE_FIELDS,
    VALID_ATTACHMENT_LABELS,
    VALID_ATTACHMENT_TYPES,
    VALID_HISTORY_TYPES,
    Actor,
    Defect,
    DefectAction,
    DefectAttachment,
    DefectComment,
    DefectSettings,
    HistoryEntry,
)
from faultline.resolver import resolve
from faultline.types.core import ISOTimestamp, SummaryDict

logger = logging.getLogger(__name__)

_SUMMARY_SNIPPET = 50

_REQUIRED_STRING_FIELDS = frozenset({"severity_model", "severity", "status"})


def _new_id() -> str:
    return uuid.uuid4().hex


def _snippet(text: str) -> str:
    text = text.strip()
    return text if len(text) <= _SUMMARY_SNIPPET else text[:_SUMMARY_SNIPPET] + "..."


def _parse_when(value: Any) -> datetime | None:
    """Parse a date or ISO timestamp. Naive values are taken as UTC; garbage yields None."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Ignoring unparseable date %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def is_overdue(defect: Defect, now: datetime) -> bool:
    due = _parse_when(defect.target_rectification_date)
    return due is not None and due < now and defect.status != CLOSED


@dataclass
class DefectFilter:
    """Query predicates. Every predicate that is set must hold (AND)."""

    status: str | None = None
    severity: str | None = None
    severity_model: str | None = None
    asset_id: str | None = None
    location_id: str | None = None
    site_id: str | None = None
    assigned_to_id: str | None = None
    overdue: bool = False
    unsafe: bool = False
    unassigned: bool = False
    from_inspection: bool = False
    compliance_tag: str | None = None
    search: str | None = None


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------


def _parse_actions(raw: Any) -> list[DefectAction]:
    if not isinstance(raw, list):
        raise ValidationFailed("actions must be a list")
    actions: list[DefectAction] = []
    for item in raw:
        if isinstance(item, DefectAction):
            actions.append(item)
            continue
        if not isinstance(item, dict) or not str(item.get("title", "")).strip():
            raise ValidationFailed("each action needs a non-empty title")
        actions.append(DefectAction.from_dict({"id": item.get("id") or _new_id(), **{k: v for k, v in item.items() if k != "id"}}))
    return actions


def _parse_attachments(raw: Any) -> list[DefectAttachment]:
    if not isinstance(raw, list):
        raise ValidationFailed("attachments must be a list")
    attachments: list[DefectAttachment] = []
    for item in raw:
        if isinstance(item, DefectAttachment):
            attachments.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationFailed("each attachment must be an object")
        attachment = DefectAttachment.from_dict(
            {"id": item.get("id") or _new_id(), "created_at": item.get("created_at") or _now_iso(), **{k: v for k, v in item.items() if k not in ("id", "created_at")}}
        )
        _check_attachment(attachment)
        attachments.append(attachment)
    return attachments


def _check_attachment(attachment: DefectAttachment) -> None:
    errors: list[str] = []
    if attachment.type not in VALID_ATTACHMENT_TYPES:
        errors.append(f"Unknown attachment type {attachment.type!r}. Valid: {', '.join(sorted(VALID_ATTACHMENT_TYPES))}")
    if attachment.label is not None and attachment.label not in VALID_ATTACHMENT_LABELS:
        errors.append(f"Unknown attachment label {attachment.label!r}. Valid: {', '.join(sorted(VALID_ATTACHMENT_LABELS))}")
    if not attachment.filename.strip():
        errors.append("attachment filename cannot be empty")
    if errors:
        raise ValidationFailed(errors)


def _coerce_field(name: str, value: Any) -> Any:
    if name == "actions":
        return _parse_actions(value)
    if name == "attachments":
        return _parse_attachments(value)
    if name == "compliance_tags":
        if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
            raise ValidationFailed("compliance_tags must be a list of strings")
        return [t.strip() for t in value if t.strip()]
    if name == "title":
        if not isinstance(value, str) or not value.strip():
            raise ValidationFailed("Title cannot be empty")
        return value.strip()
    if name == "description":
        if value is not None and not isinstance(value, str):
            raise ValidationFailed("description must be a string")
        return value or ""
    if name in _REQUIRED_STRING_FIELDS:
        if not isinstance(value, str):
            raise ValidationFailed(f"{name} must be a string")
        return value
    if value is not None and not isinstance(value, str):
        raise ValidationFailed(f"{name} must be a string or null")
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DefectRepository:
    """Defect operations over an explicitly injected FaultlineDB handle."""

    def __init__(
        self,
        db: FaultlineDB,
        *,
        code_prefix: str = "DEF",
        sequence: str = "defect",
        code_width: int = DEFAULT_CODE_WIDTH,
    ) -> None:
        self.db = db
        self.code_prefix = code_prefix
        self.sequence = sequence
        self.code_width = code_width

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _require(actor: Actor, capability: rules.Capability) -> None:
        if not rules.has_capability(actor.role, capability):
            raise PermissionDenied(actor.role, capability)

    @staticmethod
    def _history(actor: Actor, type: str, summary: str, data: dict[str, Any] | None = None, *, at: str | None = None) -> HistoryEntry:
        return HistoryEntry(id=_new_id(), at=at or _now_iso(), by=actor.id, by_name=actor.display_name, type=type, summary=summary, data=data or {})

    @staticmethod
    def _stamp(defect: Defect, actor: Actor, now: str) -> None:
        defect.updated_at = now
        defect.updated_by = actor.id
        defect.updated_by_name = actor.display_name

    def _save(self, defect: Defect, changes: dict[str, Any]) -> None:
        with self.db.transaction():
            self.db.put("defects", dict(defect.to_dict()))
            self.db.enqueue_mutation(defect.id, {"type": "update", "changes": changes})

    # -- reads ---------------------------------------------------------------

    def get_by_id(self, defect_id: str) -> Defect:
        stored = self.db.get("defects", defect_id)
        if stored is None:
            raise NotFound(defect_id)
        return Defect.from_dict(stored)

    def get_by_code(self, code: str) -> Defect:
        matches = self.db.find_by_index("defects", "code", code)
        if not matches:
            raise NotFound(code)
        return Defect.from_dict(matches[0])

    def get_all(self) -> list[Defect]:
        return [Defect.from_dict(d) for d in self.db.get_all("defects")]

    def history(self, defect_id: str) -> list[HistoryEntry]:
        return self.get_by_id(defect_id).history

    def resolve(self, ref: str) -> Defect | None:
        """Map a loosely formatted external reference to a defect, or None."""
        return resolve(self.get_all(), ref, code_prefix=self.code_prefix, id_prefix=self.db.id_prefix)

    def query(self, filter: DefectFilter | None = None, *, now: datetime | None = None) -> list[Defect]:
        if filter is None:
            return self.get_all()
        if filter.status:
            defects = [Defect.from_dict(d) for d in self.db.find_by_index("defects", "status", filter.status)]
        else:
            defects = self.get_all()
        now = now or datetime.now(UTC)
        needle = filter.search.lower() if filter.search else None

        def keep(d: Defect) -> bool:
            if filter.status and d.status != filter.status:
                return False
            if filter.severity and d.severity != filter.severity:
                return False
            if filter.severity_model and d.severity_model != filter.severity_model:
                return False
            if filter.asset_id and d.asset_id != filter.asset_id:
                return False
            if filter.location_id and d.location_id != filter.location_id:
                return False
            if filter.site_id and d.site_id != filter.site_id:
                return False
            if filter.assigned_to_id and d.assigned_to_id != filter.assigned_to_id:
                return False
            if filter.overdue and not is_overdue(d, now):
                return False
            if filter.unsafe and not d.unsafe:
                return False
            if filter.unassigned and d.assigned_to_id:
                return False
            if filter.from_inspection and not d.inspection_id:
                return False
            if filter.compliance_tag and filter.compliance_tag not in d.compliance_tags:
                return False
            if needle is not None:
                haystack = (d.code, d.title, d.description, d.asset_id or "")
                if not any(needle in field.lower() for field in haystack):
                    return False
            return True

        return [d for d in defects if keep(d)]

    def summary(self, *, now: datetime | None = None) -> SummaryDict:
        defects = self.get_all()
        now = now or datetime.now(UTC)
        return {
            "total": len(defects),
            "open": sum(1 for d in defects if d.status != CLOSED),
            "overdue": sum(1 for d in defects if is_overdue(d, now)),
            "unsafe": sum(1 for d in defects if d.unsafe and d.status != CLOSED),
        }

    # -- settings ------------------------------------------------------------

    def get_settings(self) -> DefectSettings:
        return self.db.get_settings()

    def update_settings(self, changes: dict[str, Any], *, actor: Actor) -> DefectSettings:
        """Merge *changes* into the settings document.

        Existing defects keep their stored unsafe flag; it is only recomputed
        when a defect's own severity or severity model next changes.
        """
        self._require(actor, "configure")
        unknown = sorted(set(changes) - {"default_severity_model", "unsafe_thresholds", "before_after_required"})
        if unknown:
            raise ValidationFailed(f"Unknown settings: {', '.join(unknown)}")
        current = self.db.get_settings()
        merged = DefectSettings.from_dict({**current.to_dict(), **changes})
        errors = rules.validate_settings(merged)
        if errors:
            raise ValidationFailed(errors)
        self.db.save_settings(merged)
        logger.info("Defect settings updated by %s: %s", actor.id, sorted(changes))
        return merged

    # -- create --------------------------------------------------------------

    def create(self, data: dict[str, Any], *, actor: Actor) -> Defect:
        """Create a defect: assign a code, derive the unsafe flag, log the initial status."""
        self._require(actor, "raise")
        defect = self._build_new(data, actor)
        with self.db.transaction():
            self.db.add("defects", dict(defect.to_dict()))
            self.db.enqueue_mutation(defect.id, {"type": "create", "defect": defect.to_dict()})
        logger.info("Created defect %s (%s)", defect.code, defect.id)
        return defect

    def _build_new(self, data: dict[str, Any], actor: Actor, *, previous: Defect | None = None) -> Defect:
        unknown = sorted(set(data) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"Unknown or read-only fields: {', '.join(unknown)}")
        if "title" not in data:
            raise ValidationFailed("Title cannot be empty")
        fields = {name: _coerce_field(name, value) for name, value in data.items()}

        settings = self.db.get_settings()
        fields.setdefault("severity_model", settings.default_severity_model)
        if "severity" not in fields:
            raise ValidationFailed("severity is required")
        errors = rules.validate_severity(fields["severity"], fields["severity_model"])
        status = fields.setdefault("status", "Open")
        if status == CLOSED:
            errors.append("A defect cannot be created Closed")
        elif status not in rules.STATUS_TRANSITIONS:
            errors.append(f"Unknown status {status!r}")
        if errors:
            raise ValidationFailed(errors)

        # Code is committed before the record; a failed insert leaves a gap, never a reuse.
        code = self.db.next_code(self.sequence, prefix=self.code_prefix, width=self.code_width)
        now = _now_iso()
        summary = f"Defect created with status: {status}"
        if previous is not None:
            summary += f" (new occurrence of {previous.code})"
        return Defect(
            id=self.db._generate_unique_id("defects"),
            code=code,
            unsafe=rules.is_unsafe(fields["severity"], fields["severity_model"], settings),
            previous_occurrence_id=previous.id if previous is not None else None,
            created_at=now,
            created_by=actor.id,
            created_by_name=actor.display_name,
            updated_at=now,
            updated_by=actor.id,
            updated_by_name=actor.display_name,
            history=[self._history(actor, "status_change", summary, {"status": status}, at=now)],
            **fields,
        )

    # -- update --------------------------------------------------------------

    def update(self, defect_id: str, changes: dict[str, Any], *, actor: Actor) -> Defect:
        """Merge *changes* over the stored record.

        Status may only move along ``rules.STATUS_TRANSITIONS``; closing and
        reopening have their own operations. Returns the record unchanged
        (and enqueues nothing) when no field actually differs.
        """
        self._require(actor, "edit")
        existing = self.get_by_id(defect_id)
        read_only = sorted(set(changes) - EDITABLE_FIELDS)
        if read_only:
            raise ValidationFailed(f"Unknown or read-only fields: {', '.join(read_only)}")

        coerced = {name: _coerce_field(name, value) for name, value in changes.items()}
        changed = {name: value for name, value in coerced.items() if getattr(existing, name) != value}
        if not changed:
            return existing

        errors: list[str] = []
        new_status = changed.get("status")
        if new_status is not None:
            if new_status == CLOSED:
                errors.append("Use close to close a defect")
            elif existing.status == CLOSED:
                errors.append("Use reopen to reopen a closed defect")
            elif not rules.can_transition(existing.status, new_status):
                errors.append(f"Cannot move from {existing.status} to {new_status}")
        severity = changed.get("severity", existing.severity)
        model = changed.get("severity_model", existing.severity_model)
        if "severity" in changed or "severity_model" in changed:
            errors.extend(rules.validate_severity(severity, model))
        if errors:
            raise ValidationFailed(errors)

        updated = replace(existing, **changed)
        # replace() is shallow; the history list must not alias the original
        updated.history = list(existing.history)
        if "severity" in changed or "severity_model" in changed:
            updated.unsafe = rules.is_unsafe(severity, model, self.db.get_settings())

        now = _now_iso()
        self._stamp(updated, actor, now)
        if new_status is not None:
            updated.history.append(
                self._history(actor, "status_change", f"Status changed from {existing.status} to {new_status}", {"from": existing.status, "to": new_status}, at=now)
            )
        edited = sorted(name for name in changed if name != "status")
        if edited:
            updated.history.append(self._history(actor, "edit", f"Updated: {', '.join(edited)}", {"fields": edited}, at=now))

        payload_changes: dict[str, Any] = {name: updated.to_dict()[name] for name in changed}  # type: ignore[literal-required]
        if updated.unsafe != existing.unsafe:
            payload_changes["unsafe"] = updated.unsafe
        self._save(updated, payload_changes)
        logger.info("Updated defect %s: %s", updated.code, sorted(changed))
        return updated

    # -- delete --------------------------------------------------------------

    def delete(self, defect_id: str, *, actor: Actor) -> None:
        """Remove the record; its embedded history and comments go with it."""
        self._require(actor, "delete")
        existing = self.get_by_id(defect_id)
        with self.db.transaction():
            self.db.delete("defects", defect_id)
            self.db.enqueue_mutation(defect_id, {"type": "delete", "code": existing.code})
        logger.info("Deleted defect %s (%s)", existing.code, defect_id)

    # -- trail ---------------------------------------------------------------

    def add_comment(self, defect_id: str, text: str, *, actor: Actor) -> DefectComment:
        self._require(actor, "raise")
        if not text or not text.strip():
            raise ValidationFailed("Comment text cannot be empty")
        defect = self.get_by_id(defect_id)
        now = _now_iso()
        comment = DefectComment(id=_new_id(), at=now, by=actor.id, by_name=actor.display_name, text=text.strip())
        defect.comments.append(comment)
        defect.history.append(self._history(actor, "comment", f"Comment added: {_snippet(comment.text)}", at=now))
        self._stamp(defect, actor, now)
        self._save(defect, {"comments": [c.to_dict() for c in defect.comments]})
        return comment

    def add_history_entry(
        self,
        defect_id: str,
        type: str,
        summary: str,
        *,
        actor: Actor,
        data: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        """Append a free-standing entry to the local audit trail.

        History is local-only and is not queued for delivery on its own.
        """
        if type not in VALID_HISTORY_TYPES:
            raise ValidationFailed(f"Unknown history type {type!r}. Valid: {', '.join(sorted(VALID_HISTORY_TYPES))}")
        if not summary or not summary.strip():
            raise ValidationFailed("History summary cannot be empty")
        defect = self.get_by_id(defect_id)
        entry = self._history(actor, type, summary.strip(), data)
        defect.history.append(entry)
        self.db.put("defects", dict(defect.to_dict()))
        return entry

    def add_action(self, defect_id: str, title: str, *, required: bool = False, actor: Actor) -> DefectAction:
        self._require(actor, "edit")
        if not title or not title.strip():
            raise ValidationFailed("Action title cannot be empty")
        defect = self.get_by_id(defect_id)
        action = DefectAction(id=_new_id(), title=title.strip(), required=required)
        defect.actions.append(action)
        now = _now_iso()
        kind = "Required action" if required else "Action"
        defect.history.append(self._history(actor, "edit", f"{kind} added: {_snippet(action.title)}", {"action_id": action.id}, at=now))
        self._stamp(defect, actor, now)
        self._save(defect, {"actions": [a.to_dict() for a in defect.actions]})
        return action

    def complete_action(self, defect_id: str, action_id: str, *, actor: Actor) -> DefectAction:
        self._require(actor, "close")
        defect = self.get_by_id(defect_id)
        action = next((a for a in defect.actions if a.id == action_id), None)
        if action is None:
            raise NotFound(action_id, kind="Action")
        if action.completed:
            return action
        now = _now_iso()
        action.completed = True
        action.completed_at = now
        action.completed_by = actor.id
        defect.history.append(self._history(actor, "edit", f"Action completed: {_snippet(action.title)}", {"action_id": action.id}, at=now))
        self._stamp(defect, actor, now)
        self._save(defect, {"actions": [a.to_dict() for a in defect.actions]})
        return action

    def add_attachment(
        self,
        defect_id: str,
        *,
        type: str,
        filename: str,
        uri: str = "",
        label: str | None = None,
        actor: Actor,
    ) -> DefectAttachment:
        self._require(actor, "raise")
        defect = self.get_by_id(defect_id)
        now = _now_iso()
        attachment = DefectAttachment(id=_new_id(), type=type, filename=filename.strip(), uri=uri, created_at=now, label=label)
        _check_attachment(attachment)
        defect.attachments.append(attachment)
        tag = f" ({label})" if label else ""
        defect.history.append(self._history(actor, "attachment", f"{type.capitalize()} attached: {attachment.filename}{tag}", {"attachment_id": attachment.id}, at=now))
        self._stamp(defect, actor, now)
        self._save(defect, {"attachments": [a.to_dict() for a in defect.attachments]})
        return attachment

    # -- lifecycle -----------------------------------------------------------

    def close(self, defect_id: str, resolution_notes: str, *, actor: Actor) -> Defect:
        """Close a defect once every closure rule passes.

        The resolution note is stored both as a comment and in the ``close``
        history entry; the record, the trail, and the outbox entry commit together.
        """
        self._require(actor, "close")
        defect = self.get_by_id(defect_id)
        if defect.status == CLOSED:
            raise ValidationFailed(f"Defect {defect.code} is already closed")
        reasons: list[str] = []
        if not rules.can_transition(defect.status, CLOSED):
            reasons.append(f"Cannot close a defect in status {defect.status}")
        if not resolution_notes or not resolution_notes.strip():
            reasons.append("Resolution notes are required to close a defect")
        reasons.extend(rules.check_close(defect, self.db.get_settings()).reasons)
        if reasons:
            raise ValidationFailed(reasons)

        now = _now_iso()
        notes = resolution_notes.strip()
        previous_status = defect.status
        defect.status = CLOSED
        defect.closed_at = now
        defect.comments.append(DefectComment(id=_new_id(), at=now, by=actor.id, by_name=actor.display_name, text=notes))
        defect.history.append(
            self._history(actor, "close", f"Defect closed: {_snippet(notes)}", {"from": previous_status, "resolution_notes": notes}, at=now)
        )
        self._stamp(defect, actor, now)
        with self.db.transaction():
            self.db.put("defects", dict(defect.to_dict()))
            self.db.enqueue_mutation(defect.id, {"type": "close", "resolution_notes": notes, "closed_at": ISOTimestamp(now)})
        logger.info("Closed defect %s", defect.code)
        return defect

    def reopen(self, defect_id: str, reason: str, *, mode: str = "same", actor: Actor) -> Defect:
        """Reopen a closed defect.

        ``mode="same"`` moves the record back to Open and bumps its
        reopened count. ``mode="new"`` leaves the original Closed and untouched
        and returns a fresh defect linked through ``previous_occurrence_id``.
        """
        self._require(actor, "reopen")
        if mode not in ("same", "new"):
            raise ValidationFailed(f"Unknown reopen mode {mode!r}. Valid: same, new")
        original = self.get_by_id(defect_id)
        reasons: list[str] = []
        if original.status != CLOSED:
            reasons.append(f"Only closed defects can be reopened ({original.code} is {original.status})")
        if not reason or not reason.strip():
            reasons.append("A reason is required to reopen a defect")
        if reasons:
            raise ValidationFailed(reasons)
        reason = reason.strip()

        if mode == "new":
            return self._raise_new_occurrence(original, reason, actor)

        now = _now_iso()
        original.status = "Open"
        original.closed_at = None
        original.reopened_count += 1
        original.history.append(
            self._history(actor, "reopen", f"Defect reopened: {_snippet(reason)}", {"mode": "same", "reason": reason, "reopened_count": original.reopened_count}, at=now)
        )
        self._stamp(original, actor, now)
        with self.db.transaction():
            self.db.put("defects", dict(original.to_dict()))
            self.db.enqueue_mutation(original.id, {"type": "reopen", "mode": "same", "reason": reason, "new_defect": None})
        logger.info("Reopened defect %s (count=%d)", original.code, original.reopened_count)
        return original

    def _raise_new_occurrence(self, original: Defect, reason: str, actor: Actor) -> Defect:
        carried = {
            "title": original.title,
            "description": original.description,
            "severity_model": original.severity_model,
            "severity": original.severity,
            "compliance_tags": list(original.compliance_tags),
            "asset_id": original.asset_id,
            "location_id": original.location_id,
            "inspection_id": original.inspection_id,
            "work_order_id": original.work_order_id,
            "site_id": original.site_id,
            "site_name": original.site_name,
            "assigned_to_id": original.assigned_to_id,
            "assigned_to_name": original.assigned_to_name,
            "assigned_to_role": original.assigned_to_role,
            "assigned_to_team": original.assigned_to_team,
            "status": "Open",
        }
        fresh = self._build_new(carried, actor, previous=original)
        fresh.history.append(
            self._history(actor, "reopen", f"Raised as new occurrence of {original.code}: {_snippet(reason)}", {"mode": "new", "reason": reason, "previous_occurrence_id": original.id})
        )
        with self.db.transaction():
            self.db.add("defects", dict(fresh.to_dict()))
            self.db.enqueue_mutation(original.id, {"type": "reopen", "mode": "new", "reason": reason, "new_defect": fresh.to_dict()})
        logger.info("Raised %s as new occurrence of %s", fresh.code, original.code)
        return fresh
