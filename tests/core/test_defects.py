"""Tests for DefectRepository CRUD, queries, summary, and the audit trail."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from faultline.core import FaultlineDB
from faultline.errors import NotFound, PermissionDenied, ValidationFailed
from faultline.models import Actor
from faultline.repository import DefectFilter, DefectRepository, is_overdue
from tests._db_factory import defect_input


class TestCreate:
    def test_round_trip(self, repo: DefectRepository, admin: Actor) -> None:
        created = repo.create(
            defect_input(description="Oil weeping from rod seal", asset_id="asset-1", compliance_tags=["AS1418"]),
            actor=admin,
        )
        assert repo.get_by_id(created.id) == created

    def test_assigns_sequential_codes(self, repo: DefectRepository, admin: Actor) -> None:
        first = repo.create(defect_input(), actor=admin)
        second = repo.create(defect_input(title="Cracked step"), actor=admin)
        assert first.code == "DEF-000001"
        assert second.code == "DEF-000002"
        assert first.id.startswith("def-")

    def test_custom_code_prefix(self, db: FaultlineDB, admin: Actor) -> None:
        repo = DefectRepository(db, code_prefix="FLT")
        assert repo.create(defect_input(), actor=admin).code == "FLT-000001"

    def test_records_initial_status(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(status="Draft"), actor=admin)
        assert defect.status == "Draft"
        assert len(defect.history) == 1
        entry = defect.history[0]
        assert entry.type == "status_change"
        assert entry.summary == "Defect created with status: Draft"
        assert entry.by == "user-1"
        assert entry.by_name == "John Smith"

    def test_audit_fields(self, repo: DefectRepository, fitter: Actor) -> None:
        defect = repo.create(defect_input(), actor=fitter)
        assert defect.created_by == "user-7"
        assert defect.created_by_name == "David Lee"
        assert defect.created_at == defect.updated_at

    def test_defaults_severity_model_from_settings(self, repo: DefectRepository, admin: Actor) -> None:
        repo.update_settings({"default_severity_model": "MMC"}, actor=admin)
        defect = repo.create({"title": "Guard missing", "severity": "Major"}, actor=admin)
        assert defect.severity_model == "MMC"

    @pytest.mark.parametrize(
        ("severity", "model", "unsafe"),
        [("High", "LMH", True), ("Medium", "LMH", False), ("Critical", "MMC", True), ("Minor", "MMC", False)],
    )
    def test_derives_unsafe(self, repo: DefectRepository, admin: Actor, severity: str, model: str, unsafe: bool) -> None:
        assert repo.create(defect_input(severity=severity, severity_model=model), actor=admin).unsafe is unsafe

    def test_unsafe_cannot_be_supplied(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="unsafe"):
            repo.create(defect_input(unsafe=True), actor=admin)

    def test_unknown_field(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="bogus"):
            repo.create(defect_input(bogus=1), actor=admin)

    def test_severity_off_scale(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="not on the LMH scale"):
            repo.create(defect_input(severity="Critical"), actor=admin)

    @pytest.mark.parametrize("title", ["", "   "])
    def test_empty_title(self, repo: DefectRepository, admin: Actor, title: str) -> None:
        with pytest.raises(ValidationFailed, match="Title"):
            repo.create(defect_input(title=title), actor=admin)

    def test_cannot_create_closed(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="Closed"):
            repo.create(defect_input(status="Closed"), actor=admin)

    def test_viewer_denied(self, repo: DefectRepository, viewer: Actor) -> None:
        with pytest.raises(PermissionDenied):
            repo.create(defect_input(), actor=viewer)

    def test_rejected_create_writes_nothing(self, repo: DefectRepository, admin: Actor, viewer: Actor) -> None:
        with pytest.raises(ValidationFailed):
            repo.create(defect_input(severity="Critical"), actor=admin)
        with pytest.raises(PermissionDenied):
            repo.create(defect_input(), actor=viewer)
        assert repo.get_all() == []
        assert repo.db.list_outbox() == []
        assert repo.db.peek_counter("defect") == 0

    def test_actions_and_attachments_on_create(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(
            defect_input(
                actions=[{"title": "Replace seal", "required": True}],
                attachments=[{"type": "photo", "filename": "leak.jpg", "label": "before"}],
            ),
            actor=admin,
        )
        assert defect.actions[0].title == "Replace seal"
        assert defect.actions[0].required is True
        assert defect.actions[0].id
        assert defect.attachments[0].label == "before"

    def test_bad_attachment_on_create(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="attachment type"):
            repo.create(defect_input(attachments=[{"type": "hologram", "filename": "x"}]), actor=admin)

    def test_enqueues_create(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        [entry] = repo.db.list_outbox()
        assert entry["type"] == "create"
        assert entry["defect_id"] == defect.id
        assert entry["payload"]["defect"]["code"] == defect.code  # type: ignore[typeddict-item]
        assert entry["retries"] == 0


class TestRead:
    def test_get_by_id_missing(self, repo: DefectRepository) -> None:
        with pytest.raises(NotFound):
            repo.get_by_id("def-nope")

    def test_not_found_is_a_key_error(self, repo: DefectRepository) -> None:
        with pytest.raises(KeyError):
            repo.get_by_id("def-nope")

    def test_get_by_code(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        assert repo.get_by_code("DEF-000001").id == defect.id
        with pytest.raises(NotFound):
            repo.get_by_code("DEF-999999")

    def test_resolve(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        found = repo.resolve("def1")
        assert found is not None
        assert found.id == defect.id
        assert repo.resolve("DEF-5") is None


class TestUpdate:
    def test_updates_fields(self, repo: DefectRepository, admin: Actor, supervisor: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        updated = repo.update(defect.id, {"title": "Major hydraulic leak", "assigned_to_id": "user-7"}, actor=supervisor)
        assert updated.title == "Major hydraulic leak"
        assert updated.updated_by == "user-2"
        assert updated.history[-1].type == "edit"
        assert updated.history[-1].data["fields"] == ["assigned_to_id", "title"]
        assert repo.get_by_id(defect.id) == updated

    def test_recomputes_unsafe(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        assert repo.update(defect.id, {"severity": "High"}, actor=admin).unsafe is True
        assert repo.update(defect.id, {"severity": "Medium"}, actor=admin).unsafe is False

    def test_model_change_revalidates_severity(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed):
            repo.update(defect.id, {"severity_model": "MMC"}, actor=admin)
        changed = repo.update(defect.id, {"severity_model": "MMC", "severity": "Critical"}, actor=admin)
        assert changed.unsafe is True

    def test_status_transition_logged(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        updated = repo.update(defect.id, {"status": "InProgress"}, actor=admin)
        entry = updated.history[-1]
        assert entry.type == "status_change"
        assert entry.data == {"from": "Open", "to": "InProgress"}

    def test_illegal_transition(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(status="InProgress"), actor=admin)
        with pytest.raises(ValidationFailed, match="Cannot move"):
            repo.update(defect.id, {"status": "Open"}, actor=admin)

    def test_cannot_close_through_update(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed, match="close"):
            repo.update(defect.id, {"status": "Closed"}, actor=admin)
        assert repo.get_by_id(defect.id).status == "Open"

    def test_cannot_leave_closed_through_update(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        repo.close(defect.id, "Fixed", actor=admin)
        with pytest.raises(ValidationFailed, match="reopen"):
            repo.update(defect.id, {"status": "Open"}, actor=admin)

    def test_read_only_fields(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        for field in ("code", "reopened_count", "closed_at", "unsafe"):
            with pytest.raises(ValidationFailed):
                repo.update(defect.id, {field: "x"}, actor=admin)

    def test_no_op_update(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        unchanged = repo.update(defect.id, {"title": defect.title}, actor=admin)
        assert unchanged == defect
        assert len(repo.db.list_outbox()) == 1

    def test_fitter_cannot_edit(self, repo: DefectRepository, admin: Actor, fitter: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(PermissionDenied):
            repo.update(defect.id, {"title": "Changed"}, actor=fitter)
        assert repo.get_by_id(defect.id).title == defect.title

    def test_missing_defect(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(NotFound):
            repo.update("def-nope", {"title": "x"}, actor=admin)

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("target_rectification_date", 20250101),
            ("asset_id", {"id": "TRK-12"}),
            ("assigned_to_id", 7),
            ("severity_model", ["LMH"]),
            ("severity", 3),
            ("status", None),
            ("description", ["leak"]),
        ],
    )
    def test_non_string_values_rejected(self, repo: DefectRepository, admin: Actor, field: str, value: object) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed, match=field):
            repo.update(defect.id, {field: value}, actor=admin)
        assert repo.get_by_id(defect.id) == defect
        assert repo.summary()["total"] == 1

    def test_non_string_value_rejected_on_create(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed, match="target_rectification_date"):
            repo.create(defect_input(target_rectification_date=20250101), actor=admin)
        assert repo.get_all() == []

    def test_optional_string_may_be_cleared(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(asset_id="TRK-12"), actor=admin)
        assert repo.update(defect.id, {"asset_id": None}, actor=admin).asset_id is None

    def test_enqueues_only_changed_fields(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        repo.update(defect.id, {"severity": "High", "title": defect.title}, actor=admin)
        entry = repo.db.list_outbox()[-1]
        assert entry["type"] == "update"
        assert entry["payload"]["changes"] == {"severity": "High", "unsafe": True}  # type: ignore[typeddict-item]


class TestSettings:
    def test_defaults(self, repo: DefectRepository) -> None:
        settings = repo.get_settings()
        assert settings.default_severity_model == "LMH"
        assert settings.unsafe_thresholds == {"LMH": ["High"], "MMC": ["Critical"]}
        assert settings.before_after_required is False

    def test_change_is_not_retroactive(self, repo: DefectRepository, admin: Actor) -> None:
        old = repo.create(defect_input(severity="Medium"), actor=admin)
        repo.update_settings({"unsafe_thresholds": {"LMH": ["Medium", "High"], "MMC": ["Critical"]}}, actor=admin)

        assert repo.get_by_id(old.id).unsafe is False
        assert repo.create(defect_input(severity="Medium"), actor=admin).unsafe is True
        # Recomputed once the old defect's own severity is edited
        assert repo.update(old.id, {"severity": "Low"}, actor=admin).unsafe is False
        assert repo.update(old.id, {"severity": "Medium"}, actor=admin).unsafe is True

    def test_invalid_settings(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(ValidationFailed):
            repo.update_settings({"default_severity_model": "XYZ"}, actor=admin)
        with pytest.raises(ValidationFailed, match="Unknown settings"):
            repo.update_settings({"colour": "red"}, actor=admin)

    def test_requires_configure(self, repo: DefectRepository, supervisor: Actor) -> None:
        with pytest.raises(PermissionDenied):
            repo.update_settings({"before_after_required": True}, actor=supervisor)


class TestDelete:
    def test_delete(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        repo.delete(defect.id, actor=admin)
        with pytest.raises(NotFound):
            repo.get_by_id(defect.id)
        entry = repo.db.list_outbox()[-1]
        assert entry["type"] == "delete"
        assert entry["payload"]["code"] == defect.code  # type: ignore[typeddict-item]

    def test_supervisor_cannot_delete(self, repo: DefectRepository, admin: Actor, supervisor: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(PermissionDenied):
            repo.delete(defect.id, actor=supervisor)
        assert repo.get_by_id(defect.id)

    def test_missing(self, repo: DefectRepository, admin: Actor) -> None:
        with pytest.raises(NotFound):
            repo.delete("def-nope", actor=admin)


class TestTrail:
    def test_comment(self, repo: DefectRepository, admin: Actor, fitter: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        comment = repo.add_comment(defect.id, "  Parts ordered  ", actor=fitter)
        assert comment.text == "Parts ordered"
        assert comment.by_name == "David Lee"
        stored = repo.get_by_id(defect.id)
        assert stored.comments == [comment]
        assert stored.history[-1].type == "comment"
        assert stored.history[-1].summary == "Comment added: Parts ordered"
        entry = repo.db.list_outbox()[-1]
        assert entry["payload"]["changes"]["comments"][0]["text"] == "Parts ordered"  # type: ignore[typeddict-item]

    def test_long_comment_summary_is_truncated(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        repo.add_comment(defect.id, "x" * 80, actor=admin)
        assert repo.get_by_id(defect.id).history[-1].summary == "Comment added: " + "x" * 50 + "..."

    def test_empty_comment(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed):
            repo.add_comment(defect.id, "   ", actor=admin)

    def test_viewer_cannot_comment(self, repo: DefectRepository, admin: Actor, viewer: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(PermissionDenied):
            repo.add_comment(defect.id, "Looks bad", actor=viewer)

    def test_history_entry_is_local_only(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        pending = repo.db.pending_count()
        entry = repo.add_history_entry(defect.id, "edit", "Inspected on site", actor=admin, data={"inspector": "user-1"})
        assert repo.history(defect.id)[-1] == entry
        assert repo.db.pending_count() == pending

    def test_history_entry_type_checked(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed, match="history type"):
            repo.add_history_entry(defect.id, "gossip", "Heard a rumour", actor=admin)

    def test_actions(self, repo: DefectRepository, admin: Actor, fitter: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        action = repo.add_action(defect.id, "Replace seal", required=True, actor=admin)
        done = repo.complete_action(defect.id, action.id, actor=fitter)
        assert done.completed is True
        assert done.completed_by == "user-7"
        assert done.completed_at
        stored = repo.get_by_id(defect.id)
        assert stored.actions == [done]
        assert [h.summary for h in stored.history[-2:]] == ["Required action added: Replace seal", "Action completed: Replace seal"]

    def test_fitter_cannot_add_action(self, repo: DefectRepository, admin: Actor, fitter: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(PermissionDenied):
            repo.add_action(defect.id, "Replace seal", actor=fitter)

    def test_complete_unknown_action(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(NotFound, match="Action"):
            repo.complete_action(defect.id, "nope", actor=admin)

    def test_attachment(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        attachment = repo.add_attachment(defect.id, type="photo", filename="leak.jpg", uri="file:///tmp/leak.jpg", label="before", actor=admin)
        stored = repo.get_by_id(defect.id)
        assert stored.attachments == [attachment]
        assert stored.history[-1].summary == "Photo attached: leak.jpg (before)"

    @pytest.mark.parametrize(("kind", "label"), [("hologram", None), ("photo", "during")])
    def test_attachment_validation(self, repo: DefectRepository, admin: Actor, kind: str, label: str | None) -> None:
        defect = repo.create(defect_input(), actor=admin)
        with pytest.raises(ValidationFailed):
            repo.add_attachment(defect.id, type=kind, filename="x.jpg", label=label, actor=admin)
        assert repo.get_by_id(defect.id).attachments == []


NOW = datetime(2024, 6, 1, tzinfo=UTC)


@pytest.fixture
def populated(repo: DefectRepository, admin: Actor) -> dict[str, str]:
    ids = {
        "overdue": repo.create(defect_input(title="Worn brake pads", target_rectification_date="2024-01-15", asset_id="TRK-12"), actor=admin).id,
        "future": repo.create(defect_input(title="Faded signage", target_rectification_date="2025-01-01", assigned_to_id="user-7"), actor=admin).id,
        "unsafe": repo.create(defect_input(title="Exposed wiring", severity="High", site_id="site-1"), actor=admin).id,
        "inspected": repo.create(defect_input(title="Cracked weld", inspection_id="insp-1", compliance_tags=["AS1418"]), actor=admin).id,
    }
    closed = repo.create(defect_input(title="Loose handrail", target_rectification_date="2024-01-01"), actor=admin)
    repo.close(closed.id, "Tightened", actor=admin)
    ids["closed"] = closed.id
    return ids


class TestQuery:
    def _ids(self, repo: DefectRepository, **predicates: object) -> set[str]:
        return {d.id for d in repo.query(DefectFilter(**predicates), now=NOW)}  # type: ignore[arg-type]

    def test_no_filter_returns_everything(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert len(repo.query()) == 5

    def test_status(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, status="Closed") == {populated["closed"]}

    def test_overdue_excludes_closed(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, overdue=True) == {populated["overdue"]}

    def test_unsafe(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, unsafe=True) == {populated["unsafe"]}

    def test_assignment(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, assigned_to_id="user-7") == {populated["future"]}
        assert populated["future"] not in self._ids(repo, unassigned=True)

    def test_linkage(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, from_inspection=True) == {populated["inspected"]}
        assert self._ids(repo, compliance_tag="AS1418") == {populated["inspected"]}
        assert self._ids(repo, site_id="site-1") == {populated["unsafe"]}
        assert self._ids(repo, asset_id="TRK-12") == {populated["overdue"]}

    def test_search(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, search="BRAKE") == {populated["overdue"]}
        assert self._ids(repo, search="trk-12") == {populated["overdue"]}
        assert self._ids(repo, search="DEF-000003") == {populated["unsafe"]}

    def test_predicates_combine(self, repo: DefectRepository, populated: dict[str, str]) -> None:
        assert self._ids(repo, status="Open", severity="High") == {populated["unsafe"]}
        assert self._ids(repo, status="Open", overdue=True, unsafe=True) == set()


class TestSummary:
    def test_counts(self, repo: DefectRepository, admin: Actor, populated: dict[str, str]) -> None:
        assert repo.summary(now=NOW) == {"total": 5, "open": 4, "overdue": 1, "unsafe": 1}

    def test_closed_unsafe_defect_not_counted(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(severity="High"), actor=admin)
        action = repo.add_action(defect.id, "Isolate circuit", required=True, actor=admin)
        repo.complete_action(defect.id, action.id, actor=admin)
        repo.close(defect.id, "Rewired", actor=admin)
        assert repo.summary(now=NOW) == {"total": 1, "open": 0, "overdue": 0, "unsafe": 0}

    def test_empty(self, repo: DefectRepository) -> None:
        assert repo.summary() == {"total": 0, "open": 0, "overdue": 0, "unsafe": 0}


class TestOverdue:
    def test_timestamp_and_date_forms(self, repo: DefectRepository, admin: Actor) -> None:
        by_date = repo.create(defect_input(target_rectification_date="2024-05-31"), actor=admin)
        by_stamp = repo.create(defect_input(target_rectification_date="2024-06-01T00:00:01+00:00"), actor=admin)
        assert is_overdue(by_date, NOW) is True
        assert is_overdue(by_stamp, NOW) is False

    def test_unparseable_date_is_not_overdue(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(target_rectification_date="next tuesday"), actor=admin)
        assert is_overdue(defect, NOW) is False

    def test_non_string_date_in_store_is_not_overdue(self, repo: DefectRepository, admin: Actor) -> None:
        defect = repo.create(defect_input(), actor=admin)
        record = dict(defect.to_dict())
        record["target_rectification_date"] = 20250101
        repo.db.put("defects", record)
        assert is_overdue(repo.get_by_id(defect.id), NOW) is False
        assert repo.summary(now=NOW)["overdue"] == 0
        assert repo.query(DefectFilter(overdue=True), now=NOW) == []
