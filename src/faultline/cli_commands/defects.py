"""CLI commands for defect CRUD and lifecycle: create, show, list, update, close, reopen, comment, delete."""

from __future__ import annotations

import json as json_mod
from typing import Any

import click

from faultline.cli_common import fail, get_actor, get_db, lookup, repo_for
from faultline.errors import FaultlineError
from faultline.models import SEVERITY_SCALES, VALID_STATUSES, Defect
from faultline.repository import DefectFilter


def _line(d: Defect) -> str:
    flags = " UNSAFE" if d.unsafe and not d.is_closed else ""
    return f"{d.code} {d.id} [{d.severity_model}:{d.severity}] {d.status:<12} {d.title}{flags}"


@click.command()
@click.argument("title")
@click.option("--severity", "-s", required=True, help="Severity on the chosen model's scale")
@click.option("--model", "severity_model", default=None, type=click.Choice(sorted(SEVERITY_SCALES)), help="Severity model (default from settings)")
@click.option("--status", default=None, help="Initial status (default Open)")
@click.option("--description", "-d", default="", help="Description")
@click.option("--target-date", "target_rectification_date", default=None, help="Target rectification date (YYYY-MM-DD)")
@click.option("--asset", "asset_id", default=None, help="Asset id")
@click.option("--location", "location_id", default=None, help="Location id")
@click.option("--inspection", "inspection_id", default=None, help="Raised from this inspection id")
@click.option("--work-order", "work_order_id", default=None, help="Work order id")
@click.option("--site", "site_id", default=None, help="Site id")
@click.option("--site-name", default=None, help="Site display name")
@click.option("--assign", "assigned_to_id", default=None, help="Assignee id")
@click.option("--assign-name", "assigned_to_name", default=None, help="Assignee display name")
@click.option("--tag", "-t", multiple=True, help="Compliance tag (repeatable)")
@click.option("--action", "-a", multiple=True, help="Optional action (repeatable)")
@click.option("--required-action", "-r", multiple=True, help="Required action (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(ctx: click.Context, title: str, as_json: bool, tag: tuple[str, ...], action: tuple[str, ...], required_action: tuple[str, ...], **options: Any) -> None:
    """Raise a new defect."""
    data: dict[str, Any] = {"title": title, **{k: v for k, v in options.items() if v not in (None, "")}}
    if tag:
        data["compliance_tags"] = list(tag)
    actions = [{"title": t, "required": True} for t in required_action] + [{"title": t} for t in action]
    if actions:
        data["actions"] = actions

    actor = get_actor(ctx)
    with get_db() as db:
        try:
            defect = repo_for(db).create(data, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(defect.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Created {defect.code} ({defect.id}): {defect.title}")
            if defect.unsafe:
                click.echo("  UNSAFE: do not use the affected asset until resolved")


@click.command()
@click.argument("ref")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(ref: str, as_json: bool) -> None:
    """Show defect details. REF may be an id or a code in any common format."""
    with get_db() as db:
        try:
            d = lookup(repo_for(db), ref)
        except FaultlineError as e:
            fail(str(e), as_json)

        if as_json:
            click.echo(json_mod.dumps(d.to_dict(), indent=2, default=str))
            return

        click.echo(f"Code:     {d.code}")
        click.echo(f"ID:       {d.id}")
        click.echo(f"Title:    {d.title}")
        click.echo(f"Status:   {d.status}")
        click.echo(f"Severity: {d.severity} ({d.severity_model}){'  UNSAFE' if d.unsafe else ''}")
        if d.target_rectification_date:
            click.echo(f"Due:      {d.target_rectification_date}")
        if d.assigned_to_id:
            click.echo(f"Assignee: {d.assigned_to_name or d.assigned_to_id}")
        if d.asset_id:
            click.echo(f"Asset:    {d.asset_id}")
        if d.site_id:
            click.echo(f"Site:     {d.site_name or d.site_id}")
        if d.compliance_tags:
            click.echo(f"Tags:     {', '.join(d.compliance_tags)}")
        if d.reopened_count:
            click.echo(f"Reopened: {d.reopened_count}x")
        if d.previous_occurrence_id:
            click.echo(f"Previous: {d.previous_occurrence_id}")
        click.echo(f"Created:  {d.created_at} by {d.created_by_name}")
        if d.closed_at:
            click.echo(f"Closed:   {d.closed_at}")
        if d.description:
            click.echo(f"\n--- Description ---\n{d.description}")
        if d.actions:
            click.echo("\n--- Actions ---")
            for a in d.actions:
                mark = "x" if a.completed else " "
                req = " (required)" if a.required else ""
                click.echo(f"  [{mark}] {a.title}{req}  {a.id}")
        if d.comments:
            click.echo("\n--- Comments ---")
            for c in d.comments:
                click.echo(f"  {c.at}  {c.by_name}: {c.text}")
        click.echo("\n--- History ---")
        for h in d.history:
            click.echo(f"  {h.at}  {h.type:<13} {h.summary} ({h.by_name})")


@click.command("list")
@click.option("--status", default=None, type=click.Choice(VALID_STATUSES), help="Filter by status")
@click.option("--severity", default=None, help="Filter by severity")
@click.option("--model", "severity_model", default=None, type=click.Choice(sorted(SEVERITY_SCALES)), help="Filter by severity model")
@click.option("--asset", "asset_id", default=None, help="Filter by asset id")
@click.option("--location", "location_id", default=None, help="Filter by location id")
@click.option("--site", "site_id", default=None, help="Filter by site id")
@click.option("--assignee", "assigned_to_id", default=None, help="Filter by assignee id")
@click.option("--overdue", is_flag=True, help="Only defects past their target date and not closed")
@click.option("--unsafe", is_flag=True, help="Only defects flagged unsafe")
@click.option("--unassigned", is_flag=True, help="Only defects with no assignee")
@click.option("--from-inspection", is_flag=True, help="Only defects raised from an inspection")
@click.option("--tag", "compliance_tag", default=None, help="Filter by compliance tag")
@click.option("--search", "-q", default=None, help="Search code, title, description, asset id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_defects(as_json: bool, **filters: Any) -> None:
    """List defects with optional filters."""
    with get_db() as db:
        defects = repo_for(db).query(DefectFilter(**filters))

        if as_json:
            click.echo(json_mod.dumps([d.to_dict() for d in defects], indent=2, default=str))
            return

        for d in defects:
            click.echo(_line(d))
        click.echo(f"\n{len(defects)} defects")


@click.command()
@click.argument("ref")
@click.option("--title", default=None, help="New title")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--severity", "-s", default=None, help="New severity")
@click.option("--model", "severity_model", default=None, type=click.Choice(sorted(SEVERITY_SCALES)), help="New severity model")
@click.option("--status", default=None, help="New status (use close/reopen for Closed)")
@click.option("--target-date", "target_rectification_date", default=None, help="New target rectification date")
@click.option("--asset", "asset_id", default=None, help="New asset id")
@click.option("--location", "location_id", default=None, help="New location id")
@click.option("--site", "site_id", default=None, help="New site id")
@click.option("--site-name", default=None, help="New site display name")
@click.option("--assign", "assigned_to_id", default=None, help="New assignee id")
@click.option("--assign-name", "assigned_to_name", default=None, help="New assignee display name")
@click.option("--tag", "-t", multiple=True, help="Replace compliance tags (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def update(ctx: click.Context, ref: str, tag: tuple[str, ...], as_json: bool, **options: Any) -> None:
    """Update defect fields."""
    changes = {k: v for k, v in options.items() if v is not None}
    if tag:
        changes["compliance_tags"] = list(tag)
    if not changes:
        fail("Nothing to update", as_json)

    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            defect = repo.update(lookup(repo, ref).id, changes, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(defect.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Updated {defect.code}: {defect.status}")


@click.command()
@click.argument("ref")
@click.option("--notes", "-n", required=True, help="Resolution notes")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def close(ctx: click.Context, ref: str, notes: str, as_json: bool) -> None:
    """Close a defect with resolution notes."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            defect = repo.close(lookup(repo, ref).id, notes, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(defect.to_dict(), indent=2, default=str))
        else:
            click.echo(f"Closed {defect.code}")


@click.command()
@click.argument("ref")
@click.option("--reason", required=True, help="Why the defect is being reopened")
@click.option("--new", "new_occurrence", is_flag=True, help="Raise a new linked defect instead of reopening this one")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def reopen(ctx: click.Context, ref: str, reason: str, new_occurrence: bool, as_json: bool) -> None:
    """Reopen a closed defect."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            original = lookup(repo, ref)
            defect = repo.reopen(original.id, reason, mode="new" if new_occurrence else "same", actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e), as_json)
        if as_json:
            click.echo(json_mod.dumps(defect.to_dict(), indent=2, default=str))
        elif new_occurrence:
            click.echo(f"Raised {defect.code} as a new occurrence of {original.code}")
        else:
            click.echo(f"Reopened {defect.code} (reopened {defect.reopened_count}x)")


@click.command()
@click.argument("ref")
@click.argument("text")
@click.pass_context
def comment(ctx: click.Context, ref: str, text: str) -> None:
    """Add a comment to a defect."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            repo.add_comment(lookup(repo, ref).id, text, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e))
        click.echo(f"Added comment to {ref}")


@click.command("add-action")
@click.argument("ref")
@click.argument("title")
@click.option("--required", is_flag=True, help="Must be completed before a high severity defect can close")
@click.pass_context
def add_action(ctx: click.Context, ref: str, title: str, required: bool) -> None:
    """Add a rectification action to a defect."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            action = repo.add_action(lookup(repo, ref).id, title, required=required, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e))
        click.echo(f"Added action {action.id}: {action.title}")


@click.command("complete-action")
@click.argument("ref")
@click.argument("action_id")
@click.pass_context
def complete_action(ctx: click.Context, ref: str, action_id: str) -> None:
    """Mark a defect action as completed."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            action = repo.complete_action(lookup(repo, ref).id, action_id, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e))
        click.echo(f"Completed action: {action.title}")


@click.command()
@click.argument("ref")
@click.argument("filename")
@click.option("--type", "attachment_type", default="photo", type=click.Choice(["photo", "video", "document"]), help="Attachment type")
@click.option("--label", default=None, type=click.Choice(["before", "after", "other"]), help="Evidence label")
@click.option("--uri", default="", help="Where the file is stored")
@click.pass_context
def attach(ctx: click.Context, ref: str, filename: str, attachment_type: str, label: str | None, uri: str) -> None:
    """Record an attachment on a defect."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            repo.add_attachment(lookup(repo, ref).id, type=attachment_type, filename=filename, uri=uri, label=label, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e))
        click.echo(f"Attached {filename} to {ref}")


@click.command()
@click.argument("ref")
@click.pass_context
def delete(ctx: click.Context, ref: str) -> None:
    """Delete a defect and its trail."""
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        try:
            defect = lookup(repo, ref)
            repo.delete(defect.id, actor=actor)
        except (FaultlineError, ValueError) as e:
            fail(str(e))
        click.echo(f"Deleted {defect.code}")


@click.command()
@click.argument("ref")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def resolve(ref: str, as_json: bool) -> None:
    """Resolve a loosely formatted reference to a defect."""
    with get_db() as db:
        defect = repo_for(db).resolve(ref)
        if defect is None:
            fail(f"No defect matches {ref!r}", as_json)
        if as_json:
            click.echo(json_mod.dumps({"id": defect.id, "code": defect.code}))
        else:
            click.echo(f"{defect.code} {defect.id}")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def summary(as_json: bool) -> None:
    """Counts of total, open, overdue and unsafe defects."""
    with get_db() as db:
        counts = repo_for(db).summary()
        if as_json:
            click.echo(json_mod.dumps(counts, indent=2))
            return
        click.echo(f"Total:   {counts['total']}")
        click.echo(f"Open:    {counts['open']}")
        click.echo(f"Overdue: {counts['overdue']}")
        click.echo(f"Unsafe:  {counts['unsafe']}")
