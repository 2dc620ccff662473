"""Development dataset: a representative spread of open, overdue, unsafe, closed and reopened defects."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

from faultline.models import Actor, Defect
from faultline.repository import DefectRepository

logger = logging.getLogger(__name__)


def _day(offset: int, today: date) -> str:
    return (today + timedelta(days=offset)).isoformat()


def seed_data(today: date | None = None) -> list[dict[str, Any]]:
    """Create-inputs for the seed set. Target dates are relative to *today*."""
    today = today or datetime.now(UTC).date()
    return [
        {
            "title": "Hydraulic leak detected on main cylinder",
            "description": "Significant hydraulic fluid leak from main cylinder. Safety concern.",
            "severity_model": "LMH",
            "severity": "High",
            "target_rectification_date": _day(-1, today),
            "actions": [
                {"title": "Isolate equipment", "required": True},
                {"title": "Replace cylinder seal", "required": True},
            ],
            "compliance_tags": ["PUWER"],
            "asset_id": "AST-000001",
            "site_id": "1",
            "site_name": "Site A",
        },
        {
            "title": "Brake system failure - safety critical",
            "description": "Complete brake system failure. Equipment must not be used.",
            "severity_model": "MMC",
            "severity": "Critical",
            "status": "Acknowledged",
            "target_rectification_date": _day(1, today),
            "actions": [
                {"title": "Quarantine equipment", "required": True, "completed": True},
                {"title": "Order brake pads", "required": True},
            ],
            "compliance_tags": ["PUWER", "SITE_RULE"],
            "asset_id": "AST-000004",
            "site_id": "3",
            "site_name": "Site C",
            "inspection_id": "INS-000005",
            "assigned_to_id": "user-1",
            "assigned_to_name": "John Smith",
        },
        {
            "title": "Engine overheating during operation",
            "description": "Engine temperature rising above normal operating range",
            "severity_model": "LMH",
            "severity": "High",
            "status": "InProgress",
            "target_rectification_date": _day(7, today),
            "actions": [{"title": "Replace thermostat", "required": True}],
            "asset_id": "AST-000006",
            "site_id": "1",
            "site_name": "Site A",
            "assigned_to_id": "user-1",
            "assigned_to_name": "John Smith",
        },
        {
            "title": "Minor electrical fault in control panel",
            "description": "Intermittent fault in control panel LED indicator",
            "severity_model": "LMH",
            "severity": "Low",
            "status": "InProgress",
            "actions": [{"title": "Check wiring connections", "completed": True}],
            "asset_id": "AST-000005",
            "site_id": "1",
            "site_name": "Site A",
            "assigned_to_id": "user-7",
            "assigned_to_name": "David Lee",
        },
        {
            "title": "Worn tire tread below minimum",
            "description": "Tire tread depth below legal minimum. Requires replacement.",
            "severity_model": "LMH",
            "severity": "Medium",
            "target_rectification_date": _day(7, today),
            "actions": [{"title": "Replace tire"}],
            "asset_id": "AST-000002",
            "site_id": "1",
            "site_name": "Site A",
        },
        {
            "title": "Safety guard missing on rotating parts",
            "description": "Safety guard removed from rotating parts. Immediate safety hazard.",
            "severity_model": "MMC",
            "severity": "Critical",
            "target_rectification_date": _day(-1, today),
            "actions": [
                {"title": "Install safety guard", "required": True},
                {"title": "Verify guard installation", "required": True},
            ],
            "compliance_tags": ["PUWER", "SITE_RULE"],
            "asset_id": "AST-000007",
            "site_id": "3",
            "site_name": "Site C",
        },
        {
            "title": "Cosmetic damage to equipment housing",
            "description": "Minor cosmetic damage, no functional impact",
            "severity_model": "LMH",
            "severity": "Low",
            "status": "Deferred",
            "asset_id": "AST-000003",
            "site_id": "2",
            "site_name": "Site B",
        },
        {
            "title": "Structural crack in support frame",
            "description": "Crack detected in main support frame. Requires engineering assessment.",
            "severity_model": "MMC",
            "severity": "Major",
            "status": "Acknowledged",
            "target_rectification_date": _day(7, today),
            "actions": [
                {"title": "Engage structural engineer", "required": True, "completed": True},
                {"title": "Implement temporary support", "required": True},
            ],
            "compliance_tags": ["PUWER", "LOLER"],
            "asset_id": "AST-000003",
            "site_id": "2",
            "site_name": "Site B",
            "assigned_to_id": "user-2",
            "assigned_to_name": "Sarah Johnson",
        },
    ]


def seed_defects(repo: DefectRepository, actor: Actor, *, today: date | None = None) -> list[Defect]:
    """Populate an empty store. Returns the created defects, or [] when defects already exist."""
    if repo.db.count("defects"):
        logger.info("Defects already seeded, skipping")
        return []

    created = [repo.create(data, actor=actor) for data in seed_data(today)]

    deferred = next(d for d in created if d.status == "Deferred")
    repo.add_comment(deferred.id, "Deferred until next scheduled maintenance window.", actor=actor)

    # A resolved defect
    bolts = repo.create(
        {
            "title": "Loose mounting bolts on generator",
            "description": "Mounting bolts found loose during inspection",
            "severity_model": "LMH",
            "severity": "Medium",
            "actions": [{"title": "Tighten mounting bolts", "completed": True}],
            "asset_id": "AST-000005",
            "site_id": "1",
            "site_name": "Site A",
            "assigned_to_id": "user-7",
            "assigned_to_name": "David Lee",
        },
        actor=actor,
    )
    created.append(repo.close(bolts.id, "All bolts tightened to specification. Defect resolved.", actor=actor))

    # A defect that came back after closure
    valve = repo.create(
        {
            "title": "Faulty pressure relief valve",
            "description": "Pressure relief valve not operating correctly",
            "severity_model": "LMH",
            "severity": "High",
            "target_rectification_date": _day(1, today or datetime.now(UTC).date()),
            "actions": [{"title": "Replace pressure relief valve", "required": True, "completed": True}],
            "compliance_tags": ["PUWER"],
            "asset_id": "AST-000001",
            "site_id": "1",
            "site_name": "Site A",
        },
        actor=actor,
    )
    repo.close(valve.id, "Valve replaced and pressure tested.", actor=actor)
    created.append(repo.reopen(valve.id, "Issue reoccurred. Reopening defect.", mode="same", actor=actor))

    logger.info("Seeded %d defects", len(created))
    return created
