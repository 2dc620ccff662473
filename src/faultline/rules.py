"""Business rules for defects: unsafe flag, close eligibility, status transitions, role capabilities.

Pure functions with no store, FastAPI, or Click dependencies. Every answer is a
function of the arguments alone, so the same inputs always give the same
result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from faultline.models import CLOSED, SEVERITY_SCALES, Defect, DefectSettings

Capability = Literal["raise", "edit", "close", "reopen", "delete", "configure"]

# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------

# Severities that gate closure behind a completed required action.
HIGH_SEVERITY_BAND: dict[str, frozenset[str]] = {
    "LMH": frozenset({"High"}),
    "MMC": frozenset({"Major", "Critical"}),
}


def is_unsafe(severity: str, severity_model: str, settings: DefectSettings) -> bool:
    """True iff *severity* is listed in the thresholds configured for *severity_model*."""
    return severity in settings.unsafe_thresholds.get(severity_model, ())


def is_high_severity(severity: str, severity_model: str) -> bool:
    return severity in HIGH_SEVERITY_BAND.get(severity_model, frozenset())


def validate_severity(severity: str, severity_model: str) -> list[str]:
    """Return problems with a (severity, model) pair; empty when valid."""
    scale = SEVERITY_SCALES.get(severity_model)
    if scale is None:
        return [f"Unknown severity model {severity_model!r}. Valid: {', '.join(SEVERITY_SCALES)}"]
    if severity not in scale:
        return [f"Severity {severity!r} is not on the {severity_model} scale ({', '.join(scale)})"]
    return []


def validate_settings(settings: DefectSettings) -> list[str]:
    errors: list[str] = []
    if settings.default_severity_model not in SEVERITY_SCALES:
        errors.append(f"Unknown default severity model {settings.default_severity_model!r}")
    for model, severities in settings.unsafe_thresholds.items():
        scale = SEVERITY_SCALES.get(model)
        if scale is None:
            errors.append(f"Unsafe thresholds given for unknown severity model {model!r}")
            continue
        bad = [s for s in severities if s not in scale]
        if bad:
            errors.append(f"Unsafe thresholds for {model} contain unknown severities: {', '.join(bad)}")
    return errors


# ---------------------------------------------------------------------------
# Close eligibility
# ---------------------------------------------------------------------------


@dataclass
class CloseCheck:
    ok: bool
    reasons: list[str] = field(default_factory=list)


def check_close(defect: Defect, settings: DefectSettings) -> CloseCheck:
    """Evaluate whether *defect* may be closed. Both checks run; all failures are reported."""
    reasons: list[str] = []

    if is_high_severity(defect.severity, defect.severity_model):
        if not any(a.required and a.completed for a in defect.actions):
            reasons.append("At least one required action must be completed before closing high severity defects")

    if settings.before_after_required:
        photos = [a for a in defect.attachments if a.type == "photo"]
        has_before = any(a.label == "before" for a in photos)
        has_after = any(a.label == "after" for a in photos)
        if not (has_before and has_after):
            reasons.append("Before and after photos are required before closing this defect")

    return CloseCheck(ok=not reasons, reasons=reasons)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

# Closed is entered only through close() and left only through reopen().
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "Draft": frozenset({"Open"}),
    "Open": frozenset({"Acknowledged", "InProgress", "Deferred", CLOSED}),
    "Acknowledged": frozenset({"InProgress", "Deferred", CLOSED}),
    "InProgress": frozenset({"Deferred", CLOSED}),
    "Deferred": frozenset({"InProgress", CLOSED}),
    CLOSED: frozenset({"Open"}),
}


def can_transition(current: str, target: str) -> bool:
    return target in STATUS_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Role capabilities
# ---------------------------------------------------------------------------

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "Viewer": frozenset(),
    "Fitter": frozenset({"raise", "close", "reopen"}),
    "Supervisor": frozenset({"raise", "edit", "close", "reopen"}),
    "Manager": frozenset({"raise", "edit", "close", "reopen", "delete", "configure"}),
    "Admin": frozenset({"raise", "edit", "close", "reopen", "delete", "configure"}),
}


def has_capability(role: str | None, capability: Capability) -> bool:
    """Unknown or missing roles have no capabilities."""
    if not role:
        return False
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def can_raise(role: str | None) -> bool:
    return has_capability(role, "raise")


def can_edit(role: str | None) -> bool:
    return has_capability(role, "edit")


def can_close(role: str | None) -> bool:
    return has_capability(role, "close")


def can_reopen(role: str | None) -> bool:
    return has_capability(role, "reopen")


def can_delete(role: str | None) -> bool:
    return has_capability(role, "delete")


def can_configure(role: str | None) -> bool:
    return has_capability(role, "configure")
