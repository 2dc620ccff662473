"""Shared input validation for all entry points.

Pure functions with no FastAPI or Click dependencies.
"""

from __future__ import annotations

import unicodedata
from typing import Any

from faultline.models import VALID_ROLES, Actor

_MAX_ACTOR_LENGTH = 128


def sanitize_actor(value: Any) -> tuple[str, str | None]:
    """Validate and clean an actor id or display name.

    Returns (cleaned_actor, None) on success or ("", error_message) on failure.
    Strips whitespace, then checks: non-empty, max length, no control/format chars.
    """
    if not isinstance(value, str):
        return ("", "actor must be a string")
    # Control and format chars are rejected before strip(), so "\nbad" fails
    for ch in value:
        cat = unicodedata.category(ch)
        if cat.startswith("C"):  # Cc (control) and Cf (format)
            return ("", f"actor must not contain control characters (found U+{ord(ch):04X})")
    cleaned = value.strip()
    if not cleaned:
        return ("", "actor must not be empty")
    if len(cleaned) > _MAX_ACTOR_LENGTH:
        return ("", f"actor must be at most {_MAX_ACTOR_LENGTH} characters")
    return (cleaned, None)


def build_actor(actor_id: Any, name: Any = "", role: Any = None) -> tuple[Actor | None, str | None]:
    """Build an Actor from loosely-typed input (CLI options, request headers).

    Returns (actor, None) on success or (None, error_message) on failure. An
    unknown role is rejected here rather than silently denying everything later.
    """
    cleaned_id, err = sanitize_actor(actor_id)
    if err:
        return (None, err)
    cleaned_name = ""
    if name:
        cleaned_name, err = sanitize_actor(name)
        if err:
            return (None, err.replace("actor", "actor name", 1))
    if role is not None and role not in VALID_ROLES:
        return (None, f"Unknown role {role!r}. Valid: {', '.join(VALID_ROLES)}")
    return (Actor(id=cleaned_id, name=cleaned_name, role=role), None)
