"""Exception taxonomy shared by the store, repository, sync processor, and entry points.

``NotFound`` and ``ValidationFailed`` subclass ``KeyError`` and ``ValueError``
respectively so callers that only know the builtin contract keep working.
"""

from __future__ import annotations


class FaultlineError(Exception):
    """Base class for all faultline errors."""


class NotFound(FaultlineError, KeyError):
    """An operation referenced a defect id or code that does not exist."""

    def __init__(self, ref: str, kind: str = "Defect") -> None:
        self.ref = ref
        self.kind = kind
        super().__init__(f"{kind} not found: {ref}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class ValidationFailed(FaultlineError, ValueError):
    """Close-eligibility, transition, or required-field checks failed.

    Every failing reason is collected in ``reasons`` so callers can show all
    of them at once.
    """

    def __init__(self, reasons: list[str] | str) -> None:
        self.reasons = [reasons] if isinstance(reasons, str) else list(reasons)
        super().__init__("; ".join(self.reasons))


class PermissionDenied(FaultlineError):
    """The caller's role lacks the capability the operation requires."""

    def __init__(self, role: str | None, capability: str) -> None:
        self.role = role
        self.capability = capability
        super().__init__(f"Role {role or '<none>'!r} may not {capability} defects")


class DeliveryFailed(FaultlineError):
    """A single delivery attempt to the remote system of record failed. Retried."""


class DeliveryAbandoned(FaultlineError):
    """An outbox entry exhausted its retries and was dropped."""

    def __init__(self, entry_id: str, mutation: str, defect_id: str, retries: int, cause: str = "") -> None:
        self.entry_id = entry_id
        self.mutation = mutation
        self.defect_id = defect_id
        self.retries = retries
        self.cause = cause
        msg = f"Gave up delivering {mutation} for {defect_id} after {retries} attempts"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)
