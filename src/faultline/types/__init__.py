# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin; this prevents circular imports.
"""Typed return-value contracts for faultline store, repository, and API layers."""

from __future__ import annotations

from faultline.types.core import (
    ActionDict,
    AttachmentDict,
    CommentDict,
    DefectDict,
    HistoryEntryDict,
    ISOTimestamp,
    ProjectConfig,
    SettingsDict,
    SummaryDict,
)
from faultline.types.outbox import (
    CloseDefectPayload,
    CreateDefectPayload,
    DeleteDefectPayload,
    FlushResult,
    MutationType,
    OutboxEntryDict,
    OutboxPayload,
    ReopenDefectPayload,
    UpdateDefectPayload,
)

__all__ = [
    "ActionDict",
    "AttachmentDict",
    "CloseDefectPayload",
    "CommentDict",
    "CreateDefectPayload",
    "DefectDict",
    "DeleteDefectPayload",
    "FlushResult",
    "HistoryEntryDict",
    "ISOTimestamp",
    "MutationType",
    "OutboxEntryDict",
    "OutboxPayload",
    "ProjectConfig",
    "ReopenDefectPayload",
    "SettingsDict",
    "SummaryDict",
    "UpdateDefectPayload",
]
