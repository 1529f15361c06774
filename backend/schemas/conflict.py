from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


ResolutionMethod = Literal["swap", "move", "cancel", "reschedule", "auto_resolve", "constraint_relax"]


class ConflictOut(BaseModel):
    id: uuid.UUID
    version_id: uuid.UUID
    conflict_type: str
    severity: str
    description: str
    constraint_id: uuid.UUID | None = None
    affected_entry_ids: list[uuid.UUID]
    suggested_resolutions: list[dict[str, Any]]
    details: dict[str, Any] = Field(default_factory=dict)
    is_resolved: bool
    resolution_method: str | None = None
    resolution_data: dict[str, Any] | None = None
    resolution_notes: str | None = None
    resolved_by: uuid.UUID | None = None
    resolved_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ResolveRequest(BaseModel):
    method: ResolutionMethod
    resolution_data: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    expected_revision: int | None = None


class BulkResolveRequest(BaseModel):
    conflict_ids: list[uuid.UUID] = Field(min_length=1)
    method: Literal["auto_resolve", "constraint_relax"]
    notes: str | None = None
