from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from schemas.conflict import ConflictOut
from schemas.generation import SlotIn


class AdjustmentIn(BaseModel):
    action: Literal["swap", "move", "cancel", "reschedule"]
    entry_id: uuid.UUID
    with_entry_id: uuid.UUID | None = None
    new_slot: SlotIn | None = None
    new_room_id: uuid.UUID | None = None
    new_teacher_id: uuid.UUID | None = None
    reason: str | None = None


class AdjustRequest(BaseModel):
    adjustments: list[AdjustmentIn] = Field(min_length=1)
    validate_constraints: bool = False
    expected_revision: int | None = None


class AdjustmentRecordOut(BaseModel):
    id: uuid.UUID
    version_id: uuid.UUID
    actor_id: uuid.UUID
    action: str
    entry_id: uuid.UUID
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    reason: str
    source: str
    revision: int
    created_at: datetime

    class Config:
        from_attributes = True


class AdjustResponse(BaseModel):
    version_id: uuid.UUID
    revision: int
    records: list[AdjustmentRecordOut]
    new_conflicts: list[ConflictOut]
    cleared_conflicts: list[ConflictOut]

    class Config:
        from_attributes = True
