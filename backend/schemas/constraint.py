from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


ConstraintScope = Literal["teacher", "room", "subject", "class", "global"]
ConstraintKind = Literal[
    "TeacherAvailability",
    "RoomCapacity",
    "SubjectWeeklyFrequency",
    "ConsecutivePeriodLimit",
    "Custom",
]
Priority = Literal["low", "medium", "high", "critical"]


class ConstraintCreate(BaseModel):
    academic_year_id: uuid.UUID
    scope: ConstraintScope
    kind: ConstraintKind
    is_hard: bool = True
    weight: float | None = None
    # Validated per kind by the constraint store.
    parameters: dict[str, Any] = Field(default_factory=dict)
    name: str | None = None
    description: str | None = None
    priority: Priority = "medium"
    is_active: bool = True


class ConstraintUpdate(BaseModel):
    scope: ConstraintScope | None = None
    is_hard: bool | None = None
    weight: float | None = None
    parameters: dict[str, Any] | None = None
    name: str | None = None
    description: str | None = None
    priority: Priority | None = None
    is_active: bool | None = None


class ConstraintOut(BaseModel):
    id: uuid.UUID
    school_id: uuid.UUID
    academic_year_id: uuid.UUID
    scope: str
    kind: str
    is_hard: bool
    weight: float | None = None
    parameters: dict[str, Any]
    name: str
    description: str | None = None
    priority: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
