from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PreferencesIn(BaseModel):
    balance_workload: bool = True
    minimize_gaps: bool = True
    spread_subjects: bool = True
    prefer_room_fit: bool = True


class SlotIn(BaseModel):
    day: int = Field(ge=0, le=6)
    period: int = Field(ge=0)


class GenerateRequest(BaseModel):
    academic_year_id: uuid.UUID
    term_id: uuid.UUID
    seed: int | None = None
    time_budget_seconds: float | None = Field(default=None, gt=0)
    max_iterations: int | None = Field(default=None, ge=0)
    max_periods_per_day: int | None = Field(default=None, ge=1)
    use_hints: bool = True
    preferences: PreferencesIn = Field(default_factory=PreferencesIn)
    name: str | None = None

    def parameters(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"academic_year_id", "term_id"}, exclude_none=True)
        return data


class RegenerateModifications(BaseModel):
    fixed_entry_ids: list[uuid.UUID] = Field(default_factory=list)
    exclude_slots: list[SlotIn] | None = None
    preferences: dict[str, bool] | None = None


class RegenerateRequest(BaseModel):
    base_version_id: uuid.UUID
    modifications: RegenerateModifications = Field(default_factory=RegenerateModifications)
    reason: str = Field(min_length=1)


class JobOut(BaseModel):
    id: uuid.UUID
    school_id: uuid.UUID
    academic_year_id: uuid.UUID
    term_id: uuid.UUID
    state: Literal["pending", "running", "completed", "failed", "cancelled"]
    progress: float
    seed: int
    parameters: dict[str, Any]
    base_version_id: uuid.UUID | None = None
    result_version_id: uuid.UUID | None = None
    error: str | None = None
    error_ref: str | None = None
    stats: dict[str, Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True
