from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class EntryOut(BaseModel):
    id: uuid.UUID
    teacher_id: uuid.UUID
    subject_id: uuid.UUID
    class_id: uuid.UUID
    room_id: uuid.UUID
    day: int
    period: int
    occurrence: int


class VersionOut(BaseModel):
    id: uuid.UUID
    school_id: uuid.UUID
    academic_year_id: uuid.UUID
    term_id: uuid.UUID
    name: str
    status: str
    optimization_score: float
    penalty: float
    unsatisfied_hard_constraints: list[dict[str, Any]]
    revision: int
    parent_job_id: uuid.UUID | None = None
    base_version_id: uuid.UUID | None = None
    replaces_version_id: uuid.UUID | None = None
    effective_date: date | None = None
    published_at: datetime | None = None
    published_by: uuid.UUID | None = None
    archived_at: datetime | None = None
    archive_reason: str | None = None
    discarded_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class VersionDetailOut(BaseModel):
    version: VersionOut
    view: str
    entries: list[EntryOut]
    groups: dict[str, list[EntryOut]] | None = None


class PublishRequest(BaseModel):
    effective_date: date


class ArchiveRequest(BaseModel):
    reason: str = Field(min_length=1)
    replacement_version_id: uuid.UUID | None = None
