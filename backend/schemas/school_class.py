from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class SchoolClassBase(BaseModel):
    academic_year_id: uuid.UUID
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    size: int = Field(default=0, ge=0)
    is_active: bool = True


class SchoolClassCreate(SchoolClassBase):
    pass


class SchoolClassOut(SchoolClassBase):
    id: uuid.UUID
    school_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class ClassSubjectCreate(BaseModel):
    subject_id: uuid.UUID
    # More than one teacher makes a joint lesson: all of them teach the class at once.
    teacher_ids: list[uuid.UUID] = Field(min_length=1)
    weekly_frequency: int | None = Field(default=None, ge=1)


class ClassSubjectOut(BaseModel):
    id: uuid.UUID
    class_id: uuid.UUID
    subject_id: uuid.UUID
    teacher_ids: list[uuid.UUID]
    weekly_frequency: int | None = None
    created_at: datetime

    class Config:
        from_attributes = True
