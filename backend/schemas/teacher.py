from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class TeacherBase(BaseModel):
    code: str = Field(min_length=1)
    full_name: str = Field(min_length=1)
    max_per_day: int | None = Field(default=None, ge=1)
    is_active: bool = True


class TeacherCreate(TeacherBase):
    pass


class TeacherOut(TeacherBase):
    id: uuid.UUID
    school_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True
