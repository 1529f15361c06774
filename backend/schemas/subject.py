from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class SubjectBase(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    weekly_frequency: int = Field(ge=1)
    max_per_day: int | None = Field(default=None, ge=1)
    # Required room type (e.g. "lab"); None means any room.
    room_type: str | None = None
    is_core: bool = False
    is_active: bool = True


class SubjectCreate(SubjectBase):
    pass


class SubjectOut(SubjectBase):
    id: uuid.UUID
    school_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True
