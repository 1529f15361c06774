from __future__ import annotations

import uuid
from datetime import time

from pydantic import BaseModel, Field


class TimeSlotIn(BaseModel):
    day: int = Field(ge=0, le=6)
    period: int = Field(ge=0)
    start_time: time | None = None
    end_time: time | None = None


class TimeGridCreate(BaseModel):
    academic_year_id: uuid.UUID
    term_id: uuid.UUID
    slots: list[TimeSlotIn] = Field(min_length=1)


class TimeSlotOut(BaseModel):
    id: uuid.UUID
    day_of_week: int
    period: int
    start_time: time | None = None
    end_time: time | None = None

    class Config:
        from_attributes = True
