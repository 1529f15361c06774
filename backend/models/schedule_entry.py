from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Integer, Uuid

from models.base import Base, utcnow


class ScheduleEntry(Base):
    __tablename__ = "schedule_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    version_id = Column(Uuid, nullable=False, index=True)
    teacher_id = Column(Uuid, nullable=False)
    subject_id = Column(Uuid, nullable=False)
    class_id = Column(Uuid, nullable=False)
    room_id = Column(Uuid, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    period = Column(Integer, nullable=False)
    occurrence = Column(Integer, nullable=False, default=0)
    # Preserves solver output order so regenerated versions diff cleanly.
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
