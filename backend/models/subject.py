from __future__ import annotations

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from models.base import Base, utcnow


class Subject(Base):
    __tablename__ = "subjects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    code = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    weekly_frequency = Column(Integer, nullable=False)
    max_per_day = Column(Integer, nullable=True)
    # Null means any room type is acceptable.
    room_type = Column(Text, nullable=True)
    is_core = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("weekly_frequency >= 1", name="ck_subjects_weekly_frequency"),
        CheckConstraint("max_per_day is null or max_per_day >= 1", name="ck_subjects_max_per_day"),
        UniqueConstraint("school_id", "code", name="uq_subjects_school_code"),
    )
