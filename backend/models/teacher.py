from __future__ import annotations

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from models.base import Base, utcnow


class Teacher(Base):
    __tablename__ = "teachers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    code = Column(Text, nullable=False)
    full_name = Column(Text, nullable=False)

    max_per_day = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("school_id", "code", name="uq_teachers_school_code"),
        CheckConstraint("max_per_day is null or max_per_day >= 0", name="ck_teachers_max_per_day"),
    )
