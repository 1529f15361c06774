from __future__ import annotations

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Time, UniqueConstraint, Uuid

from models.base import Base, utcnow


class TimeSlot(Base):
    """One (day, period) cell of a term's time grid. Rows are never updated once written."""

    __tablename__ = "time_slots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    academic_year_id = Column(Uuid, nullable=False)
    term_id = Column(Uuid, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    period = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 and day_of_week <= 6", name="ck_time_slots_day"),
        CheckConstraint("period >= 0", name="ck_time_slots_period"),
        UniqueConstraint(
            "school_id", "academic_year_id", "term_id", "day_of_week", "period", name="uq_time_slots_scope_day_period"
        ),
    )
