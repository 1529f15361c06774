from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, Enum, Float, Text, Uuid

from models.base import Base, utcnow


CONSTRAINT_SCOPE = Enum(
    "teacher",
    "room",
    "subject",
    "class",
    "global",
    name="constraint_scope",
    native_enum=False,
)

CONSTRAINT_KIND = Enum(
    "TeacherAvailability",
    "RoomCapacity",
    "SubjectWeeklyFrequency",
    "ConsecutivePeriodLimit",
    "Custom",
    name="constraint_kind",
    native_enum=False,
)

CONSTRAINT_PRIORITY = Enum(
    "low",
    "medium",
    "high",
    "critical",
    name="constraint_priority",
    native_enum=False,
)


class SchedulingConstraint(Base):
    __tablename__ = "scheduling_constraints"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    academic_year_id = Column(Uuid, nullable=False, index=True)
    scope = Column(CONSTRAINT_SCOPE, nullable=False)
    kind = Column(CONSTRAINT_KIND, nullable=False)
    is_hard = Column(Boolean, nullable=False, default=True)
    weight = Column(Float, nullable=True)
    # Validated against the kind's schema before it is written; see schemas.constraint.
    parameters = Column(JSON, nullable=False, default=dict)

    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(CONSTRAINT_PRIORITY, nullable=False, default="medium")
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(is_hard and weight is null) or (not is_hard and weight > 0)",
            name="ck_scheduling_constraints_weight",
        ),
    )
