from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Text, Uuid

from models.base import Base, utcnow


CONFLICT_TYPE = Enum(
    "teacher_double_booking",
    "room_conflict",
    "subject_clash",
    "constraint_violation",
    name="schedule_conflict_type",
    native_enum=False,
)

CONFLICT_SEVERITY = Enum(
    "low",
    "medium",
    "high",
    "critical",
    name="schedule_conflict_severity",
    native_enum=False,
)


class ScheduleConflict(Base):
    __tablename__ = "schedule_conflicts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    version_id = Column(Uuid, nullable=False, index=True)
    conflict_type = Column(CONFLICT_TYPE, nullable=False)
    severity = Column(CONFLICT_SEVERITY, nullable=False, default="critical")
    description = Column(Text, nullable=False)
    constraint_id = Column(Uuid, nullable=True)

    # Sorted entry id strings; together with type + constraint_id this is the conflict's identity.
    affected_entry_ids = Column(JSON, nullable=False, default=list)
    suggested_resolutions = Column(JSON, nullable=False, default=list)
    details = Column(JSON, nullable=False, default=dict)

    is_resolved = Column(Boolean, nullable=False, default=False)
    resolution_method = Column(Text, nullable=True)
    resolution_data = Column(JSON, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(Uuid, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
