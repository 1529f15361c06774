from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, Date, DateTime, Enum, Float, Integer, Text, Uuid

from models.base import Base, utcnow


VERSION_STATUS = Enum(
    "draft",
    "published",
    "archived",
    "discarded",
    name="schedule_version_status",
    native_enum=False,
)


class ScheduleVersion(Base):
    __tablename__ = "schedule_versions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    academic_year_id = Column(Uuid, nullable=False)
    term_id = Column(Uuid, nullable=False)
    name = Column(Text, nullable=False)
    status = Column(VERSION_STATUS, nullable=False, default="draft")

    optimization_score = Column(Float, nullable=False, default=0.0)
    penalty = Column(Float, nullable=False, default=0.0)
    unsatisfied_hard_constraints = Column(JSON, nullable=False, default=list)
    # Bumped on every committed mutation of the entries; used to reject stale writes.
    revision = Column(Integer, nullable=False, default=0)

    parent_job_id = Column(Uuid, nullable=True)
    base_version_id = Column(Uuid, nullable=True)
    replaces_version_id = Column(Uuid, nullable=True)

    effective_date = Column(Date, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    published_by = Column(Uuid, nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    archive_reason = Column(Text, nullable=True)
    discarded_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
