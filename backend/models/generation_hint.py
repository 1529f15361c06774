from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Uuid

from models.base import Base, utcnow


class GenerationHint(Base):
    """Optimization picks saved for the next generation of a scope."""

    __tablename__ = "generation_hints"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, nullable=False, index=True)
    academic_year_id = Column(Uuid, nullable=False)
    term_id = Column(Uuid, nullable=False)
    version_id = Column(Uuid, nullable=False)
    suggestion_ids = Column(JSON, nullable=False, default=list)
    # [{class_id, subject_id, teacher_id, occurrence, day, period}]
    placements = Column(JSON, nullable=False, default=list)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    consumed_by_job_id = Column(Uuid, nullable=True)
